"""Wave plans: which relay each concurrent attempt of a wave goes through."""

import random
from dataclasses import dataclass
from typing import Sequence

from relayrace.proxy.connector import relay_label


@dataclass(frozen=True)
class WavePlan:
    """Ordered relay choices for one wave; ``None`` means a direct connection."""

    slots: tuple[str | None, ...]

    def __len__(self) -> int:
        return len(self.slots)

    def __iter__(self):
        return iter(self.slots)

    def __getitem__(self, index: int) -> str | None:
        return self.slots[index]

    @property
    def labels(self) -> list[str]:
        """Get slot labels for journals."""
        return [relay_label(slot) for slot in self.slots]

    def describe(self) -> str:
        """Get comma separated slot labels."""
        return ",".join(self.labels)


def shuffled(relays: Sequence[str], rng: random.Random | None = None) -> list[str]:
    """Get a uniformly random permutation of relays, leaving the input untouched.

    Args:
        relays: Relay addresses
        rng: Random source

    Returns:
        Shuffled copy
    """
    result = list(relays)
    (rng or random).shuffle(result)
    return result


def build_wave_plan(relays: Sequence[str], width: int, direct_first: bool) -> WavePlan:
    """Build a plan of fixed width from an (already shuffled) relay list.

    Relays are taken in order and cycled when there are fewer relays than
    slots, so one relay can appear several times in a wave. With no relays
    every non-reserved slot is a direct connection.

    Args:
        relays: Relay addresses
        width: Number of concurrent attempts
        direct_first: Reserve slot 0 for a direct connection

    Returns:
        Wave plan
    """
    total = max(1, width)
    slots: list[str | None] = []
    index = 0
    for position in range(total):
        if direct_first and position == 0:
            slots.append(None)
        elif relays:
            slots.append(relays[index % len(relays)])
            index += 1
        else:
            slots.append(None)
    return WavePlan(tuple(slots))
