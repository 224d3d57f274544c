"""Race module - Wave plans, raced operations and the race engine."""

from .engine import RaceOutcome, RaceState, WaveRaceEngine
from .operations import SubmitOperation, TicketOperation
from .plan import WavePlan, build_wave_plan

__all__ = [
    "WaveRaceEngine",
    "RaceOutcome",
    "RaceState",
    "TicketOperation",
    "SubmitOperation",
    "WavePlan",
    "build_wave_plan",
]
