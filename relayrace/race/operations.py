"""Raced backend operations: ticket acquisition and quota submission."""

import json
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from relayrace.core.config import settings
from relayrace.core.errors import AttemptError, MalformedInput
from relayrace.core.retry import WaveDelay

DEFAULT_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "AppPlatform": "H5",
    "Connection": "keep-alive",
}


def build_request_headers(
    incoming: Mapping[str, str],
    forward: list[str] | None = None,
    json_body: bool = False,
) -> dict[str, str]:
    """Build outbound headers, copying selected caller headers.

    Args:
        incoming: Caller request headers
        forward: Header names to copy (case-insensitive)
        json_body: Add a JSON content type

    Returns:
        Header dictionary
    """
    headers = dict(DEFAULT_HEADERS)
    if json_body:
        headers["Content-Type"] = "application/json"

    lowered = {k.lower(): v for k, v in incoming.items()}
    for name in forward if forward is not None else settings.forward_headers:
        value = lowered.get(name.lower())
        if value:
            headers[name] = value
    return headers


@dataclass(frozen=True)
class OperationConfig:
    """Wave shape and time limits of one operation."""

    concurrency: int
    direct_per_wave: bool
    wave_delay: WaveDelay
    request_timeout: float
    global_timeout: float
    max_waves: int = 0

    @classmethod
    def for_ticket(cls) -> "OperationConfig":
        """Get ticket race configuration from settings."""
        return cls(
            concurrency=settings.ticket_concurrency,
            direct_per_wave=settings.ticket_direct_per_wave,
            wave_delay=WaveDelay(settings.ticket_wave_delay, settings.ticket_wave_jitter),
            request_timeout=settings.ticket_request_timeout,
            global_timeout=settings.ticket_global_timeout,
            max_waves=settings.ticket_max_waves,
        )

    @classmethod
    def for_submit(cls) -> "OperationConfig":
        """Get submit race configuration from settings."""
        return cls(
            concurrency=settings.submit_concurrency,
            direct_per_wave=settings.submit_direct_per_wave,
            wave_delay=WaveDelay(settings.submit_wave_delay, settings.submit_wave_jitter),
            request_timeout=settings.submit_request_timeout,
            global_timeout=settings.submit_global_timeout,
            max_waves=settings.submit_max_waves,
        )


@dataclass
class AttemptResult:
    """Raw outcome of one outbound attempt."""

    relay: str | None
    target_index: int = 0
    status_code: int | None = None
    payload: Any = None
    body: str = ""
    is_timeout: bool = False
    error: AttemptError | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        """Check if no response arrived."""
        return self.error is not None

    def body_text(self) -> str:
        """Get body for journals: re-encoded JSON if parsed, raw text otherwise."""
        if self.payload is not None:
            return json.dumps(self.payload, ensure_ascii=False)
        return self.body


class RaceOperation(ABC):
    """One backend call that can be raced across relays."""

    name: str = "operation"
    timeout_message: str = "operation timeout"

    def __init__(self, config: OperationConfig, headers: dict[str, str], target: str | None = None) -> None:
        """Initialize operation.

        Args:
            config: Wave shape and time limits
            headers: Outbound request headers
            target: Backend base URL
        """
        self.config = config
        self.headers = headers
        self.target = (target or settings.backend_target).rstrip("/")

    @property
    def target_count(self) -> int:
        """Number of independent plans raced per wave."""
        return 1

    def describe(self) -> str:
        """Get journal START description."""
        return f"concurrency={self.config.concurrency} direct_per_wave={self.config.direct_per_wave}"

    async def _request(
        self, client: httpx.AsyncClient, relay: str | None, target_index: int, method: str, url: str, **kwargs: Any
    ) -> AttemptResult:
        result = AttemptResult(relay=relay, target_index=target_index)
        try:
            response = await client.request(method, url, headers=self.headers, **kwargs)
        except httpx.TimeoutException as e:
            result.is_timeout = True
            result.error = AttemptError(relay, e)
            return result
        except httpx.HTTPError as e:
            result.error = AttemptError(relay, e)
            return result

        result.status_code = response.status_code
        result.body = response.text
        try:
            result.payload = json.loads(result.body) if result.body else {}
        except ValueError:
            result.payload = None
        return result

    @abstractmethod
    async def attempt(self, client: httpx.AsyncClient, relay: str | None, target_index: int) -> AttemptResult:
        """Perform one attempt.

        Args:
            client: Client routed through the slot's relay
            relay: Relay address or None for direct
            target_index: Index of the plan the slot belongs to

        Returns:
            Attempt result (never raises for network failures)
        """

    @abstractmethod
    def is_hit(self, result: AttemptResult) -> bool:
        """Check whether the raw result is a hit (used for journals)."""

    def accept(self, result: AttemptResult) -> bool:
        """Check whether a result wins the wave.

        Args:
            result: Attempt result

        Returns:
            True if acceptable
        """
        return self.is_hit(result)

    @abstractmethod
    def journal_line(self, label: str, result: AttemptResult) -> str:
        """Format the journal line of one attempt."""

    @abstractmethod
    def success_payload(self, result: AttemptResult) -> dict[str, Any]:
        """Build the response returned to the caller on success."""


def extract_ticket(payload: Any) -> str | None:
    """Get ``data.ticket`` from a ticket response.

    Args:
        payload: Decoded response body

    Returns:
        Ticket or None
    """
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    return data.get("ticket") or None


class TicketOperation(RaceOperation):
    """Fetch a queue ticket."""

    name = "ticket"
    timeout_message = "ticket acquire timeout"

    def __init__(
        self,
        config: OperationConfig,
        headers: dict[str, str],
        target: str | None = None,
        path: str | None = None,
        simulation_enabled: bool | None = None,
        hit_keep_rate: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize ticket operation.

        Args:
            config: Wave shape and time limits
            headers: Outbound request headers
            target: Backend base URL
            path: Ticket entry path
            simulation_enabled: Randomly drop hits (load testing)
            hit_keep_rate: Share of hits kept in simulation mode
            rng: Random source for simulation
        """
        super().__init__(config, headers, target)
        self.url = self.target + (path or settings.ticket_path)
        self.simulation_enabled = settings.simulation_enabled if simulation_enabled is None else simulation_enabled
        self.hit_keep_rate = settings.simulation_hit_keep_rate if hit_keep_rate is None else hit_keep_rate
        self._rng = rng or random.Random()

    async def attempt(self, client: httpx.AsyncClient, relay: str | None, target_index: int) -> AttemptResult:
        result = await self._request(client, relay, target_index, "GET", self.url)
        result.extra["ticket"] = extract_ticket(result.payload)
        return result

    def is_hit(self, result: AttemptResult) -> bool:
        return result.extra.get("ticket") is not None

    def accept(self, result: AttemptResult) -> bool:
        if not self.is_hit(result):
            return False
        if self.simulation_enabled and self._rng.random() >= self.hit_keep_rate:
            return False
        return True

    def journal_line(self, label: str, result: AttemptResult) -> str:
        status = result.status_code if result.status_code is not None else "ERR"
        hit = "HIT" if self.is_hit(result) else "null"
        body = result.body_text() if not result.failed else str(result.error)
        return f"[{label}] status={status} ticket={hit} BODY={body}"

    def success_payload(self, result: AttemptResult) -> dict[str, Any]:
        return {"data": {"ticket": result.extra["ticket"]}, "success": True}


class SubmitVerdict(str, Enum):
    """Classification of a submission response."""

    SUCCESS = "success"
    DUPLICATE_SUCCESS = "duplicate_success"
    FAILURE = "failure"


def classify_submit_response(payload: Any, duplicate_marker: str | None = None) -> SubmitVerdict:
    """Classify a submission response.

    The backend reports an already-applied submission only through its
    message text, so that case is matched by substring.

    Args:
        payload: Decoded response body
        duplicate_marker: Message fragment marking a duplicate submission

    Returns:
        Submission verdict
    """
    if not isinstance(payload, dict):
        return SubmitVerdict.FAILURE
    if payload.get("success") is True:
        return SubmitVerdict.SUCCESS

    marker = duplicate_marker or settings.submit_duplicate_marker
    message = payload.get("message")
    if isinstance(message, str) and marker and marker in message:
        return SubmitVerdict.DUPLICATE_SUCCESS
    return SubmitVerdict.FAILURE


class Quota(BaseModel):
    """Subsidy quota to submit."""

    tourismSubsidyId: Any
    foodSubsidyId: Any | None = None


class SubmitRequest(BaseModel):
    """Quota submission request body."""

    uniqueId: str = Field(..., min_length=1)
    ticket: str = Field(..., min_length=1)
    quotas: list[Quota] = Field(..., min_length=1)

    @field_validator("uniqueId", mode="before")
    @classmethod
    def coerce_unique_id(cls, v: Any) -> Any:
        """Accept numeric ids."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class SubmitOperation(RaceOperation):
    """Submit a ticket against one of several quotas."""

    name = "submit"
    timeout_message = "submit timeout"

    def __init__(
        self,
        config: OperationConfig,
        headers: dict[str, str],
        request: SubmitRequest,
        target: str | None = None,
        path: str | None = None,
        duplicate_marker: str | None = None,
    ) -> None:
        """Initialize submit operation.

        Args:
            config: Wave shape and time limits
            headers: Outbound request headers
            request: Validated submission request
            target: Backend base URL
            path: Submission path
            duplicate_marker: Message fragment marking a duplicate submission
        """
        super().__init__(config, headers, target)
        self.request = request
        self.url = self.target + (path or settings.submit_path)
        self.duplicate_marker = duplicate_marker or settings.submit_duplicate_marker
        self.payloads = [self._quota_payload(q) for q in request.quotas]

    @classmethod
    def from_body(cls, body: Any, config: OperationConfig, headers: dict[str, str], **kwargs: Any) -> "SubmitOperation":
        """Validate a caller body and build the operation.

        Args:
            body: Decoded request body
            config: Wave shape and time limits
            headers: Outbound request headers
            **kwargs: Extra operation arguments

        Returns:
            Submit operation

        Raises:
            MalformedInput: If uniqueId, ticket or quotas are missing
        """
        if not isinstance(body, dict):
            raise MalformedInput("invalid payload")
        try:
            request = SubmitRequest.model_validate(body)
        except ValidationError as e:
            raise MalformedInput("invalid payload") from e
        return cls(config, headers, request, **kwargs)

    def _quota_payload(self, quota: Quota) -> dict[str, Any]:
        payload = {
            "uniqueId": self.request.uniqueId,
            "tourismSubsidyId": quota.tourismSubsidyId,
            "ticket": self.request.ticket,
        }
        if quota.foodSubsidyId:
            payload["foodSubsidyId"] = quota.foodSubsidyId
        return payload

    @property
    def target_count(self) -> int:
        return len(self.payloads)

    def describe(self) -> str:
        return f"quotas={len(self.payloads)} {super().describe()}"

    async def attempt(self, client: httpx.AsyncClient, relay: str | None, target_index: int) -> AttemptResult:
        result = await self._request(
            client, relay, target_index, "POST", self.url, json=self.payloads[target_index]
        )
        result.extra["verdict"] = classify_submit_response(result.payload, self.duplicate_marker)
        return result

    def is_hit(self, result: AttemptResult) -> bool:
        return result.extra.get("verdict", SubmitVerdict.FAILURE) != SubmitVerdict.FAILURE

    def journal_line(self, label: str, result: AttemptResult) -> str:
        status = result.status_code if result.status_code is not None else "ERR"
        quota = f"quota{result.target_index + 1}"
        verdict = result.extra.get("verdict", SubmitVerdict.FAILURE)
        if verdict == SubmitVerdict.DUPLICATE_SUCCESS:
            return f"[{label}] {quota} status={status} DUPLICATE BODY={result.body_text()}"
        if verdict == SubmitVerdict.SUCCESS:
            return f"[{label}] {quota} status={status} SUCCESS BODY={result.body_text()}"

        if result.failed:
            message = str(result.error)
        elif isinstance(result.payload, dict) and result.payload.get("message"):
            message = str(result.payload["message"])
        else:
            message = "unknown error"
        return f"[{label}] {quota} status={status} FAIL {message} BODY={result.body_text()}"

    def success_payload(self, result: AttemptResult) -> dict[str, Any]:
        return {
            "success": True,
            "isDuplicate": result.extra["verdict"] == SubmitVerdict.DUPLICATE_SUCCESS,
            "quotaIndex": result.target_index,
            "response": result.payload,
        }
