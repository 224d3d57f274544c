"""Tests for raced operations."""

import json
import random

import httpx
import pytest

from relayrace.core.errors import MalformedInput
from relayrace.core.retry import WaveDelay
from relayrace.race.operations import (
    AttemptResult,
    OperationConfig,
    SubmitOperation,
    SubmitVerdict,
    TicketOperation,
    build_request_headers,
    classify_submit_response,
    extract_ticket,
)

BACKEND = "http://backend.test"


@pytest.fixture
def config():
    """Small race configuration."""
    return OperationConfig(
        concurrency=3,
        direct_per_wave=True,
        wave_delay=WaveDelay(0.01),
        request_timeout=1,
        global_timeout=2,
    )


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestRequestHeaders:
    """Tests for outbound headers."""

    def test_forwards_selected_headers(self):
        """Test case-insensitive forwarding."""
        headers = build_request_headers(
            {"Authorization": "Bearer x", "UID": "42", "Cookie": "secret"},
            forward=["authorization", "uid"],
        )

        assert headers["authorization"] == "Bearer x"
        assert headers["uid"] == "42"
        assert "Cookie" not in headers
        assert "Content-Type" not in headers

    def test_json_body(self):
        """Test JSON content type."""
        headers = build_request_headers({}, forward=[], json_body=True)
        assert headers["Content-Type"] == "application/json"


class TestTicketOperation:
    """Tests for TicketOperation."""

    def test_extract_ticket(self):
        """Test ticket extraction."""
        assert extract_ticket({"data": {"ticket": "T1"}}) == "T1"
        assert extract_ticket({"data": {"ticket": ""}}) is None
        assert extract_ticket({"data": None}) is None
        assert extract_ticket("T1") is None

    @pytest.mark.asyncio
    async def test_hit(self, config):
        """Test ticket response wins."""
        op = TicketOperation(config, {}, target=BACKEND, path="/entry", simulation_enabled=False)

        async with mock_client(lambda request: httpx.Response(200, json={"data": {"ticket": "T1"}})) as client:
            result = await op.attempt(client, None, 0)

        assert op.is_hit(result)
        assert op.accept(result)
        assert op.success_payload(result) == {"data": {"ticket": "T1"}, "success": True}
        assert "ticket=HIT" in op.journal_line("direct", result)

    @pytest.mark.asyncio
    async def test_miss(self, config):
        """Test response without ticket loses."""
        op = TicketOperation(config, {}, target=BACKEND, path="/entry", simulation_enabled=False)

        async with mock_client(lambda request: httpx.Response(200, json={"data": {}})) as client:
            result = await op.attempt(client, None, 0)

        assert not op.accept(result)
        assert "ticket=null" in op.journal_line("direct", result)

    @pytest.mark.asyncio
    async def test_non_json_body(self, config):
        """Test HTML error pages are journaled raw."""
        op = TicketOperation(config, {}, target=BACKEND, path="/entry", simulation_enabled=False)

        async with mock_client(lambda request: httpx.Response(502, text="<html>bad</html>")) as client:
            result = await op.attempt(client, "http://10.0.0.1:80", 0)

        assert result.status_code == 502
        assert result.payload is None
        assert op.journal_line("10.0.0.1:80", result).endswith("BODY=<html>bad</html>")

    @pytest.mark.asyncio
    async def test_timeout(self, config):
        """Test timeouts are flagged."""

        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        op = TicketOperation(config, {}, target=BACKEND, path="/entry", simulation_enabled=False)

        async with mock_client(handler) as client:
            result = await op.attempt(client, "http://10.0.0.1:80", 0)

        assert result.is_timeout is True
        assert result.failed
        assert "status=ERR" in op.journal_line("10.0.0.1:80", result)

    def test_simulation_drops_hits(self, config):
        """Test simulation downgrades hits but journals stay raw."""
        op = TicketOperation(
            config, {}, target=BACKEND, simulation_enabled=True, hit_keep_rate=0.0, rng=random.Random(3)
        )
        result = AttemptResult(relay=None, status_code=200, payload={}, extra={"ticket": "T1"})

        assert op.is_hit(result)
        assert not op.accept(result)

    def test_simulation_full_keep_rate(self, config):
        """Test keep rate of one keeps every hit."""
        op = TicketOperation(config, {}, target=BACKEND, simulation_enabled=True, hit_keep_rate=1.0)
        result = AttemptResult(relay=None, status_code=200, payload={}, extra={"ticket": "T1"})

        assert op.accept(result)


class TestClassifySubmitResponse:
    """Tests for submission classification."""

    def test_success(self):
        assert classify_submit_response({"success": True}) == SubmitVerdict.SUCCESS

    def test_duplicate(self):
        """Test duplicate marker in the message."""
        payload = {"success": False, "message": "请勿重复提交申请"}
        assert classify_submit_response(payload, "重复提交") == SubmitVerdict.DUPLICATE_SUCCESS

    def test_failure(self):
        assert classify_submit_response({"success": False, "message": "quota exhausted"}) == SubmitVerdict.FAILURE
        assert classify_submit_response({"success": "true"}) == SubmitVerdict.FAILURE
        assert classify_submit_response(None) == SubmitVerdict.FAILURE


class TestSubmitOperation:
    """Tests for SubmitOperation."""

    @pytest.mark.parametrize(
        "body",
        [
            None,
            [],
            {},
            {"uniqueId": "U", "ticket": "T"},
            {"uniqueId": "U", "ticket": "T", "quotas": []},
            {"uniqueId": "", "ticket": "T", "quotas": [{"tourismSubsidyId": "A"}]},
            {"uniqueId": "U", "ticket": "", "quotas": [{"tourismSubsidyId": "A"}]},
            {"uniqueId": "U", "ticket": "T", "quotas": "A"},
        ],
    )
    def test_invalid_payload(self, config, body):
        """Test malformed bodies are rejected."""
        with pytest.raises(MalformedInput, match="invalid payload"):
            SubmitOperation.from_body(body, config, {})

    def test_quota_payloads(self, config, sample_submit_body):
        """Test one payload per quota, food id only when present."""
        op = SubmitOperation.from_body(sample_submit_body, config, {}, target=BACKEND)

        assert op.target_count == 2
        assert op.payloads == [
            {"uniqueId": "U-1001", "tourismSubsidyId": "A", "ticket": "T-abc", "foodSubsidyId": "F1"},
            {"uniqueId": "U-1001", "tourismSubsidyId": "B", "ticket": "T-abc"},
        ]

    def test_numeric_unique_id(self, config):
        """Test numeric ids are accepted."""
        op = SubmitOperation.from_body(
            {"uniqueId": 1001, "ticket": "T", "quotas": [{"tourismSubsidyId": 7}]}, config, {}
        )
        assert op.payloads[0]["uniqueId"] == "1001"

    @pytest.mark.asyncio
    async def test_attempt_posts_quota(self, config, sample_submit_body):
        """Test attempt sends the payload of its target."""
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"success": False, "message": "请勿重复提交"})

        op = SubmitOperation.from_body(sample_submit_body, config, {}, target=BACKEND, duplicate_marker="重复提交")

        async with mock_client(handler) as client:
            result = await op.attempt(client, None, 1)

        assert seen[0]["tourismSubsidyId"] == "B"
        assert op.accept(result)
        assert op.success_payload(result) == {
            "success": True,
            "isDuplicate": True,
            "quotaIndex": 1,
            "response": {"success": False, "message": "请勿重复提交"},
        }
        assert "quota2" in op.journal_line("direct", result)
        assert "DUPLICATE" in op.journal_line("direct", result)

    @pytest.mark.asyncio
    async def test_failure_journal(self, config, sample_submit_body):
        """Test failures journal the backend message."""
        op = SubmitOperation.from_body(sample_submit_body, config, {}, target=BACKEND)

        async with mock_client(lambda request: httpx.Response(200, json={"success": False, "message": "no quota"})) as client:
            result = await op.attempt(client, None, 0)

        assert not op.accept(result)
        assert "FAIL no quota" in op.journal_line("direct", result)
