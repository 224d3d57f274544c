"""Tests for the relay quality monitor."""

import asyncio

import pytest
import pytest_asyncio

from relayrace.core.errors import ProviderError
from relayrace.proxy.quality import QualityMonitor, Verdict
from relayrace.proxy.registry import SessionRelayRegistry


@pytest.fixture
def registry(provider, clock):
    """Enabled registry."""
    return SessionRelayRegistry(provider, enabled=True, history_size=7, clock=clock)


@pytest.fixture
def monitor(registry):
    """Monitor with default thresholds: 15 requests, 2 anomalies, 6 ticks."""
    return QualityMonitor(
        registry,
        performance_request_threshold=15,
        performance_anomaly_threshold=2,
        inactivity_ticks=6,
    )


@pytest_asyncio.fixture
async def entry(registry, provider, make_lease):
    """Session 'alice' bound to 10.0.0.1."""
    provider.fetch_one.return_value = make_lease("10.0.0.1")
    return await registry.ensure_fresh("alice")


def tick(monitor, registry, clock, key="alice"):
    clock.advance(30)
    return monitor.judge(key, registry.get(key), clock())


class TestJudge:
    """Tests for per-tick verdicts."""

    @pytest.mark.asyncio
    async def test_first_tick_is_baseline(self, monitor, registry, clock, entry):
        """Test first tick only records a sample."""
        entry.request_count = 3

        assert tick(monitor, registry, clock) == Verdict.BASELINE
        assert entry.first_report_emitted is True
        assert entry.performance_anomalies == 0
        assert len(registry.history("alice")) == 1

    @pytest.mark.asyncio
    async def test_two_slow_ticks_rotate(self, monitor, registry, clock, entry):
        """Test slow throughput twice in a row asks for rotation."""
        tick(monitor, registry, clock)
        entry.request_count += 5
        assert tick(monitor, registry, clock) == Verdict.SLOW
        entry.request_count += 5
        assert tick(monitor, registry, clock) == Verdict.ROTATE

    @pytest.mark.asyncio
    async def test_healthy_resets_anomalies(self, monitor, registry, clock, entry):
        """Test enough throughput clears the anomaly count."""
        tick(monitor, registry, clock)
        entry.request_count += 5
        tick(monitor, registry, clock)
        entry.request_count += 20

        assert tick(monitor, registry, clock) == Verdict.HEALTHY
        assert entry.performance_anomalies == 0

    @pytest.mark.asyncio
    async def test_zero_delta_is_not_slow(self, monitor, registry, clock, entry):
        """Test idle intervals reset anomalies instead of counting."""
        tick(monitor, registry, clock)
        entry.request_count += 5
        assert tick(monitor, registry, clock) == Verdict.SLOW

        assert tick(monitor, registry, clock) == Verdict.IDLE
        assert entry.performance_anomalies == 0
        assert entry.zero_request_streak == 1

        entry.request_count += 5
        assert tick(monitor, registry, clock) == Verdict.SLOW

    @pytest.mark.asyncio
    async def test_six_identical_ticks_evict(self, monitor, registry, clock, entry):
        """Test inactivity over the window evicts."""
        verdicts = [tick(monitor, registry, clock) for _ in range(6)]

        assert Verdict.EVICT not in verdicts[:5]
        assert verdicts[5] == Verdict.EVICT

    @pytest.mark.asyncio
    async def test_activity_in_window_prevents_eviction(self, monitor, registry, clock, entry):
        """Test five identical ticks then a change do not evict."""
        verdicts = [tick(monitor, registry, clock) for _ in range(5)]
        entry.request_count += 20
        verdicts.append(tick(monitor, registry, clock))

        assert Verdict.EVICT not in verdicts


class TestRunOnce:
    """Tests for full sweeps."""

    @pytest.mark.asyncio
    async def test_sweep_evicts_inactive(self, monitor, registry, clock, entry):
        """Test sweep removes abandoned sessions."""
        for _ in range(5):
            clock.advance(30)
            report = await monitor.run_once()
            assert report.evicted == []

        clock.advance(30)
        report = await monitor.run_once()

        assert report.evicted == ["alice"]
        assert "alice" not in registry

    @pytest.mark.asyncio
    async def test_rotation(self, monitor, registry, provider, clock, entry, make_lease):
        """Test poor performance rotates the relay."""
        provider.fetch_one.return_value = make_lease("10.0.0.2")

        await monitor.run_once()
        entry.request_count += 5
        await monitor.run_once()
        entry.request_count += 5
        report = await monitor.run_once()

        assert report.rotated == ["alice"]
        assert report.verdicts["alice"] == Verdict.ROTATE
        assert registry.get("alice").relay == "http://10.0.0.2:8000"
        assert registry.get("alice").performance_anomalies == 0

    @pytest.mark.asyncio
    async def test_failed_rotation_evicts(self, monitor, registry, provider, clock, entry):
        """Test a session whose replacement fails is dropped."""
        provider.fetch_one.side_effect = ProviderError("empty", "no relays")

        await monitor.run_once()
        entry.request_count += 5
        await monitor.run_once()
        entry.request_count += 5
        report = await monitor.run_once()

        assert report.failed == ["alice"]
        assert "alice" not in registry

    @pytest.mark.asyncio
    async def test_overlapping_sweep_is_skipped(self, monitor, registry, provider, clock, entry, make_lease):
        """Test a tick arriving mid-rotation returns an empty report."""
        release = asyncio.Event()

        async def blocked_fetch_one():
            await release.wait()
            return make_lease("10.0.0.2")

        provider.fetch_one.side_effect = blocked_fetch_one
        await monitor.run_once()
        entry.request_count += 5
        await monitor.run_once()
        entry.request_count += 5

        running = asyncio.create_task(monitor.run_once())
        while not monitor.is_running:
            await asyncio.sleep(0)
        skipped = await monitor.run_once()
        release.set()
        report = await running

        assert skipped.verdicts == {}
        assert skipped.rotated == []
        assert report.rotated == ["alice"]
        # One fetch for the initial binding, one for the single rotation
        assert provider.fetch_one.await_count == 2
        assert registry.get("alice").relay == "http://10.0.0.2:8000"

    @pytest.mark.asyncio
    async def test_empty_registry(self, monitor):
        """Test sweep over no sessions."""
        report = await monitor.run_once()
        assert report.verdicts == {}
