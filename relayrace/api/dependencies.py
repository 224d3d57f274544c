"""Service wiring shared by the API routes."""

from dataclasses import dataclass

from fastapi import Request

from relayrace.core.config import settings
from relayrace.core.scheduler import RefreshScheduler
from relayrace.proxy.connector import RelayConnector
from relayrace.proxy.provider import RelayProviderClient
from relayrace.proxy.quality import QualityMonitor
from relayrace.proxy.registry import SessionRelayRegistry
from relayrace.proxy.validator import RelayValidator
from relayrace.race.engine import WaveRaceEngine


@dataclass
class Services:
    """Long-lived components of one running service."""

    provider: RelayProviderClient
    connector: RelayConnector
    registry: SessionRelayRegistry
    monitor: QualityMonitor
    engine: WaveRaceEngine
    scheduler: RefreshScheduler


def build_services() -> Services:
    """Build components from settings.

    Returns:
        Wired services
    """
    provider = RelayProviderClient()
    connector = RelayConnector()
    validator = RelayValidator(connector) if settings.relay_validate_on_acquire else None
    registry = SessionRelayRegistry(provider, validator=validator)
    monitor = QualityMonitor(registry)
    engine = WaveRaceEngine(registry, provider, connector)
    scheduler = RefreshScheduler(registry, monitor)
    return Services(
        provider=provider,
        connector=connector,
        registry=registry,
        monitor=monitor,
        engine=engine,
        scheduler=scheduler,
    )


def get_services(request: Request) -> Services:
    """Get services of the running application.

    Args:
        request: Incoming request

    Returns:
        Wired services
    """
    return request.app.state.services


def get_session_key(request: Request) -> str:
    """Get caller session key from the ``x-proxy-key`` header.

    Args:
        request: Incoming request

    Returns:
        Session key
    """
    return request.headers.get("x-proxy-key") or settings.default_session_key
