"""Proxy module - Relay provider, connector, session registry and quality monitoring."""

from .connector import RelayConnector
from .provider import RelayProviderClient
from .quality import QualityMonitor
from .registry import SessionRelayRegistry
from .validator import RelayValidator

__all__ = ["RelayProviderClient", "RelayConnector", "SessionRelayRegistry", "QualityMonitor", "RelayValidator"]
