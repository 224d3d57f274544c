"""Centralized configuration management using Pydantic Settings."""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class RelayScheme(str, Enum):
    """Transport scheme spoken by upstream relays."""

    HTTP = "http"
    HTTPS = "https"
    SOCKS5 = "socks5"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="RelayRace", description="Application name")
    app_env: Environment = Field(default=Environment.DEVELOPMENT, description="Environment")
    debug: bool = Field(default=True, description="Debug mode")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    logs_path: str = Field(default="./logs", description="Directory for log files and journals")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=5180, ge=1, le=65535, description="API port")

    # Backend
    backend_target: str = Field(
        default="https://ai-smart-subsidy-backend.digitalhainan.com.cn",
        description="Base URL of the backend being raced",
    )
    ticket_path: str = Field(default="/hyd-queue/core/simple/entry", description="Ticket entry path")
    submit_path: str = Field(
        default="/ai-smart-subsidy-approval/api/apply/submitApply", description="Quota submission path"
    )
    forward_headers: list[str] = Field(
        default=["authorization", "uid"], description="Caller headers forwarded to the backend"
    )
    default_session_key: str = Field(default="default", description="Session key when header is absent")

    # Relay provider and lifecycle
    relay_enabled: bool = Field(default=False, description="Use upstream relays (runtime toggle)")
    relay_provider_url: str = Field(default="", description="Relay provider feed URL")
    relay_scheme: RelayScheme = Field(default=RelayScheme.HTTP, description="Relay transport scheme")
    relay_provider_timeout: float = Field(default=8.0, gt=0, description="Provider fetch timeout in seconds")
    relay_refresh_advance: float = Field(
        default=10.0, ge=0, description="Seconds before provider expiry to treat a relay as expired"
    )
    relay_min_grace: float = Field(default=15.0, ge=0, description="Minimum lifetime granted to a new relay")
    relay_default_ttl: float = Field(
        default=60.0, gt=0, description="Assumed relay lifetime when the feed has no expiry"
    )
    relay_verify_tls: bool = Field(default=False, description="Validate certificates of TLS relays")
    relay_validate_on_acquire: bool = Field(default=False, description="Validate new relays before binding")
    relay_validation_timeout: float = Field(default=10.0, gt=0, description="Relay validation timeout")

    # Quality monitoring
    quality_check_interval: int = Field(default=30, ge=1, description="Quality sweep interval in seconds")
    consecutive_error_threshold: int = Field(default=5, ge=1, description="Hard errors before rotation")
    performance_request_threshold: int = Field(
        default=15, ge=1, description="Requests per interval below which a relay is slow"
    )
    performance_anomaly_threshold: int = Field(
        default=2, ge=1, description="Consecutive slow intervals before rotation"
    )
    inactivity_ticks: int = Field(default=6, ge=2, description="Unchanged ticks before eviction")
    throughput_history_size: int = Field(default=7, ge=2, description="Throughput samples kept per session")

    # Background refresh
    refresh_check_interval: float | None = Field(
        default=None, gt=0, description="Refresh sweep interval (defaults to min(advance, 30s))"
    )
    refresh_lead_time: float = Field(default=5.0, ge=0, description="Refresh this long before safe expiry")
    refresh_max_retries: int = Field(default=2, ge=0, description="Re-acquisition retries per refresh")

    # Ticket race
    ticket_concurrency: int = Field(default=5, ge=1, description="Attempts per ticket wave")
    ticket_direct_per_wave: bool = Field(default=True, description="Reserve slot 0 for a direct attempt")
    ticket_wave_delay: float = Field(default=0.4, ge=0, description="Pause between ticket waves")
    ticket_wave_jitter: float = Field(default=0.05, ge=0, description="Random extra pause between waves")
    ticket_request_timeout: float = Field(default=8.0, gt=0, description="Per-attempt timeout")
    ticket_global_timeout: float = Field(default=20.0, gt=0, description="Deadline for one ticket call")
    ticket_max_waves: int = Field(default=0, description="Wave cap (0 or less means unlimited)")
    simulation_enabled: bool = Field(default=False, description="Downgrade ticket hits for load tests")
    simulation_hit_keep_rate: float = Field(default=1.0, description="Share of ticket hits kept")

    # Submit race
    submit_concurrency: int = Field(default=5, ge=1, description="Attempts per quota per wave")
    submit_direct_per_wave: bool = Field(default=True, description="Reserve slot 0 for a direct attempt")
    submit_wave_delay: float = Field(default=0.05, ge=0, description="Pause between submit waves")
    submit_wave_jitter: float = Field(default=0.0, ge=0, description="Random extra pause between waves")
    submit_request_timeout: float = Field(default=12.0, gt=0, description="Per-attempt timeout")
    submit_global_timeout: float = Field(default=25.0, gt=0, description="Deadline for one submission")
    submit_max_waves: int = Field(default=0, description="Wave cap (0 or less means unlimited)")
    submit_duplicate_marker: str = Field(
        default="重复提交", description="Backend message marking an already-applied submission"
    )

    @field_validator("simulation_hit_keep_rate")
    @classmethod
    def validate_keep_rate(cls, v: float) -> float:
        """Ensure keep rate is a probability."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("simulation_hit_keep_rate must be between 0 and 1")
        return v

    @field_validator("relay_provider_url", "backend_target")
    @classmethod
    def strip_url(cls, v: str) -> str:
        """Drop surrounding whitespace from URLs."""
        return v.strip()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == Environment.PRODUCTION

    @property
    def refresh_interval(self) -> float:
        """Get background refresh interval in seconds."""
        if self.refresh_check_interval is not None:
            return self.refresh_check_interval
        return min(self.relay_refresh_advance or 10.0, 30.0)

    @property
    def logs_dir(self) -> Path:
        """Get logs directory path."""
        path = Path(self.logs_path)
        path.mkdir(parents=True, exist_ok=True)
        return path


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
