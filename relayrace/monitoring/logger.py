"""Centralized logging configuration using Loguru."""

import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from relayrace.core.config import settings

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_session_key(key: str) -> str:
    """Make a session key safe to embed in a file name.

    Args:
        key: Raw caller-supplied session key

    Returns:
        Key with every character outside [A-Za-z0-9_-] replaced by '-'
    """
    return _UNSAFE_KEY_CHARS.sub("-", key)


class JournalSink:
    """Loguru sink appending attempt journal lines to per-session daily files.

    Only records bound with ``journal`` and ``session_key`` extras are written.
    Files live under ``<base_dir>/<operation>/<session-key>-<YYYY-MM-DD>.log``.
    """

    def __init__(self, base_dir: str | Path) -> None:
        """Initialize journal sink.

        Args:
            base_dir: Root directory for journal files
        """
        self.base_dir = Path(base_dir)

    def path_for(self, operation: str, session_key: str, day: datetime) -> Path:
        """Get journal file path.

        Args:
            operation: Operation name (ticket, submit)
            session_key: Session key
            day: Timestamp whose date selects the file

        Returns:
            Journal file path
        """
        name = f"{sanitize_session_key(session_key)}-{day:%Y-%m-%d}.log"
        return self.base_dir / operation / name

    def write(self, message: Any) -> None:
        """Append one formatted record.

        Args:
            message: Loguru message (str subclass carrying ``record``)
        """
        record = message.record
        extra = record["extra"]
        path = self.path_for(extra["journal"], extra["session_key"], record["time"])
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(str(message))


def _is_journal(record: dict) -> bool:
    return "journal" in record["extra"]


def _is_application(record: dict) -> bool:
    return "journal" not in record["extra"]


def setup_logging() -> None:
    """Configure Loguru logging for the application."""
    # Remove default handler
    logger.remove()

    # Console format
    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )

    # File format (more detailed)
    file_format = (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
        "{level: <8} | "
        "{name}:{function}:{line} | "
        "{message} | "
        "{extra}"
    )

    logger.add(
        sys.stderr,
        format=console_format,
        level=settings.log_level,
        filter=_is_application,
        colorize=True,
        backtrace=True,
        diagnose=settings.debug,
    )

    logs_dir = settings.logs_dir
    logger.add(
        logs_dir / "relayrace_{time:YYYY-MM-DD}.log",
        format=file_format,
        level="DEBUG",
        filter=_is_application,
        rotation="00:00",  # Rotate at midnight
        retention="30 days",
        compression="gz",
        backtrace=True,
        diagnose=True,
    )

    logger.add(
        logs_dir / "errors_{time:YYYY-MM-DD}.log",
        format=file_format,
        level="ERROR",
        filter=_is_application,
        rotation="00:00",
        retention="90 days",
        compression="gz",
        backtrace=True,
        diagnose=True,
    )

    add_journal_sink(logs_dir)

    logger.info(
        f"Logging initialized | level={settings.log_level} | env={settings.app_env.value}"
    )


def add_journal_sink(base_dir: str | Path) -> int:
    """Install the attempt journal sink.

    Args:
        base_dir: Root directory for journal files

    Returns:
        Loguru handler id
    """
    return logger.add(
        JournalSink(base_dir),
        format="[{time:YYYY-MM-DD HH:mm:ss.SSS}] {message}",
        level="DEBUG",
        filter=_is_journal,
    )


def get_logger(name: str) -> Any:
    """Get a logger instance with the given name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return logger.bind(name=name)


def journal_logger(operation: str, session_key: str) -> Any:
    """Get a logger writing to the attempt journal of one session.

    Args:
        operation: Operation name (ticket, submit)
        session_key: Caller session key

    Returns:
        Bound logger
    """
    return logger.bind(journal=operation, session_key=session_key)


def log_relay_event(relay: str | None, action: str, success: bool = True, **extra: Any) -> None:
    """Log relay lifecycle event.

    Args:
        relay: Relay address (None for direct connection)
        action: Action performed (acquire, rotate, evict, validate, ...)
        success: Whether action was successful
        **extra: Additional context
    """
    status = "SUCCESS" if success else "FAILED"
    bound = logger.bind(relay=relay, action=action, success=success, **extra)
    log_func = bound.info if success else bound.warning

    msg = f"Relay {action} | relay={relay or 'direct'} | status={status}"
    for key, value in extra.items():
        msg += f" | {key}={value}"

    log_func(msg)


def log_race_complete(
    operation: str, session_key: str, outcome: str, waves: int, duration: float, **extra: Any
) -> None:
    """Log race completion event.

    Args:
        operation: Operation name
        session_key: Caller session key
        outcome: Final race state
        waves: Number of waves run
        duration: Race duration in seconds
        **extra: Additional context
    """
    bound = logger.bind(
        operation=operation, session_key=session_key, outcome=outcome, waves=waves, duration=duration, **extra
    )
    log_func = bound.info if outcome == "success" else bound.warning

    log_func(
        f"Race completed | op={operation} | session={session_key} | "
        f"outcome={outcome} | waves={waves} | duration={duration:.2f}s"
    )
