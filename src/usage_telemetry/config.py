"""Runtime settings and fixed timing constants."""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger("usage-telemetry")

# Fixed timing (seconds)
PROCESS_SCAN_RETRY_DELAY = 0.1
PROCESS_CMD_TIMEOUT = 15.0
DIAGNOSTIC_CMD_TIMEOUT = 5.0
PROBE_TIMEOUT = 5.0
HTTP_TIMEOUT = 10.0
REQUEST_DELAY = 0.02

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_POLL_INTERVAL = 60
DEFAULT_DAY_WINDOW = 8

POLL_INTERVAL_ENV = "USAGE_TELEMETRY_POLL_INTERVAL"
DAY_WINDOW_ENV = "USAGE_TELEMETRY_DAY_WINDOW"


def _int_from_env(key: str, default: int) -> int:
    """Read a positive integer from the environment, falling back to default."""
    raw = os.environ.get(key)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {key}={raw!r}, using {default}")
        return default
    if value < 1:
        logger.warning(f"Ignoring non-positive {key}={value}, using {default}")
        return default
    return value


@dataclass(frozen=True)
class Settings:
    """Configuration consumed by the controller."""

    poll_interval: int = DEFAULT_POLL_INTERVAL  # seconds between timer refreshes
    day_window: int = DEFAULT_DAY_WINDOW  # days in the daily report, today included

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            poll_interval=_int_from_env(POLL_INTERVAL_ENV, DEFAULT_POLL_INTERVAL),
            day_window=_int_from_env(DAY_WINDOW_ENV, DEFAULT_DAY_WINDOW),
        )
