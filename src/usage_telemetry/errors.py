"""Exception types raised inside the telemetry core.

None of these escape the controller: its public operations convert them into
status fields on their result objects.
"""


class TelemetryError(Exception):
    """Base class for usage-telemetry errors."""


class DiscoveryFailure(TelemetryError):
    """No reachable backend was found after retries and fallbacks."""


class TransportError(TelemetryError):
    """A single request to the backend failed."""

    def __init__(self, method: str, message: str, status_code: int | None = None):
        super().__init__(f"{method}: {message}")
        self.method = method
        self.status_code = status_code


class CacheInconsistency(TelemetryError):
    """Cached offsets or session identity no longer match the backend."""
