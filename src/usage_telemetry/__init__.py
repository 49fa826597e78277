"""Usage Telemetry - token usage collection from a locally running language server."""

from importlib.metadata import version

try:
    __version__ = version("usage-telemetry")
except Exception:
    __version__ = "0.1.0"  # Fallback for development

# Re-export public API
from usage_telemetry.controller import (
    DailyReport,
    DiscoveryResult,
    SessionReport,
    UsageController,
)
from usage_telemetry.daily import DailyModelStats
from usage_telemetry.stats import AggregatedStats, ModelStats
from usage_telemetry.transport import ConnectionHandle

__all__ = [
    # Version
    "__version__",
    # Controller
    "UsageController",
    "DiscoveryResult",
    "SessionReport",
    "DailyReport",
    # Data
    "ConnectionHandle",
    "AggregatedStats",
    "ModelStats",
    "DailyModelStats",
]
