"""MCP Usage Telemetry Server.

Provides tools for querying token usage of a locally running language server:
- get_status: Connection and cache status
- discover_backend: Locate and verify the backend process
- list_sessions: Sessions known to the backend, newest first
- refresh_session: Token statistics for one session (delta-cached)
- get_daily_report: Per-day, per-model token usage
"""

import logging
import os

from fastmcp import FastMCP

from usage_telemetry import __version__
from usage_telemetry.controller import UsageController

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("usage-telemetry")
if os.environ.get("DEV_MODE"):
    logger.setLevel(logging.DEBUG)

# Initialize MCP server
mcp = FastMCP("usage-telemetry")

# One controller owns the connection and the session cache
controller = UsageController()


@mcp.tool()
def get_status() -> dict:
    """Get connection and cache status.

    Returns:
        Status info including backend port, cache state and settings
    """
    return {
        "status": "ok",
        "version": __version__,
        **controller.status(),
    }


@mcp.tool()
def discover_backend(force: bool = False) -> dict:
    """Locate the local language server and verify a connection.

    Args:
        force: Rescan even if a connection is already established

    Returns:
        Discovery status, port and scan diagnostics
    """
    return controller.discover(force=force).to_dict()


@mcp.tool()
def list_sessions(limit: int = 20) -> dict:
    """List sessions known to the backend, newest first.

    Args:
        limit: Maximum sessions to return (default: 20)

    Returns:
        Session summaries with id, summary, last-modified time and step count
    """
    result = controller.list_sessions().to_dict()
    result["sessions"] = result["sessions"][:limit]
    return result


@mcp.tool()
def refresh_session(session_id: str | None = None, force: bool = False) -> dict:
    """Get token statistics for a session.

    Only records added since the last call are fetched; an unchanged session
    is served from cache.

    Args:
        session_id: Session to refresh (default: most recently modified)
        force: Fetch new records even if the session timestamp is unchanged

    Returns:
        Totals, per-model breakdown, context size and cache mode
    """
    return controller.refresh_session(session_id=session_id, force=force).to_dict()


@mcp.tool()
def get_daily_report(days: int | None = None) -> dict:
    """Get token usage per day and model for recently modified sessions.

    Args:
        days: Days to include, today included (default: configured day window)

    Returns:
        Daily buckets (newest first) with per-model totals and cache efficiency
    """
    return controller.get_daily_report(day_window=days).to_dict()


def create_app():
    """Create the ASGI app for uvicorn."""
    # stateless_http=True allows resilience to server restarts
    return mcp.http_app(stateless_http=True)


def main():
    """Run the MCP server."""
    import uvicorn

    port = int(os.environ.get("PORT", 8082))
    host = os.environ.get("HOST", "127.0.0.1")

    print(f"Starting Usage Telemetry on {host}:{port}")
    print(
        f"Add to Claude Code: claude mcp add --transport http --scope user "
        f"usage-telemetry http://{host}:{port}/mcp"
    )

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
