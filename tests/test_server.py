"""Tests for the MCP server."""

from unittest.mock import patch

import pytest
from conftest import metadata_item

from usage_telemetry import server
from usage_telemetry.server import (
    discover_backend,
    get_daily_report,
    get_status,
    list_sessions,
    refresh_session,
)


@pytest.fixture(autouse=True)
def wired(controller):
    """Point the server's module-level controller at the fake backend."""
    with patch.object(server, "controller", controller):
        yield controller


def test_get_status():
    """Test that get_status returns expected fields."""
    # FastMCP wraps functions - access the underlying fn
    result = get_status.fn()
    assert result["status"] == "ok"
    assert "version" in result
    assert result["connected"] is False
    assert result["cache"] == "Cache: empty"


def test_discover_backend():
    result = discover_backend.fn()
    assert result["status"] == "connected"
    assert result["port"] == 42100


def test_list_sessions_limit(backend):
    for i in range(5):
        backend.add_session(f"s{i}", f"2026-01-0{i + 1}T00:00:00Z")
    result = list_sessions.fn(limit=2)
    assert result["status"] == "ok"
    assert [s["session_id"] for s in result["sessions"]] == ["s4", "s3"]


def test_refresh_session(backend):
    backend.add_session("a", "2026-01-01T00:00:00Z", metadata=[metadata_item(input_tokens=9)])
    first = refresh_session.fn()
    second = refresh_session.fn(session_id="a")
    assert first["mode"] == "cold"
    assert first["stats"]["total_input"] == 9
    assert second["mode"] == "hit"


def test_get_daily_report():
    result = get_daily_report.fn(days=4)
    assert result["status"] == "ok"
    assert result["day_window"] == 4
    assert len(result["days"]) == 4
