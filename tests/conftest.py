"""Pytest configuration and shared fixtures."""

import json

import httpx
import pytest

from usage_telemetry.config import Settings
from usage_telemetry.controller import UsageController
from usage_telemetry.discovery import ScanDiagnostics
from usage_telemetry.records import parse_metadata, parse_steps
from usage_telemetry.transport import ConnectionHandle, TransportClient

GEMINI_FLASH = "MODEL_PLACEHOLDER_M18"  # "Gemini 3 Flash"
GEMINI_PRO_HIGH = "MODEL_PLACEHOLDER_M8"  # "Gemini 3 Pro (High)"
SONNET = "MODEL_CLAUDE_4_5_SONNET"  # "Claude Sonnet 4.5"


def metadata_item(
    model=GEMINI_FLASH,
    input_tokens=0,
    output_tokens=0,
    cache_read_tokens=0,
    timestamp=None,
    created_at=None,
    context=None,
) -> dict:
    """Raw generatorMetadata entry in the backend's wire shape."""
    chat_model = {
        "model": model,
        "usage": {
            "model": model,
            "inputTokens": str(input_tokens),
            "outputTokens": str(output_tokens),
            "cacheReadTokens": str(cache_read_tokens),
        },
    }
    start = {}
    if created_at:
        start["createdAt"] = created_at
    if context is not None:
        start["contextWindowMetadata"] = {"estimatedTokensUsed": context}
    if start:
        chat_model["chatStartMetadata"] = start
    item = {"chatModel": chat_model}
    if timestamp:
        item["timestamp"] = timestamp
    return item


def step_item(
    model=GEMINI_FLASH,
    input_tokens=0,
    output_tokens=0,
    cache_read_tokens=0,
    step_type="CORTEX_STEP_TYPE_CHECKPOINT",
    created_at=None,
    nested=False,
) -> dict:
    """Raw trajectory step carrying model usage."""
    usage = {
        "model": model,
        "inputTokens": input_tokens,
        "outputTokens": output_tokens,
        "cacheReadTokens": cache_read_tokens,
    }
    step = {"type": step_type, "metadata": {}}
    if nested:
        step["metadata"]["modelUsage"] = usage
    else:
        step["modelUsage"] = usage
    if created_at:
        step["metadata"]["createdAt"] = created_at
    return step


def metadata_records(*items):
    return parse_metadata(items)


def step_records(*items):
    return parse_steps(items)


class FakeBackend:
    """In-memory language server speaking the backend's JSON-over-HTTPS protocol."""

    def __init__(self, page_size: int = 2):
        self.page_size = page_size
        self.sessions: dict[str, dict] = {}
        self.metadata: dict[str, list] = {}
        self.steps: dict[str, list] = {}
        self.requests: list[tuple[str, dict]] = []
        self.failing_methods: set[str] = set()
        self.failing_sessions: set[str] = set()

    def add_session(self, session_id, last_modified, summary="A session", metadata=(), steps=()):
        self.sessions[session_id] = {
            "cascadeId": session_id,
            "summary": summary,
            "lastModifiedTime": last_modified,
            "stepCount": str(len(steps)),
        }
        self.metadata[session_id] = list(metadata)
        self.steps[session_id] = list(steps)

    def touch(self, session_id, last_modified):
        self.sessions[session_id]["lastModifiedTime"] = last_modified

    def methods_called(self) -> list[str]:
        return [path.rsplit("/", 1)[-1] for path, _ in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.lstrip("/")
        payload = json.loads(request.content or b"{}")
        self.requests.append((path, payload))
        method = path.rsplit("/", 1)[-1]

        failing = payload.get("cascade_id") in self.failing_sessions
        if method in self.failing_methods or failing:
            return httpx.Response(500, json={"error": "boom"})

        if method == "GetAllCascadeTrajectories":
            return httpx.Response(200, json={"trajectorySummaries": dict(self.sessions)})
        if method == "GetCascadeTrajectoryGeneratorMetadata":
            items = self.metadata.get(payload["cascade_id"], [])
            offset = payload["generator_metadata_offset"]
            return httpx.Response(
                200, json={"generatorMetadata": items[offset : offset + self.page_size]}
            )
        if method == "GetCascadeTrajectorySteps":
            items = self.steps.get(payload["cascade_id"], [])
            offset = payload["step_offset"]
            return httpx.Response(200, json={"steps": items[offset : offset + self.page_size]})
        if method == "GetUnleashData":
            return httpx.Response(200, json={})
        return httpx.Response(404)

    def client(self, handle: ConnectionHandle | None = None) -> TransportClient:
        handle = handle or ConnectionHandle(port=42100, csrf_token="secret")
        return TransportClient(
            handle,
            delay=0,
            http_client=httpx.Client(transport=httpx.MockTransport(self.handler)),
        )


class FakeEngine:
    """Discovery engine stand-in returning a fixed handle (or None)."""

    def __init__(self, handle: ConnectionHandle | None):
        self.handle = handle
        self.scans = 0
        self.last_diagnostics = ScanDiagnostics(scan_method="process_name")

    def scan(self, max_attempts: int = 3) -> ConnectionHandle | None:
        self.scans += 1
        return self.handle


@pytest.fixture
def backend():
    """Empty fake backend; tests add sessions as needed."""
    return FakeBackend()


@pytest.fixture
def transport(backend):
    client = backend.client()
    yield client
    client.close()


@pytest.fixture
def handle():
    return ConnectionHandle(port=42100, csrf_token="secret", extension_port=42099)


@pytest.fixture
def controller(backend, handle):
    """Controller wired to the fake backend through a fake discovery engine."""
    ctrl = UsageController(
        settings=Settings(poll_interval=1, day_window=8),
        engine=FakeEngine(handle),
        client_factory=backend.client,
    )
    yield ctrl
    ctrl.close()
