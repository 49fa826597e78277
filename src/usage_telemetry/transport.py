"""HTTP transport to a verified local language-server endpoint.

A thin request layer: one generic ``call`` plus typed wrappers for the
endpoints the telemetry pipeline uses. It never retries; retry policy belongs
to callers.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
from httpx import Limits, Timeout

from usage_telemetry.config import HTTP_TIMEOUT, REQUEST_DELAY
from usage_telemetry.errors import TransportError

logger = logging.getLogger("usage-telemetry")

SERVICE = "exa.language_server_pb.LanguageServerService"

ENDPOINTS = {
    "list_sessions": f"{SERVICE}/GetAllCascadeTrajectories",
    "metadata": f"{SERVICE}/GetCascadeTrajectoryGeneratorMetadata",
    "steps": f"{SERVICE}/GetCascadeTrajectorySteps",
    "probe": f"{SERVICE}/GetUnleashData",
}

CSRF_HEADER = "X-Codeium-Csrf-Token"


@dataclass(frozen=True)
class ConnectionHandle:
    """A verified, reachable local backend endpoint."""

    port: int
    csrf_token: str
    extension_port: int | None = None


def backend_headers(csrf_token: str) -> dict[str, str]:
    """Headers every backend request carries."""
    return {
        CSRF_HEADER: csrf_token,
        "Connect-Protocol-Version": "1",
        "Content-Type": "application/json",
    }


def create_http_client(timeout: float = HTTP_TIMEOUT, **kwargs: Any) -> httpx.Client:
    """Create an HTTP client for loopback backend traffic.

    The backend serves a self-signed certificate on 127.0.0.1, so
    certificate verification is disabled. Never point this at a remote host.
    """
    return httpx.Client(
        timeout=Timeout(timeout),
        limits=Limits(max_keepalive_connections=2, max_connections=4),
        verify=False,
        **kwargs,
    )


class TransportClient:
    """Request layer over one verified backend connection."""

    def __init__(
        self,
        handle: ConnectionHandle,
        *,
        delay: float = REQUEST_DELAY,
        timeout: float = HTTP_TIMEOUT,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.handle = handle
        self.delay = delay
        self.base_url = f"https://127.0.0.1:{handle.port}"
        self.http_client = http_client or create_http_client(timeout)

    def __enter__(self) -> TransportClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.http_client.close()

    def call(self, method_path: str, payload: dict | None = None) -> dict:
        """POST a JSON payload to a backend method and return the parsed body.

        Raises:
            TransportError: On connection failures, timeouts, non-2xx status
                or a body that is not a JSON object
        """
        if self.delay > 0:
            # Client-side rate limit
            time.sleep(self.delay)

        logger.debug(f"Backend request: {method_path}")
        try:
            response = self.http_client.post(
                f"{self.base_url}/{method_path}",
                headers=backend_headers(self.handle.csrf_token),
                json=payload or {},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Backend request {method_path} failed: HTTP {e.response.status_code}")
            raise TransportError(
                method_path, f"HTTP {e.response.status_code}", e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            logger.warning(f"Backend request {method_path} failed: {e}")
            raise TransportError(method_path, str(e) or type(e).__name__) from e

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(method_path, f"invalid JSON body: {e}") from e
        if not isinstance(data, dict):
            raise TransportError(method_path, f"expected JSON object, got {type(data).__name__}")
        return data

    def list_sessions(self) -> dict:
        return self.call(ENDPOINTS["list_sessions"], {})

    def get_metadata_page(self, session_id: str, offset: int = 0) -> dict:
        return self.call(
            ENDPOINTS["metadata"],
            {"cascade_id": session_id, "generator_metadata_offset": offset},
        )

    def get_steps_page(self, session_id: str, offset: int = 0) -> dict:
        return self.call(
            ENDPOINTS["steps"],
            {"cascade_id": session_id, "step_offset": offset},
        )
