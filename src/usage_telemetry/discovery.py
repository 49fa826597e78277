"""Locate a running language-server backend and verify a connection to it.

Discovery runs the platform's process listing, extracts each candidate's
credential from its command line, resolves the ports it listens on, and
probes them. When several backends answer, the one whose newest session was
modified most recently wins. Failures never raise out of ``scan``; they are
logged and reported as "not found" so the caller can retry later.
"""

import logging
import subprocess
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass

import httpx

from usage_telemetry.config import (
    DEFAULT_MAX_ATTEMPTS,
    DIAGNOSTIC_CMD_TIMEOUT,
    PROBE_TIMEOUT,
    PROCESS_CMD_TIMEOUT,
    PROCESS_SCAN_RETRY_DELAY,
)
from usage_telemetry.platforms import PlatformStrategy, ProcessCandidate, select_strategy
from usage_telemetry.sessions import latest_timestamp
from usage_telemetry.transport import (
    ENDPOINTS,
    ConnectionHandle,
    backend_headers,
    create_http_client,
)

logger = logging.getLogger("usage-telemetry")

CommandRunner = Callable[[str, float], str]


def run_command(command: str, timeout: float) -> str:
    """Run a shell command and return its stdout.

    A non-zero exit status is not an error here: ``grep`` exits 1 when
    nothing matches, which simply means no output.

    Raises:
        subprocess.TimeoutExpired: If the command outlives ``timeout``
        OSError: If the shell cannot be started
    """
    result = subprocess.run(
        command,
        shell=True,
        capture_output=True,
        text=True,
        timeout=timeout,
    )
    return result.stdout or ""


@dataclass
class ScanDiagnostics:
    """What the most recent scan tried and found."""

    scan_method: str = "unknown"
    target_process: str = ""
    attempts: int = 0
    found_candidates: int = 0
    verified_candidates: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ConnectionVerifier:
    """Probes candidate ports with an authenticated request."""

    def __init__(self, http_client: httpx.Client | None = None, timeout: float = PROBE_TIMEOUT):
        self.http_client = http_client or create_http_client(timeout)
        self.timeout = timeout

    def ping(self, port: int, csrf_token: str) -> bool:
        try:
            response = self.http_client.post(
                f"https://127.0.0.1:{port}/{ENDPOINTS['probe']}",
                headers=backend_headers(csrf_token),
                json={"wrapper_data": {}},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.debug(f"Probe on port {port} failed: {e}")
            return False
        return response.status_code == 200

    def verify(self, ports: list[int], csrf_token: str) -> int | None:
        """Return the first port that answers the probe, or None."""
        for port in ports:
            if self.ping(port, csrf_token):
                return port
        return None

    def latest_session_time(self, port: int, csrf_token: str) -> str:
        """Newest session lastModifiedTime visible through a backend ("" if none)."""
        try:
            response = self.http_client.post(
                f"https://127.0.0.1:{port}/{ENDPOINTS['list_sessions']}",
                headers=backend_headers(csrf_token),
                json={},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Session lookup on port {port} failed: {e}")
            return ""
        return latest_timestamp(data) if isinstance(data, dict) else ""


class ProcessDiscoveryEngine:
    """Finds and verifies the local backend across operating systems."""

    def __init__(
        self,
        strategy: PlatformStrategy | None = None,
        target_process: str | None = None,
        *,
        runner: CommandRunner = run_command,
        verifier: ConnectionVerifier | None = None,
        retry_delay: float = PROCESS_SCAN_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if strategy is None:
            strategy, default_target = select_strategy()
            target_process = target_process or default_target
        self.strategy = strategy
        self.target_process = target_process or ""
        self.runner = runner
        self.verifier = verifier or ConnectionVerifier()
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.last_diagnostics = ScanDiagnostics()
        logger.debug(
            f"Discovery engine: strategy={type(strategy).__name__}, target={self.target_process}"
        )

    def scan(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> ConnectionHandle | None:
        """Locate a verified backend connection.

        Args:
            max_attempts: Enumeration attempts before falling back

        Returns:
            ConnectionHandle for the selected backend, or None if not found
        """
        logger.info(f"Scanning for backend process, max attempts: {max_attempts}")
        try:
            handle = self._scan_by_process_name(max_attempts)
            if handle:
                return handle

            handle = self._scan_by_keyword()
            if handle:
                return handle

            self._run_diagnostics()
        except Exception as e:
            logger.error(f"Backend discovery failed: {e}")
        return None

    def _scan_by_process_name(self, max_attempts: int) -> ConnectionHandle | None:
        self.last_diagnostics = ScanDiagnostics(
            scan_method="process_name",
            target_process=self.target_process,
        )

        for attempt in range(max_attempts):
            if attempt > 0:
                self._sleep(self.retry_delay)
            self.last_diagnostics.attempts = attempt + 1

            try:
                output = self.runner(
                    self.strategy.process_list_command(self.target_process), PROCESS_CMD_TIMEOUT
                )
            except (subprocess.SubprocessError, OSError) as e:
                logger.error(f"Attempt {attempt + 1} failed: {e}")
                continue

            if not output.strip():
                continue

            candidates = self.strategy.parse_process_info(output)
            if not candidates:
                continue

            self.last_diagnostics.found_candidates = len(candidates)
            logger.info(f"Found {len(candidates)} backend candidate(s), evaluating all")

            verified: list[tuple[ConnectionHandle, str]] = []
            for candidate in candidates:
                handle = self._verify_and_connect(candidate)
                if handle is None:
                    continue
                latest = self.verifier.latest_session_time(handle.port, handle.csrf_token)
                logger.info(
                    f"  Backend on port {handle.port} (PID {candidate.pid}): "
                    f"latest session = {latest or 'none'}"
                )
                verified.append((handle, latest))

            self.last_diagnostics.verified_candidates = len(verified)
            if not verified:
                continue
            if len(verified) == 1:
                return verified[0][0]

            # max() keeps the first of equal timestamps, i.e. enumeration order
            handle, latest = max(verified, key=lambda pair: pair[1])
            logger.info(f"Selected backend on port {handle.port} (most recent: {latest})")
            return handle

        return None

    def _scan_by_keyword(self) -> ConnectionHandle | None:
        command = self.strategy.keyword_command()
        if command is None:
            return None

        self.last_diagnostics.scan_method = "keyword"
        try:
            output = self.runner(command, PROCESS_CMD_TIMEOUT)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error(f"Keyword search failed: {e}")
            return None

        for candidate in self.strategy.parse_process_info(output):
            handle = self._verify_and_connect(candidate)
            if handle:
                return handle
        return None

    def _verify_and_connect(self, candidate: ProcessCandidate) -> ConnectionHandle | None:
        ports = self.identify_ports(candidate.pid)
        if not ports:
            return None
        port = self.verifier.verify(ports, candidate.csrf_token)
        if port is None:
            return None
        logger.info(f"Verified connection on port {port}")
        return ConnectionHandle(
            port=port,
            csrf_token=candidate.csrf_token,
            extension_port=candidate.extension_port,
        )

    def identify_ports(self, pid: int) -> list[int]:
        """Ports ``pid`` listens on, or [] if they cannot be determined."""
        try:
            self.strategy.ensure_port_command_available()
            output = self.runner(self.strategy.port_list_command(pid), PROCESS_CMD_TIMEOUT)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error(f"Port lookup for PID {pid} failed: {e}")
            return []
        return self.strategy.parse_listening_ports(output, pid)

    def _run_diagnostics(self) -> None:
        try:
            output = self.runner(self.strategy.diagnostic_command(), DIAGNOSTIC_CMD_TIMEOUT)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error(f"Diagnostics failed: {e}")
            return
        listing = output.strip() or "(no matching processes)"
        logger.info(f"Backend not found. Diagnostics:\n{listing}")
