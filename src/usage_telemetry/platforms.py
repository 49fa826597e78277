"""Per-OS process and port enumeration.

Each strategy only builds shell command strings and parses their output; the
discovery engine runs the commands. Parsers return an empty list for empty or
malformed output rather than raising.
"""

import json
import logging
import platform
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger("usage-telemetry")

PORT_FLAG = "--extension_server_port"
CREDENTIAL_FLAG = "--csrf_token"

PROCESS_NAMES = {
    "windows": "language_server_windows_x64.exe",
    "darwin_arm": "language_server_macos_arm",
    "darwin_x64": "language_server_macos",
    "linux": "language_server_linux",
}

DIAGNOSTIC_KEYWORD = "language_server"

_PORT_ARG = re.compile(re.escape(PORT_FLAG) + r"(?:=|\s+)(\d+)")
_TOKEN_ARG = re.compile(re.escape(CREDENTIAL_FLAG) + r"(?:=|\s+)[\"']?([^\s\"']+)")
# First loopback or wildcard local address on a socket-listing line
_LISTEN_ADDR = re.compile(r"(?:127\.0\.0\.1|0\.0\.0\.0|localhost|\*|\[?::1?\]?):(\d+)\b")


@dataclass
class ProcessCandidate:
    """A running backend process found by enumeration, not yet verified."""

    pid: int
    extension_port: int | None
    csrf_token: str


def candidate_from_command_line(pid: int, command_line: str) -> ProcessCandidate | None:
    """Extract the port and credential flags from a process's argument list.

    Returns None when the credential flag is missing.
    """
    token = _TOKEN_ARG.search(command_line or "")
    if not token:
        return None
    port = _PORT_ARG.search(command_line)
    return ProcessCandidate(
        pid=pid,
        extension_port=int(port.group(1)) if port else None,
        csrf_token=token.group(1),
    )


def _dedupe(ports: list[int]) -> list[int]:
    seen = set()
    result = []
    for port in ports:
        if port not in seen:
            seen.add(port)
            result.append(port)
    return result


class PlatformStrategy(ABC):
    """Command generation and output parsing for one OS family."""

    @abstractmethod
    def process_list_command(self, process_name: str) -> str:
        """Command listing processes named ``process_name`` with their arguments."""

    @abstractmethod
    def parse_process_info(self, output: str) -> list[ProcessCandidate]:
        """Parse the process listing into candidates."""

    @abstractmethod
    def port_list_command(self, pid: int) -> str:
        """Command listing the TCP ports ``pid`` is listening on."""

    @abstractmethod
    def parse_listening_ports(self, output: str, pid: int) -> list[int]:
        """Parse the port listing into an ordered, deduplicated list of ports."""

    @abstractmethod
    def diagnostic_command(self) -> str:
        """Broad process listing used only for logging when discovery fails."""

    def keyword_command(self) -> str | None:
        """Secondary enumeration by keyword, or None when unsupported."""
        return None

    def ensure_port_command_available(self) -> None:
        """Probe for the socket-listing utility before building port commands."""


class WindowsStrategy(PlatformStrategy):
    """Win32_Process queries through PowerShell CIM, ports through netstat."""

    _QUERY = (
        'powershell -NoProfile -NonInteractive -Command "'
        "Get-CimInstance Win32_Process | Where-Object {{ {condition} }} | "
        'Select-Object ProcessId,CommandLine | ConvertTo-Json -Compress"'
    )

    def process_list_command(self, process_name: str) -> str:
        return self._QUERY.format(condition=f"$_.Name -eq '{process_name}'")

    def keyword_command(self) -> str | None:
        return self._QUERY.format(condition=f"$_.CommandLine -like '*{CREDENTIAL_FLAG}*'")

    def parse_process_info(self, output: str) -> list[ProcessCandidate]:
        if not output or not output.strip():
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.debug(f"Unparsable process query output: {output[:200]!r}")
            return []
        rows = data if isinstance(data, list) else [data]

        candidates = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                pid = int(row.get("ProcessId"))
            except (TypeError, ValueError):
                continue
            candidate = candidate_from_command_line(pid, row.get("CommandLine") or "")
            if candidate:
                candidates.append(candidate)
        return candidates

    def port_list_command(self, pid: int) -> str:
        return f'netstat -ano | findstr "{pid}" | findstr "LISTENING"'

    def parse_listening_ports(self, output: str, pid: int) -> list[int]:
        ports = []
        for line in (output or "").splitlines():
            parts = line.split()
            # Proto  Local Address  Foreign Address  State  PID
            if len(parts) < 5 or parts[0].upper() != "TCP" or parts[3] != "LISTENING":
                continue
            if parts[-1] != str(pid):
                continue
            _, _, port = parts[1].rpartition(":")
            if port.isdigit():
                ports.append(int(port))
        return _dedupe(ports)

    def diagnostic_command(self) -> str:
        return f'tasklist /FI "IMAGENAME eq {DIAGNOSTIC_KEYWORD}*"'


class UnixStrategy(PlatformStrategy):
    """ps for processes; lsof, ss or netstat for ports, whichever is installed."""

    PORT_TOOLS = ("lsof", "ss", "netstat")

    def __init__(self, family: str = "linux", which=shutil.which):
        self.family = family
        self._which = which
        self.port_tool = "lsof"

    def process_list_command(self, process_name: str) -> str:
        return f'ps -ww -eo pid,args | grep "{process_name}" | grep -v grep'

    def parse_process_info(self, output: str) -> list[ProcessCandidate]:
        candidates = []
        for line in (output or "").splitlines():
            parts = line.strip().split(None, 1)
            if len(parts) < 2 or not parts[0].isdigit():
                continue
            candidate = candidate_from_command_line(int(parts[0]), parts[1])
            if candidate:
                candidates.append(candidate)
        return candidates

    def ensure_port_command_available(self) -> None:
        if self.family == "darwin":
            self.port_tool = "lsof"
            return
        for tool in self.PORT_TOOLS:
            if self._which(tool):
                self.port_tool = tool
                return
        logger.warning("None of lsof, ss or netstat found; port lookup will likely fail")
        self.port_tool = "lsof"

    def port_list_command(self, pid: int) -> str:
        if self.port_tool == "ss":
            return f'ss -tlnp 2>/dev/null | grep "pid={pid},"'
        if self.port_tool == "netstat":
            return f'netstat -tlnp 2>/dev/null | grep " {pid}/"'
        return f"lsof -nP -a -iTCP -sTCP:LISTEN -p {pid}"

    def parse_listening_ports(self, output: str, pid: int) -> list[int]:
        ports = []
        for line in (output or "").splitlines():
            match = _LISTEN_ADDR.search(line)
            if match:
                ports.append(int(match.group(1)))
        return _dedupe(ports)

    def diagnostic_command(self) -> str:
        return f'ps -ww -eo pid,args | grep -i "{DIAGNOSTIC_KEYWORD}" | grep -v grep'


def select_strategy(
    system: str | None = None,
    machine: str | None = None,
) -> tuple[PlatformStrategy, str]:
    """Pick the strategy and target process name for an OS and CPU architecture.

    Args:
        system: ``platform.system()`` value (default: current OS)
        machine: ``platform.machine()`` value (default: current CPU)

    Returns:
        Tuple of (strategy, target process name)
    """
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()

    if system == "windows":
        return WindowsStrategy(), PROCESS_NAMES["windows"]
    if system == "darwin":
        name = PROCESS_NAMES["darwin_arm" if machine in ("arm64", "aarch64") else "darwin_x64"]
        return UnixStrategy("darwin"), name
    return UnixStrategy("linux"), PROCESS_NAMES["linux"]
