"""Platform-specific process and port enumeration.

Each platform asks psutil first and falls back to the OS command-line tools
when psutil comes back empty (typically AccessDenied on another user's
process, or macOS refusing socket enumeration). Every tool parser below
skips lines it does not understand and never raises.
"""

import json
import logging
import re
import subprocess
import sys
from typing import Protocol

import psutil

from agmonitor.models import ProcessCandidate

logger = logging.getLogger(__name__)

LSOF_LISTEN_RE = re.compile(
    r"(?:TCP|UDP)\s+(?:\*|[\d.]+|\[[\da-f:]+\]):(\d+)\s+\(LISTEN\)",
    re.IGNORECASE,
)


class DiscoveryPlatform(Protocol):
    """Capability interface used by the connection resolver."""

    def enumerate_candidates(self, process_name: str) -> list[ProcessCandidate]: ...

    def enumerate_listening_ports(self, pid: int) -> list[int]: ...


def run_command(args: list[str], timeout: float = 10.0) -> str:
    """Run a command and return its stdout, or "" if it fails in any way."""
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.debug("%s timed out after %ss", args[0], timeout)
        return ""
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("%s could not be run: %s", args[0], e)
        return ""

    if result.returncode != 0:
        logger.debug("%s exited with %d: %s", args[0], result.returncode, result.stderr.strip())
        return ""
    return result.stdout


# ---------------------------------------------------------------------------
# Tool output parsers
# ---------------------------------------------------------------------------


def _unique_sorted(ports: list[int]) -> list[int]:
    return sorted({p for p in ports if 0 < p < 65536})


def parse_pgrep_output(stdout: str) -> list[ProcessCandidate]:
    """Parse `pgrep -af` / `pgrep -fl` output: `<pid> <command line>` per line."""
    candidates: list[ProcessCandidate] = []
    for line in stdout.splitlines():
        pid_text, _, command_line = line.strip().partition(" ")
        command_line = command_line.strip()
        if not pid_text.isdigit() or not command_line:
            continue
        candidates.append(ProcessCandidate(pid=int(pid_text), command_line=command_line))
    return candidates


def parse_powershell_processes(stdout: str) -> list[ProcessCandidate]:
    """Parse `Select-Object ProcessId,CommandLine | ConvertTo-Json` output."""
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        return []

    # ConvertTo-Json emits a bare object for a single result
    items = data if isinstance(data, list) else [data]
    candidates: list[ProcessCandidate] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        pid = item.get("ProcessId")
        command_line = item.get("CommandLine")
        if isinstance(pid, int) and isinstance(command_line, str) and command_line:
            candidates.append(ProcessCandidate(pid=pid, command_line=command_line))
    return candidates


def parse_wmic_processes(stdout: str) -> list[ProcessCandidate]:
    """Parse `wmic ... get ProcessId,CommandLine /format:list` output."""
    candidates: list[ProcessCandidate] = []
    text = stdout.replace("\r", "")
    for block in re.split(r"\n\s*\n", text):
        pid_match = re.search(r"^ProcessId=(\d+)\s*$", block, re.MULTILINE)
        cmd_match = re.search(r"^CommandLine=(.+)$", block, re.MULTILINE)
        if pid_match and cmd_match and cmd_match.group(1).strip():
            candidates.append(
                ProcessCandidate(pid=int(pid_match.group(1)), command_line=cmd_match.group(1).strip())
            )
    return candidates


def parse_lsof_ports(stdout: str) -> list[int]:
    """Parse `lsof -nP -a -iTCP -sTCP:LISTEN -p <pid>` output."""
    return _unique_sorted([int(m.group(1)) for m in LSOF_LISTEN_RE.finditer(stdout)])


def parse_ss_ports(stdout: str, pid: int) -> list[int]:
    """Parse `ss -tlnp` output, keeping sockets owned by pid."""
    ports: list[int] = []
    owner = f"pid={pid},"
    for line in stdout.splitlines():
        if owner not in line:
            continue
        fields = line.split()
        if len(fields) < 5 or fields[0] != "LISTEN":
            continue
        _, _, port = fields[3].rpartition(":")
        if port.isdigit():
            ports.append(int(port))
    return _unique_sorted(ports)


def parse_netstat_ports(stdout: str, pid: int) -> list[int]:
    """Parse Windows `netstat -ano` output, keeping listening sockets owned by pid."""
    ports: list[int] = []
    for line in stdout.splitlines():
        fields = line.split()
        if len(fields) != 5 or fields[0].upper() != "TCP" or fields[3].upper() != "LISTENING":
            continue
        if fields[4] != str(pid):
            continue
        _, _, port = fields[1].rpartition(":")
        if port.isdigit():
            ports.append(int(port))
    return _unique_sorted(ports)


def parse_powershell_ports(stdout: str) -> list[int]:
    """Parse `Get-NetTCPConnection ... -ExpandProperty LocalPort | ConvertTo-Json` output."""
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        return []
    values = data if isinstance(data, list) else [data]
    return _unique_sorted([v for v in values if isinstance(v, int) and not isinstance(v, bool)])


# ---------------------------------------------------------------------------
# Platforms
# ---------------------------------------------------------------------------


class PsutilPlatform:
    """
    Enumeration through psutil, with per-OS command-line fallbacks.

    Subclasses override `_fallback_candidates` and `_fallback_ports`.
    """

    def __init__(self, command_timeout: float = 10.0) -> None:
        self._command_timeout = command_timeout

    def enumerate_candidates(self, process_name: str) -> list[ProcessCandidate]:
        candidates = self._psutil_candidates(process_name)
        if candidates:
            return candidates
        logger.debug("psutil found no %s process, falling back to OS tools", process_name)
        return self._fallback_candidates(process_name)

    def enumerate_listening_ports(self, pid: int) -> list[int]:
        ports = self._psutil_ports(pid)
        if ports:
            return ports
        logger.debug("psutil found no listening ports for PID %d, falling back to OS tools", pid)
        return self._fallback_ports(pid)

    def _psutil_candidates(self, process_name: str) -> list[ProcessCandidate]:
        candidates: list[ProcessCandidate] = []
        try:
            for proc in psutil.process_iter(attrs=["pid", "name", "cmdline"]):
                try:
                    info = proc.info
                    cmdline = info.get("cmdline") or []
                    command_line = " ".join(cmdline)
                    name = info.get("name") or ""
                    if process_name not in name and process_name not in command_line:
                        continue
                    if command_line:
                        candidates.append(ProcessCandidate(pid=info["pid"], command_line=command_line))
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue
        except psutil.Error as e:
            logger.debug("psutil process enumeration failed: %s", e)
            return []
        return candidates

    def _psutil_ports(self, pid: int) -> list[int]:
        try:
            connections = psutil.Process(pid).net_connections(kind="tcp")
        except psutil.Error as e:
            logger.debug("psutil could not list sockets for PID %d: %s", pid, e)
            return []
        return _unique_sorted(
            [c.laddr.port for c in connections if c.status == psutil.CONN_LISTEN and c.laddr]
        )

    def _run(self, args: list[str]) -> str:
        return run_command(args, timeout=self._command_timeout)

    def _fallback_candidates(self, process_name: str) -> list[ProcessCandidate]:
        return []

    def _fallback_ports(self, pid: int) -> list[int]:
        return []


class UnixPlatform(PsutilPlatform):
    """Linux and macOS: pgrep for processes, ss or lsof for sockets."""

    def __init__(self, command_timeout: float = 10.0, macos: bool = False) -> None:
        super().__init__(command_timeout)
        self._macos = macos

    def _fallback_candidates(self, process_name: str) -> list[ProcessCandidate]:
        flags = "-fl" if self._macos else "-af"
        return parse_pgrep_output(self._run(["pgrep", flags, process_name]))

    def _fallback_ports(self, pid: int) -> list[int]:
        if not self._macos:
            ports = parse_ss_ports(self._run(["ss", "-tlnp"]), pid)
            if ports:
                return ports
        return parse_lsof_ports(
            self._run(["lsof", "-nP", "-a", "-iTCP", "-sTCP:LISTEN", "-p", str(pid)])
        )


class WindowsPlatform(PsutilPlatform):
    """Windows: PowerShell first, then WMIC and netstat."""

    def _powershell(self, script: str) -> str:
        return self._run(["powershell", "-NoProfile", "-Command", script])

    def _fallback_candidates(self, process_name: str) -> list[ProcessCandidate]:
        stdout = self._powershell(
            f"Get-CimInstance Win32_Process -Filter \"name='{process_name}'\" "
            "| Select-Object ProcessId,CommandLine | ConvertTo-Json"
        )
        candidates = parse_powershell_processes(stdout) if stdout.strip() else []
        if candidates:
            return candidates

        logger.debug("PowerShell process lookup failed or was empty, trying WMIC")
        return parse_wmic_processes(
            self._run(
                [
                    "wmic",
                    "process",
                    "where",
                    f"name='{process_name}'",
                    "get",
                    "ProcessId,CommandLine",
                    "/format:list",
                ]
            )
        )

    def _fallback_ports(self, pid: int) -> list[int]:
        stdout = self._powershell(
            f"Get-NetTCPConnection -OwningProcess {pid} -State Listen -ErrorAction SilentlyContinue "
            "| Select-Object -ExpandProperty LocalPort | ConvertTo-Json"
        )
        ports = parse_powershell_ports(stdout) if stdout.strip() else []
        if ports:
            return ports

        logger.debug("PowerShell port lookup failed or was empty, trying netstat")
        return parse_netstat_ports(self._run(["netstat", "-ano"]), pid)


def select_platform(command_timeout: float = 10.0, system: str | None = None) -> DiscoveryPlatform:
    """Pick the platform implementation for this OS family."""
    system = system or sys.platform
    if system.startswith("win"):
        return WindowsPlatform(command_timeout)
    return UnixPlatform(command_timeout, macos=system == "darwin")
