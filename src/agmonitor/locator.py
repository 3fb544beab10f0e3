"""Finding language server processes and reading their connection hints."""

import logging
import platform
import re
import sys
from dataclasses import dataclass

from agmonitor.models import ProcessCandidate
from agmonitor.platforms import DiscoveryPlatform, select_platform

logger = logging.getLogger(__name__)

# Token: --csrf_token <value> or --csrf_token=<value>, value is alphanumerics and hyphens
TOKEN_RE = re.compile(r"--csrf_token[=\s]+([A-Za-z0-9][A-Za-z0-9\-]*)", re.IGNORECASE)
# Port hint: --extension_server_port <digits> or --extension_server_port=<digits>
PORT_HINT_RE = re.compile(r"--extension_server_port[=\s]+(\d+)")
APP_DATA_DIR_RE = re.compile(r"--app_data_dir\s+antigravity\b", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class InvocationHints:
    """Connection hints read from a process command line."""

    token: str
    port_hint: int | None


def expected_process_name(system: str | None = None, machine: str | None = None) -> str:
    """Executable name of the language server on this OS and architecture."""
    system = system or sys.platform
    arm = (machine or platform.machine()).lower() in ("arm64", "aarch64")
    if system.startswith("win"):
        return "language_server_windows_x64.exe"
    if system == "darwin":
        return "language_server_macos_arm" if arm else "language_server_macos"
    return "language_server_linux_arm" if arm else "language_server_linux_x64"


def is_target_process(command_line: str) -> bool:
    """Whether a command line belongs to the Antigravity language server."""
    if APP_DATA_DIR_RE.search(command_line):
        return True
    lower = command_line.lower()
    return "\\antigravity\\" in lower or "/antigravity/" in lower


def extract_hints(command_line: str) -> InvocationHints | None:
    """
    Extract the auth token and declared port from a command line.

    Returns None when no token is present; such a process cannot be
    connected to. A missing or out-of-range port hint is simply None.
    """
    token_match = TOKEN_RE.search(command_line)
    if not token_match:
        return None

    port_hint = None
    port_match = PORT_HINT_RE.search(command_line)
    if port_match:
        port = int(port_match.group(1))
        port_hint = port if 0 < port < 65536 else None

    return InvocationHints(token=token_match.group(1), port_hint=port_hint)


def mask_token(token: str) -> str:
    """Shorten a token for log output."""
    if len(token) <= 10:
        return "****"
    return f"{token[:6]}...{token[-4:]}"


class ProcessLocator:
    """Lists language server processes that carry a usable auth token."""

    def __init__(
        self,
        platform_impl: DiscoveryPlatform | None = None,
        process_name: str | None = None,
    ) -> None:
        self._platform = platform_impl or select_platform()
        self._process_name = process_name or expected_process_name()

    @property
    def platform(self) -> DiscoveryPlatform:
        """Get the discovery platform in use."""
        return self._platform

    def candidates(self) -> list[ProcessCandidate]:
        """Processes whose command line marks them as the target, in OS order."""
        found = self._platform.enumerate_candidates(self._process_name)
        return [c for c in found if is_target_process(c.command_line)]

    def locate(self) -> list[tuple[ProcessCandidate, InvocationHints]]:
        """Candidates paired with their hints; candidates without a token are dropped."""
        logger.debug("Looking for process: %s", self._process_name)
        located: list[tuple[ProcessCandidate, InvocationHints]] = []
        for candidate in self.candidates():
            hints = extract_hints(candidate.command_line)
            if hints is None:
                logger.debug("Skipping PID %d: no auth token in command line", candidate.pid)
                continue
            logger.debug(
                "PID %d: token=%s, extension_port=%s",
                candidate.pid,
                mask_token(hints.token),
                hints.port_hint,
            )
            located.append((candidate, hints))

        logger.info("Found %d candidate process(es)", len(located))
        return located
