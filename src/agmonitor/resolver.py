"""Resolving a live connection to the language server.

ConnectionResolver walks candidate processes in discovery order. For each one
PortResolver lists its listening ports and EndpointProbe tries them in
ascending order. The first port that answers wins.
"""

import logging

import httpx

from agmonitor.api import PROBE_METHOD, service_headers, service_url
from agmonitor.config import MonitorConfig
from agmonitor.errors import ProbeFailure
from agmonitor.locator import ProcessLocator
from agmonitor.models import ConnectionDescriptor
from agmonitor.platforms import DiscoveryPlatform, select_platform

logger = logging.getLogger(__name__)


class EndpointProbe:
    """Checks whether a port answers like the language server."""

    def __init__(self, http: httpx.Client, timeout: float = 5.0) -> None:
        self._http = http
        self._timeout = timeout

    def check(self, port: int, token: str) -> None:
        """
        Send one cheap authenticated request to the port.

        Raises:
            ProbeFailure: On any transport error, non-200 status or non-JSON body.
        """
        try:
            response = self._http.post(
                service_url(port, PROBE_METHOD),
                json={"wrapper_data": {}},
                headers=service_headers(token),
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise ProbeFailure(port, str(e) or type(e).__name__) from e

        if response.status_code != 200:
            raise ProbeFailure(port, f"HTTP {response.status_code}")
        try:
            response.json()
        except ValueError as e:
            raise ProbeFailure(port, "response body is not JSON") from e

    def probe(self, port: int, token: str) -> bool:
        """Check if the port answers; failures are logged, not raised."""
        try:
            self.check(port, token)
        except ProbeFailure as e:
            logger.debug("%s", e)
            return False
        return True


class PortResolver:
    """Finds the first listening port of a process that passes the probe."""

    def __init__(self, platform_impl: DiscoveryPlatform, probe: EndpointProbe) -> None:
        self._platform = platform_impl
        self._probe = probe

    def resolve(self, pid: int, token: str) -> int | None:
        """Return the first listening port that passes the probe, or None."""
        ports = sorted(set(self._platform.enumerate_listening_ports(pid)))
        if not ports:
            logger.debug("PID %d has no listening ports", pid)
            return None

        logger.debug("PID %d listening ports: %s", pid, ports)
        for port in ports:
            if self._probe.probe(port, token):
                return port
            logger.debug("Port %d did not respond", port)
        return None


class ConnectionResolver:
    """
    Produces a ConnectionDescriptor for the first reachable language server.

    `resolve()` returns None when nothing is running or nothing answers; that
    is an ordinary outcome, not an error.
    """

    def __init__(self, locator: ProcessLocator, port_resolver: PortResolver) -> None:
        self._locator = locator
        self._port_resolver = port_resolver

    def resolve(self) -> ConnectionDescriptor | None:
        """Return a descriptor for the first reachable server, or None."""
        located = self._locator.locate()
        if not located:
            logger.info("No language server process found")
            return None

        for candidate, hints in located:
            logger.debug("Checking PID %d...", candidate.pid)
            port = self._port_resolver.resolve(candidate.pid, hints.token)
            if port is not None:
                logger.info("Connected using PID=%d, port=%d", candidate.pid, port)
                return ConnectionDescriptor(
                    pid=candidate.pid,
                    port=port,
                    token=hints.token,
                    extension_port=hints.port_hint,
                )
            logger.debug("PID %d did not respond on any port", candidate.pid)

        logger.info("Could not connect to any language server process")
        return None


def build_resolver(config: MonitorConfig, http: httpx.Client) -> ConnectionResolver:
    """Wire up the default resolver for this OS."""
    platform_impl = select_platform(config.command_timeout)
    return ConnectionResolver(
        ProcessLocator(platform_impl),
        PortResolver(platform_impl, EndpointProbe(http, timeout=config.probe_timeout)),
    )
