"""Exception types raised and reported by agmonitor."""


class MonitorError(Exception):
    """Base class for every error agmonitor reports to consumers."""


class DiscoveryFailure(MonitorError):
    """No language server process could be found or connected to."""


class ProbeFailure(MonitorError):
    """A candidate port did not answer like the language server."""

    def __init__(self, port: int, reason: str) -> None:
        super().__init__(f"Port {port} probe failed: {reason}")
        self.port = port
        self.reason = reason


class ConnectionLost(MonitorError):
    """The established endpoint refused, reset or timed out."""


class ResponseMalformed(MonitorError):
    """The endpoint answered, but not with a usable status document."""


class ConfigurationInvalid(MonitorError):
    """A configuration entry is malformed and its defaults will be used."""
