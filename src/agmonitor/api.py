"""Wire details of the language server's local HTTPS API."""

import httpx

HOST = "127.0.0.1"
SERVICE_PATH = "/exa.language_server_pb.LanguageServerService"
PROBE_METHOD = "GetUnleashData"
STATUS_METHOD = "GetUserStatus"

TOKEN_HEADER = "X-Codeium-Csrf-Token"
PROTOCOL_HEADER = "Connect-Protocol-Version"
PROTOCOL_VERSION = "1"

CLIENT_NAME = "antigravity"


def service_url(port: int, method: str) -> str:
    """Full URL of a service method on the given local port."""
    return f"https://{HOST}:{port}{SERVICE_PATH}/{method}"


def service_headers(token: str) -> dict[str, str]:
    """Headers authenticating a request with the server token."""
    return {
        "Content-Type": "application/json",
        TOKEN_HEADER: token,
        PROTOCOL_HEADER: PROTOCOL_VERSION,
    }


def build_http_client(
    timeout: float = 5.0,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """
    Create the HTTP client used for probing and polling.

    The server presents a self-signed certificate on the loopback interface,
    so certificate verification is turned off.
    """
    return httpx.Client(verify=False, timeout=timeout, transport=transport)
