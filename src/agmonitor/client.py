"""Quota polling client for agmonitor."""

import logging
import threading
from queue import Queue
from typing import Any, Protocol

import httpx

from agmonitor.api import CLIENT_NAME, STATUS_METHOD, build_http_client, service_headers, service_url
from agmonitor.config import MIN_POLL_INTERVAL, MonitorConfig
from agmonitor.errors import ConnectionLost, DiscoveryFailure, MonitorError, ResponseMalformed
from agmonitor.models import ClientState, ConnectionDescriptor, Snapshot
from agmonitor.parser import parse_snapshot
from agmonitor.resolver import build_resolver

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Antigravity language server not found. Is Antigravity running?"


class Resolver(Protocol):
    def resolve(self) -> ConnectionDescriptor | None: ...


class StatusTransport:
    """Issues GetUserStatus requests and classifies their failures."""

    def __init__(self, http: httpx.Client, locale: str = "en") -> None:
        self._http = http
        self._body = {
            "metadata": {
                "ideName": CLIENT_NAME,
                "extensionName": CLIENT_NAME,
                "locale": locale,
            }
        }

    def fetch(self, connection: ConnectionDescriptor) -> Any:
        """
        Fetch the raw status document.

        Raises:
            ConnectionLost: The request was refused, reset, timed out or aborted.
            ResponseMalformed: The server answered with an error status or non-JSON.
        """
        try:
            response = self._http.post(
                service_url(connection.port, STATUS_METHOD),
                json=self._body,
                headers=service_headers(connection.token),
            )
        except httpx.TransportError as e:
            raise ConnectionLost(f"{type(e).__name__}: {e}") from e
        except httpx.HTTPError as e:
            raise ResponseMalformed(f"{type(e).__name__}: {e}") from e

        if response.status_code != 200:
            raise ResponseMalformed(f"HTTP {response.status_code} from {STATUS_METHOD}")
        try:
            return response.json()
        except ValueError as e:
            raise ResponseMalformed("Invalid JSON response") from e


class QuotaClient:
    """
    Polls the language server for quota snapshots.

    Runs in a separate daemon thread and pushes each cycle's outcome to one of
    two thread-safe queues: a Snapshot on success or a MonitorError on
    failure, never both. Connection failures trigger one re-resolution of the
    server's port per cycle; the loop itself never stops on errors.
    """

    def __init__(
        self,
        snapshot_queue: Queue[Snapshot],
        error_queue: Queue[MonitorError],
        config: MonitorConfig | None = None,
        resolver: Resolver | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize the QuotaClient.

        Args:
            snapshot_queue: Receives one Snapshot per successful cycle.
            error_queue: Receives one MonitorError per failed cycle.
            config: Timeouts, poll interval and locale. Defaults apply when None.
            resolver: Connection resolver; the OS-specific default when None.
            transport: Optional httpx transport, mainly for tests.
        """
        self._config = config or MonitorConfig()
        self._snapshots = snapshot_queue
        self._errors = error_queue
        self._http = build_http_client(self._config.request_timeout, transport)
        self._resolver = resolver or build_resolver(self._config, self._http)
        self._status = StatusTransport(self._http, self._config.locale)
        self._poll_interval = max(MIN_POLL_INTERVAL, self._config.poll_interval)

        self._connection: ConnectionDescriptor | None = None
        self._state = ClientState.UNINITIALIZED
        self._consecutive_failures = 0
        self._last_snapshot: Snapshot | None = None

        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._closed = False

    @property
    def snapshot_queue(self) -> Queue[Snapshot]:
        """Get the queue receiving snapshots."""
        return self._snapshots

    @property
    def error_queue(self) -> Queue[MonitorError]:
        """Get the queue receiving cycle errors."""
        return self._errors

    @property
    def poll_interval(self) -> float:
        """Get the current poll interval in seconds."""
        return self._poll_interval

    @poll_interval.setter
    def poll_interval(self, value: float) -> None:
        """Set the poll interval (minimum 1 second)."""
        self._poll_interval = max(MIN_POLL_INTERVAL, value)

    @property
    def state(self) -> ClientState:
        """Get the connection state."""
        return self._state

    @property
    def connection(self) -> ConnectionDescriptor | None:
        """Get the live connection, None while disconnected."""
        return self._connection

    @property
    def consecutive_failures(self) -> int:
        """Get the number of failed cycles since the last success."""
        return self._consecutive_failures

    @property
    def last_snapshot(self) -> Snapshot | None:
        """Get the most recent successful snapshot."""
        return self._last_snapshot

    @property
    def is_running(self) -> bool:
        """Check if the polling thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def initialize(self) -> bool:
        """
        Resolve the server once.

        Returns False, and reports a DiscoveryFailure, when no server is found.
        """
        with self._cycle_lock:
            try:
                logger.info("Initializing, detecting language server...")
                if self._replace_connection() is not None:
                    return True
                self._errors.put(DiscoveryFailure(NOT_FOUND_MESSAGE))
                return False
            finally:
                if self._closed:
                    self._http.close()

    def start(self) -> None:
        """Start the polling thread. Initializes first if needed."""
        if self.is_running or self._closed:
            return

        # Each thread owns its event, so a stopped loop cannot be revived
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._poll_loop,
            args=(self._stop_event,),
            daemon=True,
            name="QuotaClient",
        )
        self._thread.start()
        logger.info("Polling started (every %ss)", self._poll_interval)

    def stop(self, timeout: float | None = None) -> None:
        """
        Stop polling. No new cycle starts afterwards.

        A request already in flight is not aborted. The thread is only joined
        when a timeout is given.
        """
        self._stop_event.set()
        if self._thread is not None and timeout is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def close(self) -> None:
        """
        Stop polling and release the HTTP client.

        When a cycle is in flight the client is released by that cycle once
        it completes.
        """
        self._closed = True
        self.stop()
        if self._cycle_lock.acquire(blocking=False):
            try:
                self._http.close()
            finally:
                self._cycle_lock.release()

    def refresh(self) -> None:
        """Run one fetch cycle now, independent of the polling timer."""
        self._run_cycle(self._stop_event)

    def _poll_loop(self, stop_event: threading.Event) -> None:
        """Main polling loop running in the background thread."""
        if self._state is ClientState.UNINITIALIZED and not self.initialize():
            stop_event.wait(timeout=self._poll_interval)

        while not stop_event.is_set():
            self._run_cycle(stop_event)
            stop_event.wait(timeout=self._poll_interval)

    def _run_cycle(self, stop_event: threading.Event) -> None:
        with self._cycle_lock:
            try:
                if not stop_event.is_set():
                    self._complete_cycle()
            finally:
                if self._closed:
                    self._http.close()

    def _complete_cycle(self) -> None:
        try:
            snapshot = self._fetch_cycle()
        except MonitorError as e:
            self._report(e)
            return
        except Exception as e:
            logger.exception("Unexpected error during fetch cycle")
            error = MonitorError(f"Unexpected error: {e}")
            error.__cause__ = e
            self._report(error)
            return

        self._consecutive_failures = 0
        self._last_snapshot = snapshot
        self._snapshots.put(snapshot)

    def _fetch_cycle(self) -> Snapshot:
        connection = self._connection
        if connection is None:
            connection = self._replace_connection()
            if connection is None:
                raise DiscoveryFailure(NOT_FOUND_MESSAGE)
            return self._fetch(connection)

        try:
            return self._fetch(connection)
        except ConnectionLost as e:
            logger.warning("Connection lost (%s), attempting reconnect...", e)
            self._state = ClientState.RECONNECTING
            connection = self._replace_connection()
            if connection is None:
                raise

        try:
            return self._fetch(connection)
        except MonitorError as e:
            logger.warning("Retry after reconnect also failed: %s", e)
            raise

    def _fetch(self, connection: ConnectionDescriptor) -> Snapshot:
        return parse_snapshot(self._status.fetch(connection))

    def _replace_connection(self) -> ConnectionDescriptor | None:
        """Re-run resolution and swap in its result as the live connection."""
        connection = self._resolver.resolve()
        self._connection = connection
        if connection is None:
            self._state = ClientState.DISCONNECTED
            logger.warning("Language server not found")
            return None

        self._state = ClientState.CONNECTED
        logger.info("Connected: PID=%d, port=%d", connection.pid, connection.port)
        return connection

    def _report(self, error: MonitorError) -> None:
        self._consecutive_failures += 1
        if not isinstance(error, (DiscoveryFailure, ConnectionLost)):
            logger.warning("Fetch error: %s", error)
        self._errors.put(error)
