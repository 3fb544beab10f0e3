"""Tests for the QuotaClient polling state machine."""

import json
import threading
import time
from queue import Empty, Queue

import httpx
import pytest

from agmonitor.client import QuotaClient
from agmonitor.config import MonitorConfig
from agmonitor.errors import ConnectionLost, DiscoveryFailure, MonitorError, ResponseMalformed
from agmonitor.models import ClientState, ConnectionDescriptor, Snapshot

STATUS = {
    "userStatus": {
        "planStatus": {"planInfo": {"monthlyPromptCredits": 1000}, "availablePromptCredits": 250},
        "cascadeModelConfigData": {
            "clientModelConfigs": [
                {
                    "label": "Gemini 3 Pro (High)",
                    "modelOrAlias": {"model": "M8"},
                    "quotaInfo": {"remainingFraction": 0.5, "resetTime": "2099-01-01T00:00:00Z"},
                }
            ]
        },
    }
}

FIRST = ConnectionDescriptor(pid=100, port=40001, token="first-token")
SECOND = ConnectionDescriptor(pid=200, port=40002, token="second-token")


class FakeResolver:
    """Returns queued resolution results, then None."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def resolve(self):
        self.calls += 1
        return self.results.pop(0) if self.results else None


class FakeServer:
    """MockTransport handler with per-port behaviour."""

    def __init__(self, behaviours):
        self.behaviours = behaviours
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        behaviour = self.behaviours.get(request.url.port, "refused")
        if behaviour == "ok":
            return httpx.Response(200, json=STATUS)
        if behaviour == "malformed":
            return httpx.Response(200, text="<html>")
        if behaviour == "error":
            return httpx.Response(500, json={"message": "internal"})
        if behaviour == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        raise httpx.ConnectError("Connection refused", request=request)


def make_client(resolver, behaviours, **config):
    server = FakeServer(behaviours)
    snapshots: Queue[Snapshot] = Queue()
    errors: Queue[MonitorError] = Queue()
    client = QuotaClient(
        snapshots,
        errors,
        config=MonitorConfig(**config),
        resolver=resolver,
        transport=httpx.MockTransport(server),
    )
    return client, snapshots, errors, server


def drain(queue):
    items = []
    while True:
        try:
            items.append(queue.get_nowait())
        except Empty:
            return items


class TestInitialize:
    """Tests for QuotaClient.initialize."""

    def test_success_connects_without_events(self):
        client, snapshots, errors, _ = make_client(FakeResolver(FIRST), {})

        assert client.state is ClientState.UNINITIALIZED
        assert client.initialize()
        assert client.state is ClientState.CONNECTED
        assert client.connection == FIRST
        assert drain(snapshots) == []
        assert drain(errors) == []

    def test_not_found_reports_discovery_failure(self):
        client, snapshots, errors, _ = make_client(FakeResolver(), {})

        assert not client.initialize()
        assert client.state is ClientState.DISCONNECTED
        assert drain(snapshots) == []
        reported = drain(errors)
        assert len(reported) == 1
        assert isinstance(reported[0], DiscoveryFailure)


class TestFetchCycle:
    """Tests for a single fetch cycle."""

    def test_success_emits_snapshot(self):
        client, snapshots, errors, server = make_client(FakeResolver(FIRST), {40001: "ok"})
        client.initialize()

        client.refresh()

        emitted = drain(snapshots)
        assert len(emitted) == 1
        assert emitted[0].credits.remaining_percentage == 25
        assert emitted[0].items[0].label == "Gemini 3 Pro (High)"
        assert client.last_snapshot is emitted[0]
        assert drain(errors) == []

        request = server.requests[0]
        assert request.url.path.endswith("/GetUserStatus")
        assert request.headers["X-Codeium-Csrf-Token"] == "first-token"
        assert json.loads(request.content) == {
            "metadata": {"ideName": "antigravity", "extensionName": "antigravity", "locale": "en"}
        }

    def test_locale_is_sent(self):
        client, _, _, server = make_client(FakeResolver(FIRST), {40001: "ok"}, locale="fr")
        client.initialize()

        client.refresh()

        assert json.loads(server.requests[0].content)["metadata"]["locale"] == "fr"

    def test_connection_lost_then_reconnect_and_retry(self):
        """Test a lost connection is re-resolved and retried within the same cycle."""
        resolver = FakeResolver(FIRST, SECOND)
        client, snapshots, errors, server = make_client(resolver, {40001: "refused", 40002: "ok"})
        client.initialize()

        client.refresh()

        assert len(drain(snapshots)) == 1
        assert drain(errors) == []
        assert resolver.calls == 2
        assert client.connection == SECOND
        assert client.state is ClientState.CONNECTED
        assert [r.url.port for r in server.requests] == [40001, 40002]
        assert server.requests[1].headers["X-Codeium-Csrf-Token"] == "second-token"

    def test_connection_lost_and_reresolution_fails(self):
        """Test a failed re-resolution reports one error and the next tick resolves again."""
        resolver = FakeResolver(FIRST)
        client, snapshots, errors, _ = make_client(resolver, {40001: "timeout"})
        client.initialize()

        client.refresh()

        assert drain(snapshots) == []
        reported = drain(errors)
        assert len(reported) == 1
        assert isinstance(reported[0], ConnectionLost)
        assert isinstance(reported[0].__cause__, httpx.ReadTimeout)
        assert client.state is ClientState.DISCONNECTED
        assert client.connection is None
        assert resolver.calls == 2

        # Next tick starts from the resolver again
        resolver.results.append(SECOND)
        client.refresh()

        assert resolver.calls == 3
        assert client.connection == SECOND
        assert len(drain(snapshots)) == 1
        assert drain(errors) == []

    def test_retry_failure_is_reported_once(self):
        """Test a failing retry after reconnect is not retried again."""
        resolver = FakeResolver(FIRST, SECOND)
        client, snapshots, errors, server = make_client(resolver, {40001: "refused", 40002: "refused"})
        client.initialize()

        client.refresh()

        assert drain(snapshots) == []
        assert len(drain(errors)) == 1
        assert len(server.requests) == 2
        assert resolver.calls == 2

    def test_malformed_body_does_not_reresolve(self):
        """Test an unparsable response is reported without reconnecting."""
        resolver = FakeResolver(FIRST, SECOND)
        client, snapshots, errors, _ = make_client(resolver, {40001: "malformed"})
        client.initialize()

        client.refresh()

        assert drain(snapshots) == []
        reported = drain(errors)
        assert len(reported) == 1
        assert isinstance(reported[0], ResponseMalformed)
        assert resolver.calls == 1
        assert client.state is ClientState.CONNECTED

    def test_error_status_is_malformed(self):
        client, _, errors, _ = make_client(FakeResolver(FIRST), {40001: "error"})
        client.initialize()

        client.refresh()

        reported = drain(errors)
        assert isinstance(reported[0], ResponseMalformed)
        assert "HTTP 500" in str(reported[0])

    def test_disconnected_cycle_reports_not_found(self):
        client, snapshots, errors, _ = make_client(FakeResolver(), {})

        client.refresh()

        assert drain(snapshots) == []
        assert isinstance(drain(errors)[0], DiscoveryFailure)

    def test_consecutive_failures(self):
        """Test the failure counter grows on errors and resets on success."""
        client, _, _, server = make_client(FakeResolver(FIRST), {40001: "malformed"})
        client.initialize()

        client.refresh()
        client.refresh()
        assert client.consecutive_failures == 2

        server.behaviours[40001] = "ok"
        client.refresh()
        assert client.consecutive_failures == 0

    def test_unexpected_error_is_reported(self):
        """Test an unexpected exception becomes an error event instead of escaping."""

        class BrokenResolver:
            def resolve(self):
                raise RuntimeError("boom")

        client, snapshots, errors, _ = make_client(BrokenResolver(), {})

        client.refresh()

        reported = drain(errors)
        assert len(reported) == 1
        assert isinstance(reported[0], MonitorError)
        assert isinstance(reported[0].__cause__, RuntimeError)
        assert drain(snapshots) == []

    def test_no_cycles_after_stop(self):
        client, snapshots, errors, server = make_client(FakeResolver(FIRST), {40001: "ok"})
        client.initialize()
        client.stop()

        client.refresh()

        assert server.requests == []
        assert drain(snapshots) == []
        assert drain(errors) == []


def test_cycles_are_serialized():
    """Test concurrent refreshes never overlap a fetch."""
    active = 0
    peak = 0
    lock = threading.Lock()

    def handler(request):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return httpx.Response(200, json=STATUS)

    snapshots: Queue[Snapshot] = Queue()
    client = QuotaClient(
        snapshots,
        Queue(),
        resolver=FakeResolver(FIRST),
        transport=httpx.MockTransport(handler),
    )
    client.initialize()

    threads = [threading.Thread(target=client.refresh) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)

    assert peak == 1
    assert len(drain(snapshots)) == 4


class TestPolling:
    """Tests for the background polling thread."""

    def test_poll_interval_minimum(self):
        client, _, _, _ = make_client(FakeResolver(), {})

        client.poll_interval = 0.01
        assert client.poll_interval >= 1.0

    def test_start_initializes_and_polls(self):
        """Test the thread initializes and fetches immediately."""
        client, snapshots, errors, _ = make_client(FakeResolver(FIRST), {40001: "ok"}, poll_interval=60)

        client.start()
        try:
            snapshot = snapshots.get(timeout=2.0)
            assert isinstance(snapshot, Snapshot)
            assert client.is_running
            assert client.state is ClientState.CONNECTED
        finally:
            client.stop(timeout=2.0)

        assert not client.is_running
        assert drain(errors) == []

    def test_start_idempotent_and_daemon(self):
        client, _, _, _ = make_client(FakeResolver(), {}, poll_interval=60)

        client.start()
        try:
            thread = client._thread
            client.start()
            assert client._thread is thread
            assert thread.daemon is True
            assert thread.name == "QuotaClient"
        finally:
            client.stop(timeout=2.0)

    def test_failed_initialize_keeps_polling_alive(self):
        """Test a missing service is reported and the thread keeps running."""
        client, _, errors, _ = make_client(FakeResolver(), {}, poll_interval=60)

        client.start()
        try:
            error = errors.get(timeout=2.0)
            assert isinstance(error, DiscoveryFailure)
            assert client.is_running
        finally:
            client.stop(timeout=2.0)

    @pytest.mark.parametrize("timeout", [None, 2.0])
    def test_stop_and_close(self, timeout):
        client, _, _, _ = make_client(FakeResolver(), {}, poll_interval=60)
        client.start()

        client.stop(timeout=timeout)
        assert not client.is_running
        client.close()

    def test_restart_leaves_one_thread(self):
        """Test stop then start never leaves the previous loop running."""
        client, _, _, _ = make_client(FakeResolver(FIRST), {40001: "ok"}, poll_interval=60)

        client.start()
        first = client._thread
        client.stop()
        client.start()
        try:
            first.join(timeout=2.0)
            assert not first.is_alive()
            assert client._thread is not first
            assert client.is_running
        finally:
            client.stop(timeout=2.0)

    def test_refresh_keeps_schedule(self):
        """Test a manual refresh does not delay the next scheduled tick."""
        times = []

        def handler(request):
            times.append(time.monotonic())
            return httpx.Response(200, json=STATUS)

        snapshots: Queue[Snapshot] = Queue()
        client = QuotaClient(
            snapshots,
            Queue(),
            config=MonitorConfig(poll_interval=1.0),
            resolver=FakeResolver(FIRST),
            transport=httpx.MockTransport(handler),
        )
        client.start()
        try:
            snapshots.get(timeout=2.0)
            time.sleep(0.4)
            client.refresh()
            snapshots.get(timeout=2.0)
            snapshots.get(timeout=3.0)
        finally:
            client.stop(timeout=2.0)

        scheduled_gap = times[2] - times[0]
        assert times[1] - times[0] < scheduled_gap
        assert 0.8 < scheduled_gap < 1.3


def test_close_waits_for_inflight_request():
    """Test close lets a running request finish before releasing the HTTP client."""
    started = threading.Event()
    release = threading.Event()

    def handler(request):
        started.set()
        release.wait(timeout=5.0)
        return httpx.Response(200, json=STATUS)

    snapshots: Queue[Snapshot] = Queue()
    client = QuotaClient(
        snapshots,
        Queue(),
        resolver=FakeResolver(FIRST),
        transport=httpx.MockTransport(handler),
    )
    client.initialize()
    worker = threading.Thread(target=client.refresh)
    worker.start()
    assert started.wait(timeout=2.0)

    client.close()
    assert not client._http.is_closed

    release.set()
    worker.join(timeout=5.0)
    assert client._http.is_closed
    assert len(drain(snapshots)) == 1


def test_close_without_cycle_releases_immediately():
    client, _, _, _ = make_client(FakeResolver(), {})

    client.close()
    client.start()

    assert client._http.is_closed
    assert not client.is_running
