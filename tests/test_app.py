"""Tests for the agmonitor application."""

from datetime import datetime, timezone
from queue import Queue

import httpx
import pytest

from agmonitor.app import (
    AgMonitorApp,
    GroupTable,
    ModelTable,
    StatusHeader,
    build_parser,
    escape_markup,
    format_percentage,
    render_report,
    run_once,
)
from agmonitor.client import QuotaClient
from agmonitor.config import GroupSettings, MonitorConfig
from agmonitor.errors import DiscoveryFailure
from agmonitor.models import ClientState, ConnectionDescriptor
from agmonitor.parser import parse_snapshot
from agmonitor.status import StatusEvaluator

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

STATUS = {
    "userStatus": {
        "planStatus": {"planInfo": {"monthlyPromptCredits": 1000}, "availablePromptCredits": 400},
        "cascadeModelConfigData": {
            "clientModelConfigs": [
                {
                    "label": "Claude Opus 4.5",
                    "modelOrAlias": {"model": "M1"},
                    "quotaInfo": {"remainingFraction": 0, "resetTime": "2026-10-19T13:00:00Z"},
                },
                {
                    "label": "Gemini 3 Flash",
                    "modelOrAlias": {"model": "M2"},
                    "quotaInfo": {"remainingFraction": 0.8, "resetTime": "2026-10-19T14:30:00Z"},
                },
                {
                    "label": "Mystery [beta]",
                    "modelOrAlias": {"model": "M3"},
                    "quotaInfo": {"remainingFraction": 0.5},
                },
            ]
        },
    }
}

CONNECTION = ConnectionDescriptor(pid=42, port=40001, token="token-value")


class FixedResolver:
    """Always resolves to the same result."""

    def __init__(self, result=None):
        self.result = result

    def resolve(self):
        return self.result


def status_transport():
    return httpx.MockTransport(lambda request: httpx.Response(200, json=STATUS))


def offline_client():
    return QuotaClient(
        Queue(),
        Queue(),
        config=MonitorConfig(poll_interval=60),
        resolver=FixedResolver(),
        transport=status_transport(),
    )


def test_format_percentage():
    """Test percentages are rounded and unknown values shown as '?'."""
    assert format_percentage(42.4) == "42%"
    assert format_percentage(100.0) == "100%"
    assert format_percentage(None) == "?"


def test_escape_markup():
    """Test square brackets in server text are escaped."""
    assert escape_markup("Mystery [beta]") == "Mystery \\[beta]"
    assert escape_markup("plain") == "plain"


def test_build_parser():
    """Test command-line options."""
    args = build_parser().parse_args(["--once", "--interval", "15", "--config", "cfg.json"])

    assert args.once
    assert args.interval == 15.0
    assert args.config == "cfg.json"
    assert args.log_file is None


def test_render_report():
    """Test the plain-text report lists enabled groups, their members and other models."""
    snapshot = parse_snapshot(STATUS, now=NOW)
    config = MonitorConfig(model_groups={"pro": GroupSettings(enabled=False)})
    evaluator = StatusEvaluator(config)

    text = render_report(snapshot, evaluator.evaluate(snapshot), evaluator.classifier.other(snapshot.items))

    assert "Prompt credits: 400 / 1,000 (40% remaining)" in text
    assert "Premium" in text
    assert "Claude Opus 4.5: 0%" in text
    assert "Flash" in text
    assert "Pro " not in text
    assert "Other models:" in text
    assert "Mystery [beta]: 50% · Unknown" in text


class TestRunOnce:
    """Tests for the --once mode."""

    def test_prints_report(self, capsys):
        status = run_once(MonitorConfig(), resolver=FixedResolver(CONNECTION), transport=status_transport())

        assert status == 0
        out = capsys.readouterr().out
        assert "Prompt credits" in out
        assert "Gemini 3 Flash" in out

    def test_not_found(self, capsys):
        status = run_once(MonitorConfig(), resolver=FixedResolver(), transport=status_transport())

        assert status == 1
        assert "not found" in capsys.readouterr().err

    def test_fetch_error(self, capsys):
        def handler(request):
            return httpx.Response(403, text="forbidden")

        status = run_once(
            MonitorConfig(),
            resolver=FixedResolver(CONNECTION),
            transport=httpx.MockTransport(handler),
        )

        assert status == 1
        assert "HTTP 403" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_app_creation():
    """Test AgMonitorApp can be instantiated."""
    app = AgMonitorApp(client=offline_client())
    assert app.title == "agmonitor"
    assert app.sub_title == "Antigravity Quota Monitor"
    assert app.client.state is ClientState.UNINITIALIZED


@pytest.mark.asyncio
async def test_app_compose():
    """Test AgMonitorApp composes correctly."""
    app = AgMonitorApp(client=offline_client())
    async with app.run_test() as pilot:
        assert pilot.app.query_one("#status-header") is not None
        assert pilot.app.query_one("#group-table") is not None
        assert pilot.app.query_one("#model-table") is not None


@pytest.mark.asyncio
async def test_app_starts_client():
    """Test mounting the app starts polling."""
    client = offline_client()
    app = AgMonitorApp(client=client)
    async with app.run_test():
        assert client.is_running
    client.stop(timeout=2.0)


@pytest.mark.asyncio
async def test_app_quit_binding():
    """Test that 'q' binding triggers quit and stops the client."""
    client = offline_client()
    app = AgMonitorApp(client=client)
    async with app.run_test() as pilot:
        await pilot.press("q")
        assert not client.is_running


@pytest.mark.asyncio
async def test_app_applies_snapshots():
    """Test queued snapshots reach both tables."""
    client = offline_client()
    app = AgMonitorApp(client=client)
    async with app.run_test() as pilot:
        client.snapshot_queue.put(parse_snapshot(STATUS, now=NOW))
        pilot.app._check_for_updates()

        groups = pilot.app.query_one("#group-table")
        models = pilot.app.query_one("#model-table")
        assert groups.row_count == 3
        assert models.row_count == 3
    client.stop(timeout=2.0)


@pytest.mark.asyncio
async def test_disabled_groups_are_hidden():
    """Test groups disabled in configuration get no row."""
    config = MonitorConfig(poll_interval=60, model_groups={"flash": GroupSettings(enabled=False)})
    client = offline_client()
    app = AgMonitorApp(config, client=client)
    async with app.run_test() as pilot:
        snapshot = parse_snapshot(STATUS, now=NOW)
        reports = StatusEvaluator(config).evaluate(snapshot)
        pilot.app.query_one(GroupTable).update_reports(reports)

        assert pilot.app.query_one("#group-table").row_count == 2
    client.stop(timeout=2.0)


@pytest.mark.asyncio
async def test_model_table_marks_exhausted():
    """Test exhausted models are struck through."""
    client = offline_client()
    app = AgMonitorApp(client=client)
    async with app.run_test() as pilot:
        pilot.app.query_one(ModelTable).update_models(parse_snapshot(STATUS, now=NOW))

        table = pilot.app.query_one("#model-table")
        assert table.get_row("0:M1")[0] == "[strike]Claude Opus 4.5[/strike]"
        assert table.get_row("1:M2")[1] == "80%"
    client.stop(timeout=2.0)


@pytest.mark.asyncio
async def test_status_header():
    """Test the header reflects errors, connection state and credits."""
    client = offline_client()
    app = AgMonitorApp(client=client)
    async with app.run_test() as pilot:
        header = pilot.app.query_one(StatusHeader)
        snapshot = parse_snapshot(STATUS, now=NOW)

        header.update_status(ClientState.CONNECTED, snapshot)
        assert "Connected" in header.text
        assert "400 / 1,000" in header.text

        header.update_status(ClientState.DISCONNECTED, None, DiscoveryFailure("not found [x]"))
        assert "not found \\[x]" in header.text
    client.stop(timeout=2.0)
