"""agmonitor - terminal dashboard and command-line entry point."""

import argparse
import dataclasses
import logging
import sys
from collections.abc import Sequence
from queue import Empty, Queue

import httpx
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from agmonitor.client import QuotaClient, Resolver
from agmonitor.config import MonitorConfig, load_config
from agmonitor.errors import MonitorError
from agmonitor.models import ClientState, QuotaItem, Snapshot, TrafficLight
from agmonitor.status import GroupReport, StatusEvaluator

LIGHT_MARKUP = {
    TrafficLight.GREEN: "[green]●[/green]",
    TrafficLight.YELLOW: "[yellow]●[/yellow]",
    TrafficLight.RED: "[red]●[/red]",
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def escape_markup(text: str) -> str:
    """Escape square brackets so server-provided text is not read as markup."""
    return text.replace("[", "\\[")


def format_percentage(pct: float | None) -> str:
    """Format a remaining percentage, '?' when unknown."""
    if pct is None:
        return "?"
    return f"{round(pct)}%"


def group_reset(report: GroupReport) -> str:
    """Reset text of the group member with the longest countdown."""
    members = report.view.members
    if not members:
        return "--"
    return max(members, key=lambda m: m.time_until_reset).reset_display


class StatusHeader(Static):
    """Header showing connection state and prompt credits."""

    DEFAULT_CSS = """
    StatusHeader {
        height: auto;
        min-height: 3;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, **kwargs) -> None:
        super().__init__("Connecting to Antigravity...", **kwargs)
        self._text = "Connecting to Antigravity..."

    @property
    def text(self) -> str:
        """Get the text currently shown."""
        return self._text

    def update_status(
        self,
        state: ClientState,
        snapshot: Snapshot | None,
        error: MonitorError | None = None,
    ) -> None:
        """Refresh the header from the client's state."""
        if error is not None:
            line = f"[red]Error:[/red] {escape_markup(str(error))}"
        elif state is ClientState.CONNECTED and snapshot is not None:
            line = f"[green]Connected[/green] · {len(snapshot.items)} models"
        elif state is ClientState.DISCONNECTED:
            line = "[yellow]Not connected[/yellow]"
        else:
            line = "Connecting to Antigravity..."

        if snapshot is not None and snapshot.credits is not None:
            credits = snapshot.credits
            line += (
                f"\nPrompt credits: {credits.available:,.0f} / {credits.monthly:,.0f}"
                f" ({format_percentage(credits.remaining_percentage)} remaining)"
            )
        if snapshot is not None:
            line += f"\nUpdated: {snapshot.captured_at.astimezone().strftime('%H:%M:%S')}"

        self._text = line
        self.update(line)


class GroupTable(Container):
    """Traffic-light table with one row per enabled model group."""

    DEFAULT_CSS = """
    GroupTable {
        height: auto;
        max-height: 12;
        border: solid $primary;
    }
    """

    def compose(self) -> ComposeResult:
        """Create child widgets."""
        yield DataTable(id="group-table")

    def on_mount(self) -> None:
        """Set up table columns."""
        table = self.query_one("#group-table", DataTable)
        table.cursor_type = "row"
        table.add_column("", key="light", width=2)
        table.add_column("Group", key="group", width=12)
        table.add_column("Worst", key="worst", width=7)
        table.add_column("Resets", key="reset")
        table.add_column("Alert", key="alert", width=10)

    def update_reports(self, reports: Sequence[GroupReport]) -> None:
        """Replace the rows with the enabled groups."""
        table = self.query_one("#group-table", DataTable)
        table.clear()
        for report in reports:
            if not report.enabled:
                continue
            table.add_row(
                LIGHT_MARKUP[report.light],
                report.display_name,
                format_percentage(report.view.worst_remaining_pct),
                group_reset(report),
                "long reset" if report.is_long_reset else "",
                key=report.view.id,
            )


class ModelTable(Container):
    """Every model in the latest snapshot."""

    DEFAULT_CSS = """
    ModelTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def compose(self) -> ComposeResult:
        """Create child widgets."""
        yield DataTable(id="model-table")

    def on_mount(self) -> None:
        """Set up table columns."""
        table = self.query_one("#model-table", DataTable)
        table.cursor_type = "row"
        table.add_column("Model", key="model", width=36)
        table.add_column("Remaining", key="remaining", width=10)
        table.add_column("Resets", key="reset")

    def update_models(self, snapshot: Snapshot) -> None:
        """Replace the rows with the models of a snapshot."""
        table = self.query_one("#model-table", DataTable)
        table.clear()
        for index, item in enumerate(snapshot.items):
            label = escape_markup(item.label)
            if item.is_exhausted:
                label = f"[strike]{label}[/strike]"
            table.add_row(
                label,
                format_percentage(item.remaining_percentage),
                item.reset_display,
                key=f"{index}:{item.model_id}",
            )


class AgMonitorApp(App):
    """Main agmonitor application."""

    TITLE = "agmonitor"
    SUB_TITLE = "Antigravity Quota Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #status-header {
        dock: top;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
    ]

    def __init__(self, config: MonitorConfig | None = None, client: QuotaClient | None = None) -> None:
        super().__init__()
        self._config = config or MonitorConfig()
        self._client = client or QuotaClient(Queue(), Queue(), config=self._config)
        self._snapshot_queue = self._client.snapshot_queue
        self._error_queue = self._client.error_queue
        self._evaluator = StatusEvaluator(self._config)
        self._last_error: MonitorError | None = None

    @property
    def client(self) -> QuotaClient:
        """Get the polling client."""
        return self._client

    def compose(self) -> ComposeResult:
        """Create child widgets."""
        yield StatusHeader(id="status-header")
        yield GroupTable()
        yield ModelTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start polling once the UI is up."""
        self._client.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain both queues and refresh the UI."""
        latest: Snapshot | None = None
        reports: list[GroupReport] = []
        while True:
            try:
                snapshot = self._snapshot_queue.get_nowait()
            except Empty:
                break
            # Every snapshot must pass through the alert engine, in order
            reports = self._evaluator.evaluate(snapshot)
            latest = snapshot

        while True:
            try:
                self._last_error = self._error_queue.get_nowait()
            except Empty:
                break

        if latest is not None:
            self._update_ui(latest, reports)
        self._update_header()

    def _update_ui(self, snapshot: Snapshot, reports: Sequence[GroupReport]) -> None:
        """Refresh both tables from a snapshot and its reports."""
        self.query_one(GroupTable).update_reports(reports)
        self.query_one(ModelTable).update_models(snapshot)

    def _update_header(self) -> None:
        """Show the connection state, hiding errors once a cycle succeeds."""
        error = self._last_error if self._client.consecutive_failures > 0 else None
        self.query_one(StatusHeader).update_status(
            self._client.state, self._client.last_snapshot, error
        )

    def action_refresh(self) -> None:
        """Fetch now, off the UI thread."""
        self.notify("Refreshing quota...")
        self.run_worker(self._client.refresh, thread=True, group="refresh")

    def action_quit(self) -> None:
        """Stop the client and exit."""
        self._client.close()
        self.exit()


def render_report(
    snapshot: Snapshot,
    reports: Sequence[GroupReport],
    other: Sequence[QuotaItem] = (),
) -> str:
    """Plain-text report used by --once."""
    lines = []
    if snapshot.credits is not None:
        credits = snapshot.credits
        lines.append(
            f"Prompt credits: {credits.available:,.0f} / {credits.monthly:,.0f}"
            f" ({format_percentage(credits.remaining_percentage)} remaining)"
        )
    for report in reports:
        if not report.enabled:
            continue
        flag = "  [long reset]" if report.is_long_reset else ""
        lines.append(
            f"{report.light.value:<6} {report.display_name:<10}"
            f" {format_percentage(report.view.worst_remaining_pct):>5}"
            f"  {group_reset(report)}{flag}"
        )
        for item in report.view.members:
            lines.append(
                f"         - {item.label}: {format_percentage(item.remaining_percentage)}"
                f" · {item.reset_display}"
            )
    if other:
        lines.append("Other models:")
        for item in other:
            lines.append(
                f"         - {item.label}: {format_percentage(item.remaining_percentage)}"
                f" · {item.reset_display}"
            )
    return "\n".join(lines)


def run_once(
    config: MonitorConfig,
    resolver: Resolver | None = None,
    transport: httpx.BaseTransport | None = None,
) -> int:
    """Resolve, fetch a single snapshot and print it. Returns the exit status."""
    snapshots: Queue[Snapshot] = Queue()
    errors: Queue[MonitorError] = Queue()
    client = QuotaClient(snapshots, errors, config=config, resolver=resolver, transport=transport)
    try:
        if client.initialize():
            client.refresh()
    finally:
        client.close()

    snapshot = client.last_snapshot
    if snapshot is None:
        try:
            error = errors.get_nowait()
        except Empty:
            error = None
        print(f"agmonitor: {error or 'no quota data received'}", file=sys.stderr)
        return 1

    evaluator = StatusEvaluator(config)
    reports = evaluator.evaluate(snapshot)
    print(render_report(snapshot, reports, evaluator.classifier.other(snapshot.items)))
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(prog="agmonitor", description="Antigravity quota monitor")
    parser.add_argument("--config", help="path to a JSON configuration file")
    parser.add_argument("--log-file", help="write debug logs to this file")
    parser.add_argument("--interval", type=float, help="poll interval in seconds")
    parser.add_argument("--once", action="store_true", help="print one report and exit")
    return parser


def configure_logging(log_file: str | None, interactive: bool) -> None:
    """Send logs to a file, discard them under the UI, or print warnings to stderr."""
    if log_file:
        logging.basicConfig(filename=log_file, level=logging.DEBUG, format=LOG_FORMAT)
    elif interactive:
        # The terminal belongs to the UI
        logging.basicConfig(level=logging.WARNING, handlers=[logging.NullHandler()])
    else:
        logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for agmonitor."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file, interactive=not args.once)

    config = load_config(args.config)
    if args.interval is not None:
        config = dataclasses.replace(config, poll_interval=args.interval)

    if args.once:
        return run_once(config)

    AgMonitorApp(config).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
