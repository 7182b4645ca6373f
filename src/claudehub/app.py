"""claudehub - live account dashboard."""

from enum import Enum
from queue import Empty, Queue

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from claudehub.context import SchedulerContext
from claudehub.models import AccountUsageSnapshot
from claudehub.monitor import UsageMonitor, UsageReport
from claudehub.scoring import format_reset


class SortKey(Enum):
    """Sort keys for the account table."""

    SCORE = "score"
    SESSION = "session"
    WINDOW = "window"
    NAME = "name"


def remaining_bar(remaining_pct: float, width: int = 10) -> str:
    """Markup bar of remaining capacity, green to red."""
    filled = max(0, min(width, int(remaining_pct / (100 / width))))
    color = "green" if remaining_pct > 50 else "yellow" if remaining_pct > 20 else "red"
    return f"[{color}]" + "█" * filled + f"[/{color}]" + "[dim]░[/dim]" * (width - filled)


class SummaryStats(Static):
    """Header widget with totals and the recommended account."""

    DEFAULT_CSS = """
    SummaryStats {
        height: auto;
        min-height: 3;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__("Fetching usage...", *args, **kwargs)
        self._report: UsageReport | None = None

    @property
    def report(self) -> UsageReport | None:
        return self._report

    def update_report(self, report: UsageReport) -> None:
        self._report = report
        self.update(self._render_summary())

    def _render_summary(self) -> str:
        report = self._report
        if report is None:
            return "Fetching usage..."
        errors = sum(1 for s in report.snapshots if s.has_error)
        best = next((row for row in report.breakdown if row.is_best), None)
        if best is not None:
            best_text = f"[green]{best.snapshot.account_id}[/green] (score {best.final_score:.1f})"
        elif report.breakdown:
            soonest = min(report.breakdown, key=lambda row: row.snapshot.session_reset_at)
            best_text = (
                f"[red]all exhausted[/red], {soonest.snapshot.account_id} resets in "
                f"{format_reset(soonest.snapshot.session_reset_at)}"
            )
        else:
            best_text = "[red]none[/red]"
        return (
            f"Accounts: {len(report.snapshots)}  Errors: {errors}  "
            f"Active sessions: {len(report.active_accounts)}\n"
            f"Best: {best_text}  Updated: {report.fetched_at.strftime('%H:%M:%S')}"
        )


class AccountTable(Container):
    """Container for the account data table."""

    DEFAULT_CSS = """
    AccountTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sort_key: SortKey = SortKey.SCORE

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="account-table")

    def on_mount(self) -> None:
        table = self.query_one("#account-table", DataTable)
        table.cursor_type = "row"
        table.add_column("Account", key="account", width=14)
        table.add_column("Email", key="email", width=24)
        table.add_column("Session", key="session", width=16)
        table.add_column("Resets", key="session_reset", width=10)
        table.add_column("Weekly", key="window", width=16)
        table.add_column("Resets", key="window_reset", width=10)
        table.add_column("Score", key="score", width=7)
        table.add_column("Status", key="status")

    def ordered(self, report: UsageReport) -> list[AccountUsageSnapshot]:
        """Snapshots in display order; errored accounts always sort last."""

        def score_of(snapshot: AccountUsageSnapshot) -> float:
            row = report.row(snapshot.account_id)
            return row.final_score if row is not None else float("-inf")

        key_func = {
            SortKey.SCORE: lambda s: -score_of(s),
            SortKey.SESSION: lambda s: -s.session_remaining_pct,
            SortKey.WINDOW: lambda s: -s.window_remaining_pct,
            SortKey.NAME: lambda s: s.account_id.lower(),
        }[self._sort_key]
        return sorted(report.snapshots, key=lambda s: (s.has_error, key_func(s)))

    def cells(self, snapshot: AccountUsageSnapshot, report: UsageReport) -> list[str]:
        if snapshot.has_error:
            return [snapshot.account_id, snapshot.email or "", "-", "-", "-", "-", "-", f"[red]{escape(snapshot.error_reason or '')}[/red]"]

        row = report.row(snapshot.account_id)
        flags = []
        if row is not None and row.is_best:
            flags.append("[green]best[/green]")
        if snapshot.is_exhausted:
            flags.append("[red]exhausted[/red]")
        if snapshot.account_id in report.active_accounts:
            flags.append("active")
        if snapshot.account_id == report.last_used_account:
            flags.append("last used")
        return [
            snapshot.account_id,
            snapshot.email or "",
            f"{remaining_bar(snapshot.session_remaining_pct)} {snapshot.session_remaining_pct:3.0f}%",
            format_reset(snapshot.session_reset_at, report.fetched_at),
            f"{remaining_bar(snapshot.window_remaining_pct)} {snapshot.window_remaining_pct:3.0f}%",
            format_reset(snapshot.window_reset_at, report.fetched_at),
            f"{row.final_score:5.1f}" if row is not None else "-",
            ", ".join(flags),
        ]

    def update_report(self, report: UsageReport) -> None:
        """Replace the table rows in the current sort order."""
        table = self.query_one("#account-table", DataTable)
        table.clear()
        for snapshot in self.ordered(report):
            table.add_row(*self.cells(snapshot, report), key=snapshot.account_id)


class HubDashboardApp(App):
    """Live view of every account's usage and score."""

    TITLE = "claudehub"
    SUB_TITLE = "Account usage"

    CSS = """
    Screen {
        layout: vertical;
    }

    #summary {
        dock: top;
        height: auto;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("f6", "sort", "Sort"),
    ]

    def __init__(self, context: SchedulerContext, poll_rate: float = 30.0) -> None:
        super().__init__()
        self._update_queue: Queue[UsageReport] = Queue()
        self._monitor = UsageMonitor(self._update_queue, context, poll_rate=poll_rate)
        self._report: UsageReport | None = None

    @property
    def report(self) -> UsageReport | None:
        return self._report

    def compose(self) -> ComposeResult:
        yield SummaryStats(id="summary")
        yield AccountTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the usage monitor when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Show the most recent report in the queue, if any."""
        report = None
        while True:
            try:
                report = self._update_queue.get_nowait()
            except Empty:
                break
        if report is not None:
            self.show_report(report)

    def show_report(self, report: UsageReport) -> None:
        self._report = report
        self.query_one("#summary", SummaryStats).update_report(report)
        self.query_one(AccountTable).update_report(report)

    def action_refresh(self) -> None:
        self._monitor.refresh()
        self.notify("Refreshing usage...")

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        table = self.query_one(AccountTable)
        new_sort_key = table.cycle_sort()
        if self._report is not None:
            table.update_report(self._report)
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_quit(self) -> None:
        """Stop polling and exit."""
        self._monitor.stop()
        self.exit()


def run_dashboard(context: SchedulerContext, poll_rate: float = 30.0) -> None:
    HubDashboardApp(context, poll_rate=poll_rate).run()
