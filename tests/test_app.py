"""Tests for the claudehub dashboard application."""

import pytest
from textual.widgets import DataTable

from claudehub.app import AccountTable, HubDashboardApp, SortKey, SummaryStats, remaining_bar
from claudehub.context import SchedulerContext
from claudehub.monitor import UsageMonitor, UsageReport


@pytest.fixture
def snapshots(make_snapshot):
    return [
        make_snapshot("alpha", session=20, email="alpha@example.com"),
        make_snapshot("broken", error="Token expired"),
        make_snapshot("zeta", session=90, window=50),
    ]


@pytest.fixture
def context(config, snapshots):
    return SchedulerContext(config, fetch=lambda accounts: list(snapshots))


@pytest.fixture
def no_polling(monkeypatch):
    """Keep the monitor from replacing reports a test shows directly."""
    monkeypatch.setattr(UsageMonitor, "start", lambda self: None)


@pytest.fixture
def report(context, snapshots):
    return UsageReport(
        snapshots=snapshots,
        breakdown=context.score_breakdown(snapshots),
        active_accounts={"alpha"},
        last_used_account="alpha",
    )


def row_keys(app) -> list[str]:
    table = app.query_one("#account-table", DataTable)
    return [row.key.value for row in table.ordered_rows]


def test_remaining_bar():
    """Test remaining_bar colours by remaining capacity."""
    assert remaining_bar(80).startswith("[green]")
    assert remaining_bar(30).startswith("[yellow]")
    assert remaining_bar(5).startswith("[red]")
    assert remaining_bar(0).count("░") == 10


class TestSortKey:
    """Tests for SortKey enum."""

    def test_sort_key_members(self):
        """Test SortKey enum has all expected members in cycle order."""
        assert list(SortKey) == [SortKey.SCORE, SortKey.SESSION, SortKey.WINDOW, SortKey.NAME]


@pytest.mark.asyncio
async def test_app_creation(context):
    """Test HubDashboardApp can be instantiated."""
    app = HubDashboardApp(context)
    assert app.title == "claudehub"
    assert app._monitor is not None
    assert app._update_queue is not None
    assert app.report is None


@pytest.mark.asyncio
async def test_app_compose(context):
    """Test HubDashboardApp composes correctly."""
    app = HubDashboardApp(context)
    async with app.run_test() as pilot:
        assert pilot.app.query_one("#summary") is not None
        assert pilot.app.query_one("#account-table") is not None


@pytest.mark.asyncio
async def test_app_quit_binding(context):
    """Test 'q' key quits the app."""
    app = HubDashboardApp(context)
    async with app.run_test() as pilot:
        await pilot.press("q")
        await pilot.pause()
        assert pilot.app._exit
        assert not pilot.app._monitor.is_running


@pytest.mark.asyncio
async def test_app_sort_binding(context):
    """Test 'f6' cycles the sort key."""
    app = HubDashboardApp(context)
    async with app.run_test() as pilot:
        table = pilot.app.query_one(AccountTable)
        assert table.sort_key == SortKey.SCORE

        for expected in (SortKey.SESSION, SortKey.WINDOW, SortKey.NAME, SortKey.SCORE):
            await pilot.press("f6")
            await pilot.pause()
            assert table.sort_key == expected


@pytest.mark.asyncio
async def test_show_report_fills_table(context, report, no_polling):
    """Test a report fills the table, best first and errored accounts last."""
    app = HubDashboardApp(context)
    async with app.run_test() as pilot:
        pilot.app.show_report(report)
        await pilot.pause()

        assert row_keys(pilot.app) == ["zeta", "alpha", "broken"]
        table = pilot.app.query_one("#account-table", DataTable)
        assert "best" in table.get_cell("zeta", "status")
        assert "active" in table.get_cell("alpha", "status")
        assert "last used" in table.get_cell("alpha", "status")
        assert "Token expired" in table.get_cell("broken", "status")
        assert pilot.app.report is report


@pytest.mark.asyncio
async def test_sort_by_name_keeps_errors_last(context, report, no_polling):
    app = HubDashboardApp(context)
    async with app.run_test() as pilot:
        pilot.app.show_report(report)
        table = pilot.app.query_one(AccountTable)
        while table.sort_key != SortKey.NAME:
            table.cycle_sort()
        table.update_report(report)
        await pilot.pause()

        assert row_keys(pilot.app) == ["alpha", "zeta", "broken"]


@pytest.mark.asyncio
async def test_summary_shows_best(context, report, no_polling):
    app = HubDashboardApp(context)
    async with app.run_test() as pilot:
        summary = pilot.app.query_one("#summary", SummaryStats)
        summary.update_report(report)
        await pilot.pause()

        assert summary.report is report
        assert "zeta" in summary._render_summary()
        assert "Errors: 1" in summary._render_summary()


@pytest.mark.asyncio
async def test_app_receives_updates_from_monitor(context):
    """Test app shows reports pushed by the monitor."""
    app = HubDashboardApp(context)
    async with app.run_test() as pilot:
        await pilot.pause(1.5)

        assert pilot.app.report is not None
        assert set(row_keys(pilot.app)) == {"alpha", "broken", "zeta"}
