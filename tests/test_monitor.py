"""Tests for the UsageMonitor class."""

from queue import Queue

import pytest

from claudehub.context import SchedulerContext
from claudehub.monitor import UsageMonitor, UsageReport


class CountingFetch:
    """Fake usage fetcher that counts calls and can be made to fail."""

    def __init__(self, snapshots, failures=0):
        self.snapshots = snapshots
        self.failures = failures
        self.calls = 0

    def __call__(self, accounts):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise RuntimeError("endpoint down")
        return list(self.snapshots)


@pytest.fixture
def snapshots(make_snapshot):
    return [make_snapshot("a", session=30), make_snapshot("b", session=70), make_snapshot("c", error="Token expired")]


@pytest.fixture
def fetch(snapshots):
    return CountingFetch(snapshots)


@pytest.fixture
def context(config, fetch):
    return SchedulerContext(config, fetch=fetch)


class TestUsageReport:
    """Tests for UsageReport dataclass."""

    def test_report_uses_slots(self, snapshots):
        """Test UsageReport uses __slots__."""
        report = UsageReport(snapshots=snapshots, breakdown=[])

        assert not hasattr(report, "__dict__")

    def test_row_lookup(self, context, snapshots):
        report = UsageReport(snapshots=snapshots, breakdown=context.score_breakdown(snapshots))

        assert report.row("b").is_best
        assert report.row("c") is None


class TestUsageMonitor:
    """Tests for UsageMonitor class."""

    def test_monitor_creation(self, context):
        """Test UsageMonitor can be instantiated."""
        monitor = UsageMonitor(Queue(), context)

        assert monitor.poll_rate == 30.0
        assert not monitor.is_running

    def test_poll_rate_minimum(self, context):
        """Test poll rate has a minimum value."""
        monitor = UsageMonitor(Queue(), context, poll_rate=0.01)
        assert monitor.poll_rate == 1.0

        monitor.poll_rate = 5
        assert monitor.poll_rate == 5

    def test_monitor_start_stop(self, context):
        """Test UsageMonitor can be started and stopped."""
        monitor = UsageMonitor(Queue(), context)

        monitor.start()
        assert monitor.is_running

        monitor.stop()
        assert not monitor.is_running

    def test_monitor_start_idempotent(self, context):
        """Test starting an already running monitor is safe."""
        monitor = UsageMonitor(Queue(), context)

        monitor.start()
        thread1 = monitor._thread
        monitor.start()

        assert monitor._thread is thread1
        assert thread1.daemon is True
        assert thread1.name == "UsageMonitor"
        monitor.stop()

    def test_monitor_reports(self, context):
        """Test the first poll pushes a scored report."""
        queue: Queue[UsageReport] = Queue()
        monitor = UsageMonitor(queue, context)

        monitor.start()
        try:
            report = queue.get(timeout=2.0)
        finally:
            monitor.stop()

        assert [s.account_id for s in report.snapshots] == ["a", "b", "c"]
        assert report.breakdown[0].snapshot.account_id == "b"

    def test_refresh_bypasses_cache(self, context, fetch):
        """Test refresh polls again immediately and fetches fresh data."""
        queue: Queue[UsageReport] = Queue()
        monitor = UsageMonitor(queue, context, poll_rate=60)

        monitor.start()
        try:
            queue.get(timeout=2.0)
            monitor.refresh()
            queue.get(timeout=2.0)
        finally:
            monitor.stop()

        assert fetch.calls == 2

    def test_survives_poll_errors(self, context, fetch):
        """Test monitor logs a failed poll and keeps running."""
        fetch.failures = 1
        queue: Queue[UsageReport] = Queue()
        monitor = UsageMonitor(queue, context, poll_rate=60)

        monitor.start()
        try:
            monitor.refresh()
            report = queue.get(timeout=2.0)
        finally:
            monitor.stop()

        assert len(report.snapshots) == 3

    def test_collect_report_registry(self, context):
        context.registry.register("a")
        try:
            report = UsageMonitor(Queue(), context).collect_report()
        finally:
            context.registry.unregister()

        assert report.active_accounts == {"a"}
        assert report.last_used_account == "a"
