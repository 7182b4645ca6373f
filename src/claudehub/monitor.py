"""Background usage polling for the account dashboard."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from queue import Queue

from claudehub.context import SchedulerContext
from claudehub.models import AccountUsageSnapshot
from claudehub.scoring import ScoreBreakdown, active_accounts

logger = logging.getLogger(__name__)

MIN_POLL_RATE = 1.0


@dataclass(slots=True)
class UsageReport:
    """One poll of every account's usage and score."""

    snapshots: list[AccountUsageSnapshot]
    breakdown: list[ScoreBreakdown]
    active_accounts: set[str] = field(default_factory=set)
    last_used_account: str | None = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now().astimezone())

    def row(self, account_id: str) -> ScoreBreakdown | None:
        return next((row for row in self.breakdown if row.snapshot.account_id == account_id), None)


class UsageMonitor:
    """
    Polls account usage in a daemon thread and pushes ``UsageReport`` values
    to a thread-safe Queue.

    Any error during a poll is logged and the loop keeps running; per-account
    fetch errors are already carried inside the snapshots.
    """

    def __init__(
        self,
        update_queue: Queue[UsageReport],
        context: SchedulerContext,
        poll_rate: float = 30.0,
    ) -> None:
        """
        Initialize the UsageMonitor.

        Args:
            update_queue: Thread-safe queue to push reports to.
            context: Scheduler context used to fetch and score usage.
            poll_rate: How often to poll the usage endpoint (in seconds). Default 30s.
        """
        self._queue = update_queue
        self._context = context
        self._poll_rate = max(MIN_POLL_RATE, poll_rate)
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._force_refresh = False
        self._thread: threading.Thread | None = None

    @property
    def poll_rate(self) -> float:
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        self._poll_rate = max(MIN_POLL_RATE, value)

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the polling thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="UsageMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the polling thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def refresh(self) -> None:
        """Poll again now, bypassing the usage cache."""
        self._force_refresh = True
        self._wake_event.set()

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            force, self._force_refresh = self._force_refresh, False
            try:
                self._queue.put(self.collect_report(force=force))
            except Exception:
                logger.exception("Usage poll failed")

            self._wake_event.wait(timeout=self._poll_rate)
            self._wake_event.clear()

    def collect_report(self, force: bool = False) -> UsageReport:
        snapshots = self._context.usage_snapshots(force=force)
        state = self._context.registry_state()
        return UsageReport(
            snapshots=snapshots,
            breakdown=self._context.score_breakdown(snapshots),
            active_accounts=active_accounts(state),
            last_used_account=state.last_used_account,
        )
