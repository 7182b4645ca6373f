"""
Failover between accounts for a supervised session.

``FailoverController`` runs one supervised session at a time and owns every
state transition. When a session hits its rate limit, or the user picks
another account from the switch menu, the controller finds a replacement
account, syncs conversations so the replacement can resume, kills the
current session and starts a new one resuming the same conversation.
"""

import dataclasses
import logging
import os
import signal
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from queue import Empty, Queue

from rich.console import Console
from rich.markup import escape

from claudehub import overlays
from claudehub.context import SchedulerContext
from claudehub.conversations import resolve_latest_conversation_id, with_resume_argument
from claudehub.errors import SpawnError
from claudehub.models import AccountUsageSnapshot
from claudehub.scoring import format_reset
from claudehub.supervisor import EventKind, PtySupervisor, SupervisorEvent, run_passthrough
from claudehub.sync import sync_conversations_and_history
from claudehub.usage import SESSION_WINDOW

logger = logging.getLogger(__name__)

EVENT_POLL_SECONDS = 0.5


class FailoverState(Enum):
    """Where the controller is in a session's lifecycle."""

    RUNNING = "running"
    RATE_LIMIT_PENDING = "rate_limit_pending"
    MANUAL_SWITCH_PENDING = "manual_switch_pending"
    RESOLVING = "resolving"
    DRAINING = "draining"
    SWITCHING = "switching"
    EXITED = "exited"


SupervisorFactory = Callable[..., PtySupervisor]
SyncFunc = Callable[[Mapping[str, Path]], object]
ResolveFunc = Callable[[Path, str | None], str | None]
PassthroughFunc = Callable[..., int]
OverlayFunc = Callable[[overlays.OverlayContext], object]


@dataclasses.dataclass(slots=True, frozen=True)
class Relaunch:
    """The next session to start after a failover."""

    account_id: str
    args: list[str]


class FailoverController:
    """
    Runs supervised sessions and fails over between accounts.

    Only one failover is in flight at a time: a rate limit seen during a
    manual switch, or a switch request during a rate limit failover, is
    dropped. Sessions run in a loop, so any number of consecutive failovers
    use constant stack depth.
    """

    def __init__(
        self,
        context: SchedulerContext,
        auto_failover: bool = True,
        supervisor_factory: SupervisorFactory = PtySupervisor,
        sync: SyncFunc = sync_conversations_and_history,
        resolve_conversation: ResolveFunc = resolve_latest_conversation_id,
        passthrough: PassthroughFunc = run_passthrough,
        show_status: OverlayFunc = overlays.show_status,
        show_switch_menu: OverlayFunc = overlays.show_switch_menu,
        console: Console | None = None,
        cwd: str | None = None,
    ) -> None:
        self.context = context
        self.auto_failover = auto_failover
        self._supervisor_factory = supervisor_factory
        self._sync = sync
        self._resolve_conversation = resolve_conversation
        self._passthrough = passthrough
        self._show_status = show_status
        self._show_switch_menu = show_switch_menu
        self._console = console or Console(stderr=True, highlight=False)
        self._cwd = cwd or os.getcwd()

        self._state = FailoverState.RUNNING
        self._account_id: str | None = None
        self._in_flight = False
        self._snapshots: list[AccountUsageSnapshot] = []
        self._exhausted_until: dict[str, datetime] = {}
        self._supervisor: PtySupervisor | None = None
        self.sessions_started = 0

    @property
    def state(self) -> FailoverState:
        return self._state

    @property
    def account_id(self) -> str | None:
        return self._account_id

    @property
    def failover_in_flight(self) -> bool:
        return self._in_flight

    def notice(self, message: str) -> None:
        self._console.print(f"\r\n\\[hub] {message}")

    def run(self, account_id: str, args: Sequence[str], snapshots: Sequence[AccountUsageSnapshot]) -> int:
        """
        Run sessions until one exits on its own.

        Returns:
            The exit code of the last session's child.
        """
        self._snapshots = list(snapshots)
        launch = Relaunch(account_id, list(args))
        try:
            while True:
                self.context.registry.register(launch.account_id)
                outcome = self._run_session(launch)
                if isinstance(outcome, int):
                    return outcome
                launch = outcome
        finally:
            self.kill()
            self.context.registry.unregister()

    def kill(self) -> None:
        """Stop the current session, if any."""
        supervisor = self._supervisor
        if supervisor is not None:
            supervisor.kill()

    def _run_session(self, launch: Relaunch) -> int | Relaunch:
        config = self.context.config
        env = self.context.account_env(launch.account_id)
        events: Queue[SupervisorEvent] = Queue()

        self._state = FailoverState.RUNNING
        self._account_id = launch.account_id
        self._in_flight = False
        supervisor = self._supervisor_factory(
            command=config.command,
            args=launch.args,
            env=env,
            events=events,
            cwd=self._cwd,
            rate_limit_marker=config.rate_limit_marker,
            escape_timeout=config.escape_timeout,
        )
        self._supervisor = supervisor
        try:
            supervisor.start()
        except SpawnError as exc:
            self._supervisor = None
            logger.warning("Falling back to passthrough mode: %s", exc)
            self.notice(f"[yellow]PTY unavailable ({escape(str(exc))}); running without auto-switch.[/yellow]")
            self._state = FailoverState.EXITED
            return self._passthrough(config.command, launch.args, env, console=self._console, cwd=self._cwd)

        self.sessions_started += 1
        logger.info("Session %d running on %s with args %s", self.sessions_started, launch.account_id, launch.args)
        try:
            while True:
                try:
                    event = events.get(timeout=EVENT_POLL_SECONDS)
                except Empty:
                    continue
                outcome = self._handle_event(event, supervisor, events, launch)
                if outcome is not None:
                    return outcome
        finally:
            supervisor.kill()
            self._supervisor = None

    def _handle_event(
        self,
        event: SupervisorEvent,
        supervisor: PtySupervisor,
        events: "Queue[SupervisorEvent]",
        launch: Relaunch,
    ) -> int | Relaunch | None:
        logger.debug("Event %s in state %s", event.kind.value, self._state.value)

        if event.kind is EventKind.EXIT:
            self._state = FailoverState.EXITED
            return 0 if event.exit_code is None else event.exit_code

        if event.kind is EventKind.STATUS_KEY:
            self._run_overlay(self._show_status, supervisor, events, launch.account_id)
            return None

        if event.kind is EventKind.SWITCH_KEY:
            self._run_overlay(self._show_switch_menu, supervisor, events, launch.account_id)
            return None

        if event.kind is EventKind.RATE_LIMIT:
            if not self.auto_failover:
                logger.info("Rate limit on %s; automatic failover is disabled", launch.account_id)
                self.notice("Rate limit reached. Auto-switch is disabled; press F10 to switch accounts.")
                return None
            if self._in_flight:
                logger.info("Dropping rate limit event: a failover is already in flight")
                return None
            self._in_flight = True
            self._state = FailoverState.RATE_LIMIT_PENDING
            return self._failover(supervisor, launch, target=None, resume=True)

        if event.kind is EventKind.SWITCH_REQUESTED:
            if self._in_flight:
                logger.info("Dropping switch request: a failover is already in flight")
                return None
            if not event.account_id or event.account_id == launch.account_id:
                return None
            self._in_flight = True
            self._state = FailoverState.MANUAL_SWITCH_PENDING
            return self._failover(supervisor, launch, target=event.account_id, resume=event.resume_conversation)

        return None

    def _run_overlay(
        self,
        show: OverlayFunc,
        supervisor: PtySupervisor,
        events: "Queue[SupervisorEvent]",
        account_id: str,
    ) -> None:
        try:
            show(self._overlay_context(supervisor, events, account_id))
        except Exception as exc:
            # The session outlives a broken overlay.
            logger.exception("Overlay failed")
            self.notice(f"[yellow]Overlay failed ({escape(str(exc))}).[/yellow]")
        finally:
            supervisor.end_overlay()

    def _overlay_context(
        self,
        supervisor: PtySupervisor,
        events: "Queue[SupervisorEvent]",
        account_id: str,
    ) -> overlays.OverlayContext:
        def request_switch(target: str, resume_conversation: bool) -> None:
            events.put(SupervisorEvent(EventKind.SWITCH_REQUESTED, account_id=target, resume_conversation=resume_conversation))

        return overlays.OverlayContext(
            account_id=account_id,
            fetch_snapshots=lambda: self._apply_exhaustion(self.context.usage_snapshots()),
            select=lambda snapshots, exclude: self.context.select(snapshots, exclude=exclude),
            pause_output=supervisor.pause_output,
            resume_output=supervisor.resume_output,
            set_input_handler=supervisor.set_input_handler,
            trigger_redraw=supervisor.trigger_redraw,
            request_switch=request_switch,
            is_active=lambda: supervisor.is_running,
        )

    # Failover steps

    def _mark_exhausted(self, account_id: str) -> None:
        current = next((s for s in self._snapshots if s.account_id == account_id), None)
        now = datetime.now().astimezone()
        until = current.session_reset_at if current is not None and current.session_reset_at > now else None
        if until is None:
            until = now + SESSION_WINDOW
        self._exhausted_until[account_id] = until
        logger.info("Marked %s exhausted until %s", account_id, until.isoformat())

    def _apply_exhaustion(self, snapshots: Sequence[AccountUsageSnapshot]) -> list[AccountUsageSnapshot]:
        now = datetime.now().astimezone()
        result = []
        for snapshot in snapshots:
            until = self._exhausted_until.get(snapshot.account_id)
            if until is not None and until > now and not snapshot.has_error and snapshot.session_remaining_pct > 0:
                snapshot = dataclasses.replace(snapshot, session_remaining_pct=0.0, session_reset_at=until)
            result.append(snapshot)
        return result

    def _refresh_snapshots(self) -> list[AccountUsageSnapshot]:
        try:
            fresh = self.context.usage_snapshots(force=True)
        except Exception:
            logger.exception("Usage refresh failed, using last known usage")
            fresh = []
        if fresh and not all(s.has_error for s in fresh):
            self._snapshots = fresh
        else:
            logger.warning("No usable usage data after refresh; using last known usage")
        self._snapshots = self._apply_exhaustion(self._snapshots)
        return self._snapshots

    def _failover(
        self,
        supervisor: PtySupervisor,
        launch: Relaunch,
        target: str | None,
        resume: bool,
    ) -> Relaunch | None:
        current = launch.account_id
        self._state = FailoverState.RESOLVING
        if target is None:
            self._mark_exhausted(current)
            snapshots = self._refresh_snapshots()
            selection = self.context.select(snapshots, exclude=current)
            if selection is None or selection.is_rate_limited:
                when = f" (next reset in {format_reset(selection.resets_at)})" if selection and selection.resets_at else ""
                logger.warning("Rate limit on %s but no other account is available", current)
                self.notice(f"[yellow]No accounts available, waiting{when}.[/yellow]")
                self._state = FailoverState.RUNNING
                self._in_flight = False
                return None
            target = selection.account_id
            self.notice(f"Rate limit reached on {current}. Switching to {target}...")
        else:
            self.notice(f"Switching from {current} to {target}...")

        self._state = FailoverState.DRAINING
        conversation_id = None
        if resume:
            try:
                conversation_id = self._resolve_conversation(self.context.account_path(current), self._cwd)
            except Exception:
                logger.exception("Could not identify the conversation to resume")
            logger.info("Conversation to resume: %s", conversation_id or "none")
        try:
            self._sync(self.context.config.accounts)
        except Exception as exc:
            # Sync failures never block the switch.
            logger.exception("Sync before switching failed")
            self.notice(f"[yellow]Sync failed ({escape(str(exc))}); switching anyway.[/yellow]")

        self._state = FailoverState.SWITCHING
        supervisor.kill()
        args = with_resume_argument(launch.args, conversation_id) if resume else list(launch.args)
        logger.info("Switching %s -> %s", current, target)
        return Relaunch(target, args)


@contextmanager
def terminate_on_signals(signals: Sequence[int] = (signal.SIGTERM, signal.SIGHUP)) -> Iterator[None]:
    """Turn termination signals into SystemExit so cleanup in finally blocks runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        raise SystemExit(128 + signum)

    previous = {signum: signal.signal(signum, handler) for signum in signals}
    try:
        yield
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)


def run_supervised(
    context: SchedulerContext,
    account_id: str,
    subprocess_args: Sequence[str],
    candidate_snapshots: Sequence[AccountUsageSnapshot],
    auto_failover_enabled: bool = True,
    console: Console | None = None,
) -> int:
    """Launch the CLI under account_id and fail over as needed; returns its exit code."""
    controller = FailoverController(context, auto_failover=auto_failover_enabled, console=console)
    with terminate_on_signals():
        return controller.run(account_id, subprocess_args, candidate_snapshots)
