"""
In-session overlays for the status (F9) and switch (F10) keys.

Overlays draw on the terminal's alternate screen so the wrapped CLI's own
display is untouched, and receive keystrokes through the supervisor's input
handler while they are open.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from queue import Empty, Queue

from rich.console import Console, Group
from rich.control import Control
from rich.text import Text

from claudehub.models import AccountUsageSnapshot, Selection
from claudehub.scoring import format_reset

logger = logging.getLogger(__name__)

ESC = "\x1b"
BAR_WIDTH = 20
KEY_POLL_SECONDS = 0.25
# One keystroke per choice
MAX_MENU_OPTIONS = 9

SelectFunc = Callable[[Sequence[AccountUsageSnapshot], str | None], Selection | None]


@dataclass
class OverlayContext:
    """Hooks an overlay uses to talk to the running session."""

    account_id: str
    fetch_snapshots: Callable[[], list[AccountUsageSnapshot]]
    select: SelectFunc
    pause_output: Callable[[], None]
    resume_output: Callable[[], None]
    set_input_handler: Callable[[Callable[[bytes], None] | None], None]
    trigger_redraw: Callable[[], None]
    request_switch: Callable[[str, bool], None]
    is_active: Callable[[], bool] = lambda: True
    console: Console = field(default_factory=lambda: Console(force_terminal=True, highlight=False))


def usage_bar(used_pct: float, width: int = BAR_WIDTH) -> str:
    filled = max(0, min(width, round(used_pct / 100 * width)))
    return "█" * filled + "░" * (width - filled)


def _usage_line(label: str, used_pct: float, reset_at: datetime, now: datetime | None) -> Text:
    return Text(f"  {label:<8} {usage_bar(used_pct)}  {f'{used_pct:.0f}%':>4}  resets in {format_reset(reset_at, now)}")


def render_accounts(
    snapshots: Sequence[AccountUsageSnapshot],
    current: str,
    best: str | None,
    best_style: str = "dim",
    now: datetime | None = None,
) -> list[Text]:
    """Usage block for every account, marking the current and best ones."""
    lines: list[Text] = []
    for snapshot in snapshots:
        name = Text(snapshot.account_id, style="bold")
        if snapshot.email:
            name.append(f" ({snapshot.email.split('@')[0]})", style="dim")
        if snapshot.account_id == current:
            name.append("  <- current", style="dim")
        elif snapshot.account_id == best:
            name.append("  (best)", style=best_style)
        lines.append(name)

        if snapshot.has_error:
            lines.append(Text(f"  Error: {snapshot.error_reason}", style="dim"))
        else:
            lines.append(_usage_line("Session", snapshot.session_used_pct, snapshot.session_reset_at, now))
            lines.append(_usage_line("Weekly", snapshot.window_used_pct, snapshot.window_reset_at, now))
        lines.append(Text(""))
    return lines


class _KeyReader:
    """Collects keystrokes from the supervisor while an overlay is open."""

    def __init__(self, context: OverlayContext) -> None:
        self._context = context
        self._keys: Queue[bytes] = Queue()

    def __enter__(self) -> "_KeyReader":
        self._context.set_input_handler(self._keys.put)
        return self

    def __exit__(self, *exc_info) -> None:
        self._context.set_input_handler(None)

    def next_key(self) -> bytes | None:
        """Block for the next keystroke; None if the session went away."""
        while self._context.is_active():
            try:
                return self._keys.get(timeout=KEY_POLL_SECONDS)
            except Empty:
                continue
        return None


def menu_options(snapshots: Sequence[AccountUsageSnapshot], current: str, best: str | None) -> list[str]:
    """Accounts offered in the switch menu, at most MAX_MENU_OPTIONS, never dropping the best one."""
    options = [s.account_id for s in snapshots if s.account_id != current]
    if best in options[MAX_MENU_OPTIONS:]:
        options.remove(best)
        options.insert(0, best)
    return options[:MAX_MENU_OPTIONS]


def parse_selection(data: bytes, option_count: int) -> int | None | bool:
    """
    Interpret keystrokes in the switch menu.

    Returns the chosen 1-based option, None to cancel, or False to keep waiting.
    """
    for char in data.decode("utf-8", errors="ignore"):
        if char == ESC or option_count == 0:
            return None
        if char.isdigit() and 1 <= int(char) <= option_count:
            return int(char)
    return False


class _AltScreen:
    """Pause the session and draw on the alternate screen for the block."""

    def __init__(self, context: OverlayContext) -> None:
        self._context = context

    def __enter__(self) -> Console:
        self._context.pause_output()
        console = self._context.console
        console.set_alt_screen(True)
        console.clear()
        return console

    def __exit__(self, *exc_info) -> None:
        console = self._context.console
        console.control(Control.home())
        console.set_alt_screen(False)
        self._context.resume_output()
        self._context.trigger_redraw()


def show_status(context: OverlayContext, now: datetime | None = None) -> None:
    """Usage for every account; any key returns to the session."""
    with _AltScreen(context) as console, _KeyReader(context) as keys:
        console.print("Fetching usage...")
        snapshots = context.fetch_snapshots()
        best = context.select(snapshots, None)
        console.clear()
        console.print(Text("Hub Usage", style="bold cyan"))
        console.print()
        console.print(Group(*render_accounts(snapshots, context.account_id, best.account_id if best else None, now=now)))
        console.print(Text("Press any key to return", style="dim"))
        keys.next_key()


def show_switch_menu(context: OverlayContext, now: datetime | None = None) -> str | None:
    """
    Account menu for switching mid-session.

    Returns:
        The account switched to, or None when the menu was cancelled.
    """
    selected: str | None = None
    with _AltScreen(context) as console, _KeyReader(context) as keys:
        console.print("Fetching usage...")
        snapshots = context.fetch_snapshots()
        best = context.select(snapshots, context.account_id)
        best_id = best.account_id if best else None
        options = menu_options(snapshots, context.account_id, best_id)
        hidden = sum(1 for s in snapshots if s.account_id != context.account_id) - len(options)

        console.clear()
        console.print(Text("Switch Account", style="bold cyan"))
        console.print()
        console.print(Group(*render_accounts(snapshots, context.account_id, best_id, best_style="green", now=now)))
        if options:
            for number, account_id in enumerate(options, start=1):
                if account_id == best_id:
                    console.print(Text(f"[{number}] {account_id} (recommended)", style="green"))
                else:
                    console.print(Text(f"[{number}] {account_id}"))
            if hidden:
                console.print(Text(f"({hidden} more not shown; start with --account to use them)", style="dim"))
            console.print(Text("[Esc] Cancel", style="dim"))
            console.print()
            console.print(Text(f"Press 1-{len(options)} to switch, Esc to cancel", style="dim"))
        else:
            console.print(Text("No other accounts available", style="yellow"))
            console.print(Text("Press any key to return", style="dim"))

        while True:
            data = keys.next_key()
            if data is None:
                break
            choice = parse_selection(data, len(options))
            if choice is False:
                continue
            if choice is not None:
                selected = options[choice - 1]
            break

    if selected is not None:
        logger.info("Switch to %s requested from menu", selected)
        context.request_switch(selected, True)
    return selected
