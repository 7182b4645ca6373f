"""
Pseudo-terminal supervisor for the wrapped interactive CLI.

A ``PtySupervisor`` owns one child process attached to a pseudo-terminal. A
daemon reader thread relays the child's output to the real terminal, relays
keystrokes to the child, and reports what it sees (rate limit marker,
reserved keys, child exit) as ``SupervisorEvent`` messages on a queue. All
decisions about those events are made by whoever consumes the queue.
"""

import codecs
import logging
import os
import select
import shutil
import signal
import struct
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from queue import Queue

from rich.console import Console

from claudehub.config import DEFAULT_RATE_LIMIT_MARKER
from claudehub.errors import SpawnError
from claudehub.keys import KeyAction, KeyInterceptor

logger = logging.getLogger(__name__)

TAIL_BUFFER_CHARS = 500
READ_SIZE = 4096
POLL_INTERVAL = 0.1
KILL_GRACE_SECONDS = 1.0


class EventKind(Enum):
    """Messages posted by a supervisor to its controller."""

    RATE_LIMIT = "rate_limit"
    STATUS_KEY = "status_key"
    SWITCH_KEY = "switch_key"
    SWITCH_REQUESTED = "switch_requested"
    EXIT = "exit"


TRIGGER_EVENTS = {
    "status": EventKind.STATUS_KEY,
    "switch": EventKind.SWITCH_KEY,
}


@dataclass(slots=True, frozen=True)
class SupervisorEvent:
    """One message from a supervised session."""

    kind: EventKind
    exit_code: int | None = None
    account_id: str | None = None
    resume_conversation: bool = False


InputHandler = Callable[[bytes], None]


def exit_code_from_status(status: int) -> int:
    """Shell-style exit code from a waitpid status (128 + signal when killed)."""
    code = os.waitstatus_to_exitcode(status)
    return 128 - code if code < 0 else code


def terminal_size(fd: int) -> tuple[int, int]:
    """(columns, rows) of the terminal on fd, 80x24 when it is not a terminal."""
    try:
        size = os.get_terminal_size(fd)
    except OSError:
        return 80, 24
    return size.columns or 80, size.lines or 24


class PtySupervisor:
    """
    Supervises one pseudo-terminal child process.

    Output is relayed unless paused, and a trailing window of it is checked
    for the rate limit marker. Stdin goes through a ``KeyInterceptor``; when
    a reserved key is pressed, forwarding is suspended until ``end_overlay``
    and keystrokes go to the installed input handler instead.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str],
        env: dict[str, str],
        events: "Queue[SupervisorEvent]",
        cwd: str | None = None,
        rate_limit_marker: str = DEFAULT_RATE_LIMIT_MARKER,
        escape_timeout: float = 0.05,
        stdin_fd: int | None = None,
        stdout_fd: int | None = None,
    ) -> None:
        self._command = command
        self._args = list(args)
        self._env = env
        self._events = events
        self._cwd = cwd
        self._marker = rate_limit_marker
        self._interceptor = KeyInterceptor(timeout=escape_timeout)
        self._stdin_fd = 0 if stdin_fd is None else stdin_fd
        self._stdout_fd = 1 if stdout_fd is None else stdout_fd

        self._pid: int | None = None
        self._master_fd: int | None = None
        self._wake_r: int | None = None
        self._wake_w: int | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._reap_lock = threading.Lock()
        self._exit_code: int | None = None
        self._saved_tty_mode: list | None = None
        self._previous_winch: object = None
        self._winch_installed = False

        self._tail = ""
        self._rate_limit_detected = False
        self._output_paused = False
        self._suspended = False
        self._input_handler: InputHandler | None = None
        self._killed = False

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def rate_limit_detected(self) -> bool:
        return self._rate_limit_detected

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def start(self) -> None:
        """
        Spawn the child on a new pseudo-terminal and start relaying.

        Raises:
            SpawnError: If no pseudo-terminal can be created for the command.
        """
        try:
            import pty
        except ImportError as exc:
            raise SpawnError(f"Pseudo-terminals are not supported here: {exc}") from exc

        executable = shutil.which(self._command, path=self._env.get("PATH"))
        if executable is None:
            raise SpawnError(f"Command not found: {self._command}")

        cols, rows = terminal_size(self._stdout_fd)
        try:
            pid, master_fd = pty.fork()
        except OSError as exc:
            raise SpawnError(f"Failed to spawn {self._command}: {exc}") from exc

        if pid == 0:
            try:
                if self._cwd:
                    os.chdir(self._cwd)
                os.execve(executable, [self._command, *self._args], self._env)
            finally:
                os._exit(127)

        self._pid = pid
        self._master_fd = master_fd
        self._wake_r, self._wake_w = os.pipe()
        self.resize(cols, rows)
        self._enter_raw_mode()
        self._install_winch_handler()
        logger.info("Spawned %s (pid %d) on a %dx%d pty", self._command, pid, cols, rows)

        self._thread = threading.Thread(target=self._io_loop, daemon=True, name="PtySupervisor")
        self._thread.start()

    # Terminal state

    def _enter_raw_mode(self) -> None:
        if not os.isatty(self._stdin_fd):
            return
        import termios
        import tty

        self._saved_tty_mode = termios.tcgetattr(self._stdin_fd)
        tty.setraw(self._stdin_fd)
        # Keep output post-processing so "\n" still returns the carriage.
        mode = termios.tcgetattr(self._stdin_fd)
        mode[1] |= termios.OPOST | termios.ONLCR
        termios.tcsetattr(self._stdin_fd, termios.TCSANOW, mode)

    def _restore_terminal(self) -> None:
        if self._saved_tty_mode is None:
            return
        import termios

        try:
            termios.tcsetattr(self._stdin_fd, termios.TCSADRAIN, self._saved_tty_mode)
        except (termios.error, OSError) as exc:
            logger.debug("Could not restore terminal mode: %s", exc)
        self._saved_tty_mode = None

    def _install_winch_handler(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        self._previous_winch = signal.signal(signal.SIGWINCH, self._on_winch)
        self._winch_installed = True

    def _restore_winch_handler(self) -> None:
        if not self._winch_installed or threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGWINCH, self._previous_winch or signal.SIG_DFL)
        self._winch_installed = False

    def _on_winch(self, signum, frame) -> None:
        self.resize(*terminal_size(self._stdout_fd))

    # Public API

    def write(self, data: bytes | str) -> None:
        """Send input to the child."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        fd = self._master_fd
        if fd is None or self._killed:
            return
        try:
            while data:
                written = os.write(fd, data)
                data = data[written:]
        except OSError as exc:
            logger.debug("Write to pty failed: %s", exc)

    def resize(self, cols: int, rows: int) -> None:
        """Set the child's terminal dimensions."""
        fd = self._master_fd
        if fd is None or self._killed:
            return
        import fcntl
        import termios

        try:
            fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
        except OSError as exc:
            logger.debug("Resize of pty failed: %s", exc)

    def trigger_redraw(self) -> None:
        """Make the child repaint by nudging its window size."""
        cols, rows = terminal_size(self._stdout_fd)
        self.resize(max(1, cols - 1), rows)
        self.resize(cols, rows)

    def pause_output(self) -> None:
        self._output_paused = True

    def resume_output(self) -> None:
        self._output_paused = False

    def set_input_handler(self, handler: InputHandler | None) -> None:
        """Route keystrokes to handler while an overlay is active."""
        self._input_handler = handler

    def end_overlay(self) -> None:
        """Resume forwarding keystrokes to the child."""
        self._input_handler = None
        self._suspended = False

    def kill(self) -> None:
        """
        Stop the child and release the terminal.

        Idempotent, and safe to call from a signal handler or from the
        failover path.
        """
        if self._killed:
            return
        self._killed = True
        self._stop_event.set()
        self._wake()

        try:
            if self._pid is not None and self._exit_code is None:
                self._terminate_child()

            if self._thread is not None and self._thread is not threading.current_thread():
                self._thread.join(timeout=2.0)
            self._thread = None
        finally:
            # A signal turned into SystemExit mid-kill must still release the terminal.
            self._release()

    def _release(self) -> None:
        for fd in (self._master_fd, self._wake_r, self._wake_w):
            if fd is not None:
                try:
                    os.close(fd)
                except OSError:
                    pass
        self._master_fd = self._wake_r = self._wake_w = None
        self._restore_terminal()
        self._restore_winch_handler()
        logger.info("Supervisor for pid %s stopped", self._pid)

    def _wake(self) -> None:
        if self._wake_w is None:
            return
        try:
            os.write(self._wake_w, b"x")
        except OSError:
            pass

    def _terminate_child(self) -> None:
        try:
            os.kill(self._pid, signal.SIGTERM)
        except ProcessLookupError:
            self._reap(block=True)
            return
        deadline = time.monotonic() + KILL_GRACE_SECONDS
        while time.monotonic() < deadline:
            if self._reap(block=False) is not None:
                return
            time.sleep(0.05)
        try:
            os.kill(self._pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        self._reap(block=True)

    def _reap(self, block: bool) -> int | None:
        """Collect the child's exit status; with block, poll until it has exited."""
        while True:
            with self._reap_lock:
                if self._exit_code is not None or self._pid is None:
                    return self._exit_code
                try:
                    pid, status = os.waitpid(self._pid, os.WNOHANG)
                except ChildProcessError:
                    self._exit_code = 0
                    return self._exit_code
                if pid != 0:
                    self._exit_code = exit_code_from_status(status)
                    return self._exit_code
            if not block:
                return None
            time.sleep(0.02)

    # Reader thread

    def _io_loop(self) -> None:
        """Relay loop running in the background thread."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        watch_stdin = True

        while not self._stop_event.is_set():
            timeout = POLL_INTERVAL
            deadline = self._interceptor.deadline
            if deadline is not None:
                timeout = max(0.0, min(timeout, deadline - time.monotonic()))

            fds = [self._master_fd, self._wake_r]
            if watch_stdin:
                fds.append(self._stdin_fd)
            try:
                readable, _, _ = select.select(fds, [], [], timeout)
            except (OSError, ValueError, TypeError):
                break
            if self._stop_event.is_set():
                break

            if self._master_fd in readable:
                try:
                    data = os.read(self._master_fd, READ_SIZE)
                except OSError:
                    data = b""
                if not data:
                    break
                self._handle_output(data, decoder)

            if watch_stdin and self._stdin_fd in readable:
                try:
                    data = os.read(self._stdin_fd, READ_SIZE)
                except OSError:
                    data = b""
                if data:
                    self._handle_input(data)
                else:
                    watch_stdin = False

            self._dispatch(self._interceptor.flush_expired(time.monotonic()))

            if not readable and self._reap(block=False) is not None:
                break

        if self._stop_event.is_set():
            return
        exit_code = self._reap(block=True)
        logger.info("Child %s exited with code %s", self._pid, exit_code)
        self._events.put(SupervisorEvent(EventKind.EXIT, exit_code=exit_code))

    def _handle_output(self, data: bytes, decoder: codecs.IncrementalDecoder) -> None:
        if not self._output_paused:
            pending = data
            try:
                while pending:
                    written = os.write(self._stdout_fd, pending)
                    pending = pending[written:]
            except OSError as exc:
                logger.debug("Write to terminal failed: %s", exc)

        self._tail = (self._tail + decoder.decode(data)).replace("\r", "")[-TAIL_BUFFER_CHARS:]
        if not self._rate_limit_detected and self._marker in self._tail:
            self._rate_limit_detected = True
            logger.info("Rate limit marker seen in output of pid %s", self._pid)
            self._events.put(SupervisorEvent(EventKind.RATE_LIMIT))

    def _handle_input(self, data: bytes) -> None:
        if self._suspended:
            handler = self._input_handler
            if handler is not None:
                handler(data)
            return
        self._dispatch(self._interceptor.feed(data, time.monotonic()))

    def _dispatch(self, actions: list[KeyAction]) -> None:
        for action in actions:
            if action.trigger is not None:
                self._suspended = True
                self._events.put(SupervisorEvent(TRIGGER_EVENTS[action.trigger]))
            elif action.forward:
                if self._suspended:
                    handler = self._input_handler
                    if handler is not None:
                        handler(action.forward)
                else:
                    self.write(action.forward)


def run_passthrough(
    command: str,
    args: Sequence[str],
    env: dict[str, str],
    console: Console | None = None,
    cwd: str | None = None,
) -> int:
    """
    Run the CLI with inherited stdio and no supervision.

    Used when a pseudo-terminal cannot be created; there is no rate limit
    detection or account switching in this mode.
    """
    console = console or Console(stderr=True)
    try:
        completed = subprocess.run([command, *args], env=env, cwd=cwd, check=False)
    except FileNotFoundError:
        console.print(f"[red]Error launching {command}: command not found.[/red]")
        console.print(f"Make sure [bold]{command}[/bold] is installed and available in your PATH.")
        return 1
    except OSError as exc:
        console.print(f"[red]Error launching {command}: {exc}[/red]")
        return 1
    code = completed.returncode
    return 128 - code if code < 0 else code
