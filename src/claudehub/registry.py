"""
Cross-process session registry.

Every hub process records which account it is running under in one shared
JSON file. The file is read-modify-written without locking: concurrent writers
may lose each other's updates, which only biases the next account choice.
Entries are keyed by process id, so a lost or stale entry heals itself on the
next ``clean_stale`` pass once its process is gone.
"""

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import psutil
from pydantic import ValidationError

from claudehub.models import RegistryState, SessionRegistryEntry

logger = logging.getLogger(__name__)


def is_process_running(pid: int) -> bool:
    """Signal-0 liveness probe; any failure means the process is gone."""
    try:
        return psutil.pid_exists(pid)
    except (OSError, ValueError):
        return False


class SessionRegistry:
    """
    Persisted record of live hub sessions and the last used account.

    All operations are best-effort: read failures yield an empty state and
    write failures are logged and ignored.
    """

    def __init__(self, path: Path, pid: int | None = None) -> None:
        """
        Initialize the SessionRegistry.

        Args:
            path: Location of the shared state file.
            pid: Process id owning this registry handle. Defaults to os.getpid().
        """
        self._path = path
        self._pid = pid if pid is not None else os.getpid()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def pid(self) -> int:
        return self._pid

    def load(self) -> RegistryState:
        """Read the registry, degrading to an empty state on any failure."""
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return RegistryState()
        except OSError as exc:
            logger.debug("Cannot read registry %s: %s", self._path, exc)
            return RegistryState()

        try:
            return RegistryState.model_validate_json(raw)
        except (ValidationError, UnicodeDecodeError) as exc:
            logger.debug("Discarding malformed registry %s: %s", self._path, exc)
            return RegistryState()

    def save(self, state: RegistryState) -> None:
        """Write the registry atomically; failures are non-fatal."""
        data = state.model_dump(mode="json", by_alias=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as exc:
            logger.debug("Cannot write registry %s: %s", self._path, exc)
            try:
                tmp.unlink()
            except OSError:
                pass

    def clean_stale(self, state: RegistryState) -> RegistryState:
        """Return a copy of state without entries whose process has exited."""
        alive = [entry for entry in state.active_sessions if is_process_running(entry.process_id)]
        if len(alive) != len(state.active_sessions):
            logger.debug("Pruned %d stale registry entries", len(state.active_sessions) - len(alive))
        return state.model_copy(update={"active_sessions": alive})

    def current(self) -> RegistryState:
        """Load and clean the registry without writing it back."""
        return self.clean_stale(self.load())

    def register(self, account_id: str) -> RegistryState:
        """Record this process as running under account_id."""
        state = self.current()
        now = datetime.now().astimezone()
        sessions = [entry for entry in state.active_sessions if entry.process_id != self._pid]
        sessions.append(SessionRegistryEntry(account_id=account_id, process_id=self._pid, started_at=now))
        state = state.model_copy(
            update={
                "active_sessions": sessions,
                "last_used_account": account_id,
                "last_used_at": now,
            }
        )
        self.save(state)
        logger.info("Registered pid %d on account %s", self._pid, account_id)
        return state

    def unregister(self) -> None:
        """Remove this process's entry. Safe to call more than once."""
        state = self.load()
        sessions = [entry for entry in state.active_sessions if entry.process_id != self._pid]
        if len(sessions) == len(state.active_sessions):
            return
        self.save(state.model_copy(update={"active_sessions": sessions}))
        logger.info("Unregistered pid %d", self._pid)

    @contextmanager
    def session(self, account_id: str) -> Iterator[RegistryState]:
        """Register for the duration of the block and always unregister."""
        state = self.register(account_id)
        try:
            yield state
        finally:
            self.unregister()
