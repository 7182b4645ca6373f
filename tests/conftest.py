"""Shared fixtures for claudehub tests."""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from claudehub.config import HubConfig
from claudehub.models import AccountUsageSnapshot

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

SnapshotFactory = Callable[..., AccountUsageSnapshot]


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_snapshot() -> SnapshotFactory:
    """Build snapshots with resets given as offsets from NOW."""

    def factory(
        account_id: str,
        session: float = 100.0,
        window: float = 100.0,
        session_reset: timedelta = timedelta(hours=5),
        window_reset: timedelta = timedelta(days=7),
        error: str | None = None,
        email: str | None = None,
        base: datetime = NOW,
    ) -> AccountUsageSnapshot:
        return AccountUsageSnapshot(
            account_id=account_id,
            session_remaining_pct=session,
            session_reset_at=base + session_reset,
            window_remaining_pct=window,
            window_reset_at=base + window_reset,
            error_reason=error,
            email=email,
        )

    return factory


@pytest.fixture
def hub_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "hub"
    monkeypatch.setenv("CLAUDE_HUB_HOME", str(home))
    return home


@pytest.fixture
def accounts(tmp_path: Path) -> dict[str, Path]:
    result = {}
    for name in ("a", "b", "c"):
        path = tmp_path / "accounts" / name
        path.mkdir(parents=True)
        result[name] = path
    return result


@pytest.fixture
def config(tmp_path: Path, accounts: dict[str, Path]) -> HubConfig:
    return HubConfig(
        accounts=accounts,
        sync_on_start=False,
        state_file=tmp_path / "state.json",
        log_file=tmp_path / "hub.log",
    )
