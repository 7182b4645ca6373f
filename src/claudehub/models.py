"""Data models for claudehub."""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


@dataclass(slots=True, frozen=True)
class AccountUsageSnapshot:
    """Immutable usage reading for one account."""

    account_id: str
    session_remaining_pct: float  # 0 - 100
    session_reset_at: datetime
    window_remaining_pct: float  # 0 - 100
    window_reset_at: datetime
    error_reason: str | None = None
    email: str | None = None

    @property
    def has_error(self) -> bool:
        return self.error_reason is not None

    @property
    def is_exhausted(self) -> bool:
        """True when the session window has no capacity left."""
        return not self.has_error and self.session_remaining_pct <= 0

    @property
    def session_used_pct(self) -> float:
        return 100 - self.session_remaining_pct

    @property
    def window_used_pct(self) -> float:
        return 100 - self.window_remaining_pct

    @classmethod
    def failed(cls, account_id: str, reason: str, email: str | None = None) -> "AccountUsageSnapshot":
        """Build a snapshot for an account whose usage could not be read."""
        now = datetime.now().astimezone()
        return cls(
            account_id=account_id,
            session_remaining_pct=100.0,
            session_reset_at=now,
            window_remaining_pct=100.0,
            window_reset_at=now,
            error_reason=reason,
            email=email,
        )


class SessionRegistryEntry(BaseModel):
    """One live supervising process, as persisted in the registry file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    account_id: str = Field(alias="account")
    process_id: int = Field(alias="pid", gt=0)
    started_at: datetime = Field(alias="startedAt")


class RegistryState(BaseModel):
    """Shared registry state read and written by every hub process."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    active_sessions: list[SessionRegistryEntry] = Field(default_factory=list, alias="activeSessions")
    last_used_account: str | None = Field(default=None, alias="lastUsedAccount")
    last_used_at: datetime | None = Field(default=None, alias="lastUsedAt")


@dataclass(slots=True, frozen=True)
class ScoredCandidate:
    """Score of one available account, computed fresh on every selection."""

    account_id: str
    base_score: float
    session_bonus: float
    window_bonus: float
    active_penalty: float
    last_used_penalty: float
    final_score: float

    @property
    def reset_bonuses(self) -> float:
        return self.session_bonus + self.window_bonus

    @property
    def penalties(self) -> float:
        return self.active_penalty + self.last_used_penalty


@dataclass(slots=True, frozen=True)
class Selection:
    """The account chosen by the selector."""

    account_id: str
    session_remaining_pct: float
    window_remaining_pct: float
    score: float
    is_rate_limited: bool = False
    resets_at: datetime | None = None
