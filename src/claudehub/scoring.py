"""
Account scoring and selection.

An account's score combines its remaining capacity with bonuses for capacity
that is about to reset ("use it or lose it") and penalties that spread load
across accounts:

    final = session% * W_SESSION + window% * W_WINDOW
            + session reset bonus + window reset bonus
            - active session penalty - last used penalty

Only rank order matters; scores are never clamped.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from claudehub.config import ScoringWeights
from claudehub.models import AccountUsageSnapshot, RegistryState, ScoredCandidate, Selection


def _now() -> datetime:
    return datetime.now().astimezone()


def hours_until(instant: datetime, now: datetime) -> float:
    """Hours from now until instant, never negative."""
    return max(0.0, (instant - now).total_seconds() / 3600)


def active_accounts(state: RegistryState) -> set[str]:
    return {entry.account_id for entry in state.active_sessions}


def session_reset_bonus(snapshot: AccountUsageSnapshot, weights: ScoringWeights, now: datetime) -> float:
    cap = weights.session_bonus_cap_hours
    hours = min(hours_until(snapshot.session_reset_at, now), cap)
    return (cap - hours) * weights.session_bonus_per_hour


def window_reset_bonus(snapshot: AccountUsageSnapshot, weights: ScoringWeights, now: datetime) -> float:
    cap = weights.window_bonus_cap_days
    days = min(hours_until(snapshot.window_reset_at, now) / 24, cap)
    return (cap - days) * weights.window_bonus_per_day


def score(
    snapshot: AccountUsageSnapshot,
    state: RegistryState,
    weights: ScoringWeights,
    now: datetime | None = None,
) -> ScoredCandidate:
    """Score one error-free, non-exhausted account."""
    now = now or _now()
    base = snapshot.session_remaining_pct * weights.session_weight + snapshot.window_remaining_pct * weights.window_weight
    session_bonus = session_reset_bonus(snapshot, weights, now)
    window_bonus = window_reset_bonus(snapshot, weights, now)
    active_penalty = weights.active_session_penalty if snapshot.account_id in active_accounts(state) else 0.0
    last_used_penalty = weights.last_used_penalty if snapshot.account_id == state.last_used_account else 0.0

    return ScoredCandidate(
        account_id=snapshot.account_id,
        base_score=base,
        session_bonus=session_bonus,
        window_bonus=window_bonus,
        active_penalty=active_penalty,
        last_used_penalty=last_used_penalty,
        final_score=base + session_bonus + window_bonus - active_penalty - last_used_penalty,
    )


def select(
    snapshots: Iterable[AccountUsageSnapshot],
    state: RegistryState,
    weights: ScoringWeights,
    exclude: str | None = None,
    now: datetime | None = None,
) -> Selection | None:
    """
    Pick the best account to run under.

    Accounts with errors and the excluded account are never chosen. When every
    remaining account is exhausted, the one whose session resets soonest is
    returned with ``is_rate_limited`` set.

    Returns:
        The chosen account, or None when no account is eligible.
    """
    now = now or _now()
    candidates = [s for s in snapshots if not s.has_error and s.account_id != exclude]
    if not candidates:
        return None

    available = [s for s in candidates if s.session_remaining_pct > 0]
    if not available:
        # min() keeps the first of equal keys, so ties resolve in input order.
        soonest = min(candidates, key=lambda s: s.session_reset_at)
        return Selection(
            account_id=soonest.account_id,
            session_remaining_pct=soonest.session_remaining_pct,
            window_remaining_pct=soonest.window_remaining_pct,
            score=0.0,
            is_rate_limited=True,
            resets_at=soonest.session_reset_at,
        )

    by_id = {s.account_id: s for s in available}
    scored = sorted(
        (score(s, state, weights, now) for s in available),
        key=lambda c: c.final_score,
        reverse=True,
    )
    best = scored[0]
    chosen = by_id[best.account_id]
    return Selection(
        account_id=chosen.account_id,
        session_remaining_pct=chosen.session_remaining_pct,
        window_remaining_pct=chosen.window_remaining_pct,
        score=best.final_score,
        is_rate_limited=False,
    )


@dataclass(slots=True, frozen=True)
class ScoreBreakdown:
    """One row of the scoring breakdown shown by ``hub --score``."""

    snapshot: AccountUsageSnapshot
    candidate: ScoredCandidate
    is_rate_limited: bool
    is_best: bool = False

    @property
    def final_score(self) -> float:
        return 0.0 if self.is_rate_limited else self.candidate.final_score


def score_breakdown(
    snapshots: Sequence[AccountUsageSnapshot],
    state: RegistryState,
    weights: ScoringWeights,
    now: datetime | None = None,
) -> list[ScoreBreakdown]:
    """Score every non-errored account, best first, for display and tuning."""
    now = now or _now()
    rows = [
        ScoreBreakdown(
            snapshot=s,
            candidate=score(s, state, weights, now),
            is_rate_limited=s.is_exhausted,
        )
        for s in snapshots
        if not s.has_error
    ]
    rows.sort(key=lambda row: row.final_score, reverse=True)
    if rows and not rows[0].is_rate_limited:
        best = rows[0]
        rows[0] = ScoreBreakdown(best.snapshot, best.candidate, best.is_rate_limited, is_best=True)
    return rows


def format_reset(instant: datetime, now: datetime | None = None) -> str:
    """Format the time until a reset as e.g. ``6d 12h``, ``3h 20m`` or ``45m``."""
    now = now or _now()
    seconds = (instant - now).total_seconds()
    if seconds <= 0:
        return "just reset"

    total_minutes = int(seconds // 60)
    days, remainder = divmod(total_minutes, 60 * 24)
    hours, minutes = divmod(remainder, 60)
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
