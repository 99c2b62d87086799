"""
Ranking signals and preference decay.

Everything here is a pure function of its arguments so it can be tested
without a database. ``now`` defaults to the current UTC time.

    score = 0.5 * relevance + 0.3 * recency + 0.2 * outcome + scope_bonus
"""

from datetime import datetime, timezone
from typing import List, Optional

RELEVANCE_WEIGHT = 0.5
RECENCY_WEIGHT = 0.3
OUTCOME_WEIGHT = 0.2
SCOPE_BONUS = 0.1

FAILURE_OUTCOME = 0.5

# (max elapsed days, factor); anything older falls through to _STALE_FACTOR
_DECAY_STEPS = (
    (30, 1.0),
    (90, 0.9),
    (180, 0.7),
)
_STALE_FACTOR = 0.5


def _aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def days_since(then: datetime, now: Optional[datetime] = None) -> float:
    """Fractional days elapsed since *then*, never negative."""
    now = _aware(now or datetime.now(timezone.utc))
    delta = now - _aware(then)
    return max(0.0, delta.total_seconds() / 86400.0)


def recency_score(created_at: datetime, now: Optional[datetime] = None) -> float:
    return 1.0 / (1.0 + days_since(created_at, now))


def outcome_score(success: bool) -> float:
    return 1.0 if success else FAILURE_OUTCOME


def scope_bonus(candidate_project: str, requested_project: Optional[str]) -> float:
    """Bonus for rows that belong to the requested project (never for global search)."""
    if not requested_project:
        return 0.0
    return SCOPE_BONUS if candidate_project == requested_project else 0.0


def rank_score(relevance: float, recency: float, outcome: float, scope_bonus: float = 0.0) -> float:
    return (
        RELEVANCE_WEIGHT * relevance
        + RECENCY_WEIGHT * recency
        + OUTCOME_WEIGHT * outcome
        + scope_bonus
    )


def normalize_bm25(ranks: List[float]) -> List[float]:
    """Map raw FTS5 bm25() values onto (0, 1], higher is better.

    bm25() is negative and more negative means a better match. Each rank is
    expressed as a fraction of the best rank in the candidate set, so the
    best match scores 1.0 and weaker matches shrink proportionally.
    """
    if not ranks:
        return []
    best = min(ranks)
    if best >= 0:
        return [1.0] * len(ranks)
    return [min(1.0, max(0.0, r / best)) for r in ranks]


def decay_factor(last_confirmed_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Staircase discount for how long ago a preference was last confirmed.

    A missing timestamp counts as maximally stale.
    """
    if last_confirmed_at is None:
        return _STALE_FACTOR
    elapsed = days_since(last_confirmed_at, now)
    for max_days, factor in _DECAY_STEPS:
        if elapsed <= max_days:
            return factor
    return _STALE_FACTOR


def effective_confidence(
    confidence: float, last_confirmed_at: Optional[datetime], now: Optional[datetime] = None
) -> float:
    return round(confidence * decay_factor(last_confirmed_at, now), 2)
