"""Member score decay and rank resolution.

The stored raw score never decays; the displayed score is derived on read
with a 45-day half-life measured from the member's last activity.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from chatppc.errors import AdmissionError

MEMBER_BRAND = "PPC Score"
DECAY_HALF_LIFE_DAYS = 45

SCORE_WEIGHTS = {
    "messages_created": 5,
    "reactions_given": 4,
    "reactions_received": 5,
    "ai_mentions": 8,
    "polls_created": 5,
    "polls_extended": 6,
    "poll_votes": 3,
    "tagging_completed": 0,
    "username_changes": 5,
}


class MemberRank(str, Enum):
    BRONZE = "BRONZE"
    SILBER = "SILBER"
    GOLD = "GOLD"
    PLATIN = "PLATIN"
    DIAMANT = "DIAMANT"
    ONYX = "ONYX"
    TITAN = "TITAN"

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True, slots=True)
class RankStep:
    rank: MemberRank
    min_score: int
    bot_limit: int


RANK_STEPS: tuple[RankStep, ...] = (
    RankStep(MemberRank.BRONZE, 0, 1),
    RankStep(MemberRank.SILBER, 300, 2),
    RankStep(MemberRank.GOLD, 900, 3),
    RankStep(MemberRank.PLATIN, 1800, 4),
    RankStep(MemberRank.DIAMANT, 4200, 5),
    RankStep(MemberRank.ONYX, 9000, 6),
    RankStep(MemberRank.TITAN, 18000, 8),
)
_STEP_BY_RANK = {step.rank: step for step in RANK_STEPS}


@dataclass(frozen=True, slots=True)
class MemberProgress:
    score: int
    rank: MemberRank
    next_rank: MemberRank | None
    points_to_next: int | None
    last_active_at: datetime | None

    def as_dict(self) -> dict:
        return {
            "brand": MEMBER_BRAND,
            "score": self.score,
            "rank": self.rank.value,
            "nextRank": self.next_rank.value if self.next_rank else None,
            "pointsToNext": self.points_to_next,
            "lastActiveAt": self.last_active_at.isoformat() if self.last_active_at else None,
        }


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_decayed_member_score(
    raw_score: float,
    last_active_at: datetime | None = None,
    now: datetime | None = None,
) -> int:
    """``round(raw * 0.5 ** (inactive_days / 45))``; no decay without activity."""
    if not math.isfinite(raw_score) or raw_score <= 0:
        return 0
    if last_active_at is None:
        return _round_half_up(raw_score)

    now = now or datetime.now(timezone.utc)
    inactive_seconds = max(0.0, (_as_utc(now) - _as_utc(last_active_at)).total_seconds())
    inactive_days = inactive_seconds / 86400
    return max(0, _round_half_up(raw_score * 0.5 ** (inactive_days / DECAY_HALF_LIFE_DAYS)))


def resolve_member_rank(score: float) -> MemberRank:
    safe_score = max(0, math.floor(score)) if math.isfinite(score) else 0
    for step in reversed(RANK_STEPS):
        if safe_score >= step.min_score:
            return step.rank
    return MemberRank.BRONZE


def get_rank_order(rank: MemberRank) -> int:
    return RANK_STEPS.index(_STEP_BY_RANK[rank])


def get_next_rank(rank: MemberRank) -> MemberRank | None:
    order = get_rank_order(rank)
    if order + 1 >= len(RANK_STEPS):
        return None
    return RANK_STEPS[order + 1].rank


def is_member_rank_upgrade(previous: MemberRank, current: MemberRank) -> bool:
    """True only when ``current`` is strictly above ``previous``."""
    return get_rank_order(current) > get_rank_order(previous)


def build_member_progress(
    raw_score: float,
    last_active_at: datetime | None = None,
    now: datetime | None = None,
) -> MemberProgress:
    score = compute_decayed_member_score(raw_score, last_active_at, now)
    rank = resolve_member_rank(score)
    next_rank = get_next_rank(rank)
    points_to_next = (
        max(0, _STEP_BY_RANK[next_rank].min_score - score) if next_rank is not None else None
    )
    return MemberProgress(
        score=score,
        rank=rank,
        next_rank=next_rank,
        points_to_next=points_to_next,
        last_active_at=_as_utc(last_active_at) if last_active_at else None,
    )


def get_bot_limit_for_rank(rank: MemberRank) -> int:
    return _STEP_BY_RANK[rank].bot_limit


def ensure_bot_capacity(rank: MemberRank, current_bot_count: int) -> None:
    """Raise when a member already owns as many bots as the rank allows."""
    limit = get_bot_limit_for_rank(rank)
    if current_bot_count >= limit:
        raise AdmissionError(
            f"Dein Rang {rank.label} erlaubt maximal {limit} Bot(s).",
            status_code=403,
        )
