"""Member score persistence and rank-up announcements."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from chatppc.events import RANK_UP, EventBus
from chatppc.models.message import ChatMessage, MessageReaction
from chatppc.models.user import BehaviorEvent, BehaviorEventType, User
from chatppc.services.member_progress import (
    MEMBER_BRAND,
    SCORE_WEIGHTS,
    MemberProgress,
    build_member_progress,
    is_member_rank_upgrade,
)
from chatppc.services.messages import MessageService

logger = logging.getLogger(__name__)

# Event types that count as member activity for decay purposes
ACTIVE_EVENT_TYPES = (
    BehaviorEventType.MESSAGE_CREATED.value,
    BehaviorEventType.USERNAME_CHANGED.value,
    BehaviorEventType.REACTION_GIVEN.value,
    BehaviorEventType.POLL_CREATED.value,
    BehaviorEventType.POLL_EXTENDED.value,
    BehaviorEventType.POLL_VOTE_GIVEN.value,
    BehaviorEventType.AI_MENTION_SENT.value,
    BehaviorEventType.MESSAGE_TAGGING_COMPLETED.value,
)


@dataclass(frozen=True, slots=True)
class MemberBreakdown:
    messages_created: int = 0
    reactions_given: int = 0
    reactions_received: int = 0
    ai_mentions: int = 0
    polls_created: int = 0
    polls_extended: int = 0
    poll_votes: int = 0
    tagging_completed: int = 0
    username_changes: int = 0

    @property
    def raw_score(self) -> int:
        return sum(getattr(self, name) * weight for name, weight in SCORE_WEIGHTS.items())


class MemberService:
    """Recompute member scores from behavior events and reactions."""

    __slots__ = ("_engine", "_events", "_messages")

    def __init__(self, engine: Engine, events: EventBus, messages: MessageService) -> None:
        self._engine = engine
        self._events = events
        self._messages = messages

    def breakdown(self, session: Session, user_id: str) -> tuple[MemberBreakdown, datetime | None]:
        counts = dict(
            session.exec(
                select(BehaviorEvent.type, func.count())
                .where(BehaviorEvent.user_id == user_id)
                .group_by(BehaviorEvent.type)
            ).all()
        )
        reactions_given = session.exec(
            select(func.count()).select_from(MessageReaction).where(MessageReaction.user_id == user_id)
        ).one()
        reactions_received = session.exec(
            select(func.count())
            .select_from(MessageReaction)
            .join(ChatMessage, col(ChatMessage.id) == col(MessageReaction.message_id))
            .where(ChatMessage.author_id == user_id)
        ).one()
        last_active_at = session.exec(
            select(func.max(BehaviorEvent.created_at)).where(
                BehaviorEvent.user_id == user_id,
                col(BehaviorEvent.type).in_(ACTIVE_EVENT_TYPES),
            )
        ).one()

        breakdown = MemberBreakdown(
            messages_created=counts.get(BehaviorEventType.MESSAGE_CREATED.value, 0),
            reactions_given=int(reactions_given),
            reactions_received=int(reactions_received),
            ai_mentions=counts.get(BehaviorEventType.AI_MENTION_SENT.value, 0),
            polls_created=counts.get(BehaviorEventType.POLL_CREATED.value, 0),
            polls_extended=counts.get(BehaviorEventType.POLL_EXTENDED.value, 0),
            poll_votes=counts.get(BehaviorEventType.POLL_VOTE_GIVEN.value, 0),
            tagging_completed=counts.get(BehaviorEventType.MESSAGE_TAGGING_COMPLETED.value, 0),
            username_changes=counts.get(BehaviorEventType.USERNAME_CHANGED.value, 0),
        )
        return breakdown, last_active_at

    def get_progress(self, user_id: str, now: datetime | None = None) -> MemberProgress | None:
        with Session(self._engine) as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            return build_member_progress(user.member_score_raw, user.member_last_active_at, now)

    def recompute_member(self, user_id: str, announce: bool = True) -> MemberProgress | None:
        """Persist the raw score and last activity; announce strict rank-ups.

        Returns the new progress, or None for an unknown user.
        """
        with Session(self._engine) as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            previous = build_member_progress(user.member_score_raw, user.member_last_active_at)
            breakdown, last_active_at = self.breakdown(session, user_id)

            user.member_score_raw = breakdown.raw_score
            user.member_last_active_at = last_active_at
            session.add(user)
            session.commit()
            username = user.username

        current = build_member_progress(breakdown.raw_score, last_active_at)
        logger.debug(
            "Member %s recomputed: raw=%d score=%d rank=%s",
            user_id,
            breakdown.raw_score,
            current.score,
            current.rank.value,
        )

        if announce and is_member_rank_upgrade(previous.rank, current.rank):
            logger.info("Member %s ranked up %s -> %s", user_id, previous.rank.value, current.rank.value)
            self._events.publish(
                RANK_UP,
                {
                    "userId": user_id,
                    "username": username,
                    "previousRank": previous.rank.value,
                    "member": current.as_dict(),
                    "breakdown": asdict(breakdown),
                },
            )
            self._messages.create_system_message(
                f"{username} ist auf {current.rank.label} aufgestiegen · {MEMBER_BRAND} {current.score}",
                author_id=user_id,
            )
        return current
