"""Taste profiles derived from reactions and message tags.

Profiles are a view over ``message_reactions``, ``chat_messages`` and
``behavior_events``; recomputing with unchanged data yields the same
windows.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from chatppc.events import TASTE_UPDATED, EventBus
from chatppc.models.message import SYSTEM_AUTHOR_NAME, ChatMessage, MessageReaction, ReactionType
from chatppc.models.user import BehaviorEvent, TasteProfile, User
from chatppc.services.taxonomy import payload_tags

logger = logging.getLogger(__name__)

MAX_TOP_TAGS = 40
REACTION_WEIGHTS = {
    ReactionType.LIKE.value: 1.0,
    ReactionType.LOL.value: 1.4,
    ReactionType.FIRE.value: 1.2,
    ReactionType.BASED.value: 1.1,
    ReactionType.WTF.value: 1.0,
    ReactionType.BIG_BRAIN.value: 1.2,
}
TASTE_WINDOWS: dict[str, int | None] = {"7d": 7, "30d": 30, "all": None}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _in_window(created_at: datetime, start: datetime | None) -> bool:
    return start is None or _as_utc(created_at) >= start


def _distribution(counter: Counter) -> list[dict[str, Any]]:
    return [{"reaction": reaction.value, "count": counter.get(reaction.value, 0)} for reaction in ReactionType]


def _sorted_tags(scores: dict[str, float], limit: int = MAX_TOP_TAGS) -> list[dict[str, Any]]:
    ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return [{"tag": tag, "score": round(score, 3)} for tag, score in ranked]


class TasteService:
    """Recompute and read per-user taste profiles."""

    __slots__ = ("_engine", "_events")

    def __init__(self, engine: Engine, events: EventBus) -> None:
        self._engine = engine
        self._events = events

    def purge_expired_events(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._engine.begin() as conn:
            result = conn.execute(
                delete(BehaviorEvent).where(
                    col(BehaviorEvent.expires_at).is_not(None),
                    col(BehaviorEvent.expires_at) < now,
                )
            )
        if result.rowcount:
            logger.info("Purged %d expired behavior event(s)", result.rowcount)
        return result.rowcount or 0

    def build_window(
        self,
        own_messages: list[ChatMessage],
        given: list[tuple[str, datetime, ChatMessage]],
        received: list[tuple[str, datetime]],
        events: list[BehaviorEvent],
        start: datetime | None,
    ) -> dict[str, Any]:
        tag_scores: dict[str, float] = {}

        def add(tags, weight: float) -> None:
            for entry in tags:
                tag_scores[entry.tag] = tag_scores.get(entry.tag, 0.0) + entry.score * weight

        for message in own_messages:
            if _in_window(message.created_at, start):
                add(payload_tags(message.tagging_payload), 1.0)

        given_counts: Counter = Counter()
        for reaction, created_at, message in given:
            if not _in_window(created_at, start):
                continue
            given_counts[reaction] += 1
            add(payload_tags(message.tagging_payload), REACTION_WEIGHTS.get(reaction, 1.0))

        received_counts: Counter = Counter(
            reaction for reaction, created_at in received if _in_window(created_at, start)
        )
        activity = Counter(event.type for event in events if _in_window(event.created_at, start))

        return {
            "reactionsGiven": sum(given_counts.values()),
            "reactionsReceived": sum(received_counts.values()),
            "reactionDistribution": _distribution(received_counts),
            "givenDistribution": _distribution(given_counts),
            "topTags": _sorted_tags(tag_scores),
            "activity": dict(sorted(activity.items())),
        }

    def recompute_profile(self, user_id: str, now: datetime | None = None) -> dict[str, Any] | None:
        """Rebuild all taste windows for a user and publish ``taste.updated``.

        Returns the stored payload, or None for an unknown user.
        """
        now = now or datetime.now(timezone.utc)
        self.purge_expired_events(now)

        with Session(self._engine) as session:
            if session.get(User, user_id) is None:
                return None

            own_messages = list(
                session.exec(
                    select(ChatMessage).where(
                        ChatMessage.author_id == user_id,
                        ChatMessage.author_name != SYSTEM_AUTHOR_NAME,
                    )
                ).all()
            )
            given = [
                (reaction.reaction, reaction.created_at, message)
                for reaction, message in session.exec(
                    select(MessageReaction, ChatMessage)
                    .join(ChatMessage, col(ChatMessage.id) == col(MessageReaction.message_id))
                    .where(MessageReaction.user_id == user_id)
                ).all()
            ]
            received = [
                (reaction.reaction, reaction.created_at)
                for reaction in session.exec(
                    select(MessageReaction)
                    .join(ChatMessage, col(ChatMessage.id) == col(MessageReaction.message_id))
                    .where(ChatMessage.author_id == user_id)
                ).all()
            ]
            events = list(
                session.exec(select(BehaviorEvent).where(BehaviorEvent.user_id == user_id)).all()
            )

            windows = {}
            for name, days in TASTE_WINDOWS.items():
                start = now - timedelta(days=days) if days is not None else None
                windows[name] = self.build_window(own_messages, given, received, events, start)

            payload = {"userId": user_id, "updatedAt": now.isoformat(), "windows": windows}
            profile = session.get(TasteProfile, user_id) or TasteProfile(user_id=user_id)
            profile.payload_json = json.dumps(payload)
            profile.updated_at = now
            session.add(profile)
            session.commit()

        self._events.publish(TASTE_UPDATED, payload)
        return payload

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        with Session(self._engine) as session:
            profile = session.get(TasteProfile, user_id)
            if profile is None:
                return None
            try:
                payload = json.loads(profile.payload_json or "{}")
            except ValueError:
                logger.warning("Stored taste profile for %s is not valid JSON", user_id)
                return None
        return payload if isinstance(payload, dict) else None
