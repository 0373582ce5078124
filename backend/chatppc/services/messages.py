"""Message writes owned by the chat core.

The workers create bot and system messages and own the tagging columns of
every message. All writes publish the matching realtime event.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from chatppc.config import Settings
from chatppc.events import MESSAGE_CREATED, MESSAGE_UPDATED, EventBus
from chatppc.models.job import TAGGING_TARGET_KEY, TaggingJob
from chatppc.models.message import (
    SYSTEM_AUTHOR_NAME,
    ChatMessage,
    MessageRead,
    MessageReaction,
    MessageType,
    PollOption,
    ReactionCount,
    TaggingStatus,
)
from chatppc.services.job_store import EnqueueOutcome, JobStore
from chatppc.services.media import collect_image_sources

logger = logging.getLogger(__name__)

TAGGING_DISABLED_ERROR = "GROK_API_KEY fehlt für Tagging."


class MessageService:
    """Create messages, track tagging state and publish message events."""

    __slots__ = ("_engine", "_events", "_tagging_jobs", "_settings")

    def __init__(
        self,
        engine: Engine,
        events: EventBus,
        tagging_jobs: JobStore[TaggingJob],
        settings: Settings,
    ) -> None:
        self._engine = engine
        self._events = events
        self._tagging_jobs = tagging_jobs
        self._settings = settings

    # ── reads ────────────────────────────────────────────────────

    def get(self, message_id: str) -> ChatMessage | None:
        with Session(self._engine) as session:
            return session.get(ChatMessage, message_id)

    def to_read(self, session: Session, message: ChatMessage) -> MessageRead:
        options = session.exec(
            select(PollOption.label)
            .where(PollOption.message_id == message.id)
            .order_by(PollOption.sort_order)
        ).all()
        reactions = Counter(
            session.exec(
                select(MessageReaction.reaction).where(MessageReaction.message_id == message.id)
            ).all()
        )
        return MessageRead(
            id=message.id,
            type=message.type,
            content=message.content,
            author_id=message.author_id,
            author_name=message.author_name,
            question_message_id=message.question_message_id,
            created_at=message.created_at,
            poll_options=list(options),
            poll_multi_select=message.poll_multi_select,
            tagging_status=message.tagging_status,
            tagging_error=message.tagging_error,
            tagging=message.tagging_payload,
            reactions=[
                ReactionCount(reaction=reaction, count=count)
                for reaction, count in sorted(reactions.items())
            ],
        )

    def read(self, message_id: str) -> MessageRead | None:
        with Session(self._engine) as session:
            message = session.get(ChatMessage, message_id)
            if message is None:
                return None
            return self.to_read(session, message)

    def resolve_thread_root(self, message_id: str) -> str:
        """Walk reply-parent links up to the root message.

        Stops at a missing parent or a cycle and returns the last message
        that exists.
        """
        current: str | None = message_id.strip()
        if not current:
            return message_id
        resolved = current
        visited: set[str] = set()
        with Session(self._engine) as session:
            while current and current not in visited:
                visited.add(current)
                row = session.get(ChatMessage, current)
                if row is None:
                    break
                resolved = row.id
                current = row.question_message_id
        return resolved

    def recent_messages(self, limit: int) -> list[ChatMessage]:
        """Newest ``limit`` messages, returned oldest first."""
        with Session(self._engine) as session:
            rows = session.exec(
                select(ChatMessage)
                .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())  # type: ignore[union-attr]
                .limit(limit)
            ).all()
        return list(reversed(rows))

    # ── writes ───────────────────────────────────────────────────

    def create_message(
        self,
        *,
        content: str,
        author_name: str,
        author_id: str | None = None,
        question_message_id: str | None = None,
        message_type: MessageType = MessageType.MESSAGE,
        poll_options: list[str] | None = None,
        poll_multi_select: bool = False,
        queue_tagging: bool = True,
        tagging_text: str | None = None,
        image_urls: list[str] | None = None,
    ) -> MessageRead:
        """Persist a message, publish ``message.created`` and queue tagging."""
        message = ChatMessage(
            type=message_type.value,
            content=content,
            author_id=author_id,
            author_name=author_name,
            question_message_id=question_message_id,
            poll_multi_select=poll_multi_select,
            tagging_status=TaggingStatus.PENDING.value if queue_tagging else None,
        )
        with Session(self._engine) as session:
            session.add(message)
            for sort_order, label in enumerate(poll_options or []):
                session.add(PollOption(message_id=message.id, label=label, sort_order=sort_order))
            session.commit()
            session.refresh(message)
            read = self.to_read(session, message)

        self._events.publish(MESSAGE_CREATED, read.model_dump(mode="json"))
        if queue_tagging:
            self.queue_tagging(
                message_id=read.id,
                username=author_name,
                message=tagging_text if tagging_text is not None else content,
                image_urls=image_urls or [],
            )
        return read

    def create_system_message(self, content: str, author_id: str | None = None) -> MessageRead:
        return self.create_message(
            content=content,
            author_name=SYSTEM_AUTHOR_NAME,
            author_id=author_id,
            queue_tagging=False,
        )

    def queue_tagging(
        self, *, message_id: str, username: str, message: str, image_urls: list[str]
    ) -> EnqueueOutcome | None:
        """Queue a tagging job, or mark the message failed when tagging is off."""
        if not self._settings.tagging_enabled:
            self.update_tagging_state(
                message_id, TaggingStatus.FAILED, error=TAGGING_DISABLED_ERROR
            )
            return None
        outcome = self._tagging_jobs.enqueue(
            source_message_id=message_id,
            target_key=TAGGING_TARGET_KEY,
            username=username,
            message=message,
            image_urls=collect_image_sources(image_urls),
        )
        if outcome is EnqueueOutcome.DUPLICATE:
            logger.debug("Tagging already queued for message %s", message_id)
        return outcome

    def update_tagging_state(
        self,
        message_id: str,
        status: TaggingStatus,
        *,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> MessageRead | None:
        """Write the tagging columns and publish ``message.updated``."""
        with Session(self._engine) as session:
            message = session.get(ChatMessage, message_id)
            if message is None:
                logger.warning("Tagging update for unknown message %s", message_id)
                return None
            message.tagging_status = status.value
            message.tagging_payload_json = json.dumps(payload) if payload is not None else None
            message.tagging_error = error[:2000] if error else None
            message.tagging_updated_at = datetime.now(timezone.utc)
            session.add(message)
            session.commit()
            session.refresh(message)
            read = self.to_read(session, message)

        self._events.publish(MESSAGE_UPDATED, read.model_dump(mode="json"))
        return read
