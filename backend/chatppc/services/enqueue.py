"""Hooks the chat mutation layer calls after it has persisted a change.

Hooks only insert rows, post synchronous notices and recompute derived
scores; queued work is picked up by the workers. They never call a
provider.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.engine import Engine
from sqlmodel import Session

from chatppc.config import Settings
from chatppc.events import POLL_UPDATED, EventBus
from chatppc.models.job import AiJob
from chatppc.models.message import SYSTEM_AUTHOR_NAME, ChatMessage, MessageType, TaggingStatus
from chatppc.models.user import BehaviorEvent, BehaviorEventType
from chatppc.services.ai_worker import NOT_CONFIGURED_TEXT
from chatppc.services.job_store import EnqueueOutcome, JobStore
from chatppc.services.media import extract_image_urls
from chatppc.services.members import MemberService
from chatppc.services.messages import MessageService
from chatppc.services.providers import (
    AiProvider,
    detect_ai_providers,
    is_ai_display_name,
    is_provider_configured,
)
from chatppc.services.taste import TasteService

logger = logging.getLogger(__name__)


def busy_text(provider: AiProvider) -> str:
    return f"Zu viele {provider.mention} Anfragen gleichzeitig. Bitte in wenigen Sekunden erneut versuchen."


def poll_tagging_text(question: str, options: list[str]) -> str:
    return "\n".join([question, *(f"{index}. {option}" for index, option in enumerate(options, 1))])


class EnqueueHooks:
    """Entry points for message, reaction and poll mutations."""

    __slots__ = (
        "_engine",
        "_settings",
        "_events",
        "_ai_jobs",
        "_messages",
        "_members",
        "_taste",
        "_wake",
        "_clock",
        "_last_busy_notice",
    )

    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        events: EventBus,
        ai_jobs: JobStore[AiJob],
        messages: MessageService,
        members: MemberService,
        taste: TasteService,
        wake: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._settings = settings
        self._events = events
        self._ai_jobs = ai_jobs
        self._messages = messages
        self._members = members
        self._taste = taste
        self._wake = wake
        self._clock = clock
        self._last_busy_notice: dict[AiProvider, float] = {}

    # ── helpers ──────────────────────────────────────────────────

    def record_event(
        self,
        user_id: str,
        event_type: BehaviorEventType,
        *,
        message_id: str | None = None,
        reaction: str | None = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        with Session(self._engine) as session:
            session.add(
                BehaviorEvent(
                    user_id=user_id,
                    type=event_type.value,
                    message_id=message_id,
                    reaction=reaction,
                    created_at=now,
                    expires_at=now + timedelta(days=self._settings.behavior_event_retention_days),
                )
            )
            session.commit()

    def _load(self, message_id: str) -> ChatMessage:
        message = self._messages.get(message_id)
        if message is None:
            raise LookupError(f"Message {message_id} does not exist")
        return message

    def _notify_workers(self) -> None:
        if self._wake is not None:
            self._wake()

    def _queue_tagging(self, message: ChatMessage, text: str) -> EnqueueOutcome | None:
        if self._settings.tagging_enabled and message.tagging_status in (None, TaggingStatus.FAILED.value):
            self._messages.update_tagging_state(message.id, TaggingStatus.PENDING)
        outcome = self._messages.queue_tagging(
            message_id=message.id,
            username=message.author_name,
            message=text,
            image_urls=extract_image_urls(message.content),
        )
        if outcome is EnqueueOutcome.QUEUED:
            self._notify_workers()
        return outcome

    def _emit_busy_notice(self, provider: AiProvider, thread_root: str) -> bool:
        """Post the busy message unless one went out within the cooldown."""
        now = self._clock()
        last = self._last_busy_notice.get(provider)
        if last is not None and now - last < self._settings.ai_busy_notice_cooldown_seconds:
            return False
        self._last_busy_notice[provider] = now
        self._messages.create_message(
            content=busy_text(provider),
            author_name=provider.display_name,
            question_message_id=thread_root,
        )
        return True

    # ── messages ─────────────────────────────────────────────────

    def on_message_created(self, message_id: str) -> dict[AiProvider, EnqueueOutcome | None]:
        """Queue tagging and AI replies for a new message.

        Returns the enqueue outcome per mentioned provider; ``None`` marks a
        provider that is not configured.
        """
        message = self._load(message_id)
        if message.author_name == SYSTEM_AUTHOR_NAME:
            return {}
        if message.type == MessageType.VOTING_POLL.value:
            self.on_poll_created(message_id)
            return {}

        self._queue_tagging(message, message.content)
        if message.author_id:
            self.record_event(message.author_id, BehaviorEventType.MESSAGE_CREATED, message_id=message.id)

        outcomes: dict[AiProvider, EnqueueOutcome | None] = {}
        providers = [] if is_ai_display_name(message.author_name) else detect_ai_providers(message.content)
        if providers:
            outcomes = self._enqueue_ai(message, providers)
            if message.author_id:
                self.record_event(message.author_id, BehaviorEventType.AI_MENTION_SENT, message_id=message.id)

        if message.author_id:
            self._members.recompute_member(message.author_id)
        return outcomes

    def _enqueue_ai(
        self, message: ChatMessage, providers: list[AiProvider]
    ) -> dict[AiProvider, EnqueueOutcome | None]:
        thread_root = self._messages.resolve_thread_root(message.id)
        image_urls = extract_image_urls(message.content)
        outcomes: dict[AiProvider, EnqueueOutcome | None] = {}
        for provider in providers:
            if not is_provider_configured(provider, self._settings):
                self._messages.create_message(
                    content=NOT_CONFIGURED_TEXT,
                    author_name=provider.display_name,
                    question_message_id=thread_root,
                )
                outcomes[provider] = None
                continue

            outcome = self._ai_jobs.enqueue(
                source_message_id=message.id,
                target_key=provider.target_key,
                username=message.author_name,
                message=message.content,
                image_urls=image_urls,
                max_active=self._settings.ai_queue_max_pending,
                provider=provider.value,
            )
            outcomes[provider] = outcome
            if outcome is EnqueueOutcome.FULL:
                logger.warning("AI queue for %s is full; rejecting mention %s", provider.value, message.id)
                self._emit_busy_notice(provider, thread_root)

        if any(outcome is EnqueueOutcome.QUEUED for outcome in outcomes.values()):
            self._notify_workers()
        return outcomes

    def on_tagging_completed(self, message_id: str) -> None:
        message = self._messages.get(message_id)
        if message is None or not message.author_id:
            return
        self.record_event(
            message.author_id, BehaviorEventType.MESSAGE_TAGGING_COMPLETED, message_id=message_id
        )
        self._taste.recompute_profile(message.author_id)
        self._members.recompute_member(message.author_id)

    # ── reactions ────────────────────────────────────────────────

    def on_reaction_added(self, message_id: str, user_id: str, reaction: str) -> None:
        message = self._load(message_id)
        self.record_event(user_id, BehaviorEventType.REACTION_GIVEN, message_id=message_id, reaction=reaction)
        affected = [user_id]
        if message.author_id and message.author_id != user_id:
            self.record_event(
                message.author_id,
                BehaviorEventType.REACTION_RECEIVED,
                message_id=message_id,
                reaction=reaction,
            )
            affected.append(message.author_id)
        for affected_id in affected:
            self._taste.recompute_profile(affected_id)
            self._members.recompute_member(affected_id)

    # ── polls ────────────────────────────────────────────────────

    def on_poll_created(self, message_id: str) -> None:
        message = self._load(message_id)
        read = self._messages.read(message_id)
        options = read.poll_options if read is not None else []
        self._queue_tagging(message, poll_tagging_text(message.content, options))
        if message.author_id:
            self.record_event(message.author_id, BehaviorEventType.POLL_CREATED, message_id=message_id)
            self._members.recompute_member(message.author_id)

    def _on_poll_action(self, message_id: str, user_id: str, event_type: BehaviorEventType) -> None:
        self._load(message_id)
        self.record_event(user_id, event_type, message_id=message_id)
        read = self._messages.read(message_id)
        if read is not None:
            self._events.publish(POLL_UPDATED, read.model_dump(mode="json"))
        self._members.recompute_member(user_id)

    def on_poll_vote(self, message_id: str, user_id: str) -> None:
        self._on_poll_action(message_id, user_id, BehaviorEventType.POLL_VOTE_GIVEN)

    def on_poll_extended(self, message_id: str, user_id: str) -> None:
        self._on_poll_action(message_id, user_id, BehaviorEventType.POLL_EXTENDED)
