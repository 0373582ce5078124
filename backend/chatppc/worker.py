"""In-process queue drain loop and service wiring.

The drain loop runs both workers every ``queue_drain_interval_seconds``.
Enqueue hooks call ``wake()`` after queuing work so the next drain starts
right away instead of at the next tick. Workers are also reachable over
HTTP, so an external scheduler can drive them instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from chatppc.config import Settings
from chatppc.events import EventBus
from chatppc.models.job import AiJob, TaggingJob
from chatppc.services.ai_worker import AiResponseWorker
from chatppc.services.coordination import AdvisoryLock
from chatppc.services.enqueue import EnqueueHooks
from chatppc.services.gif_search import GifResponder, GifSearchClient
from chatppc.services.job_store import JobStore
from chatppc.services.media import MediaFetcher
from chatppc.services.members import MemberService
from chatppc.services.messages import MessageService
from chatppc.services.tagging_worker import TaggingWorker
from chatppc.services.taste import TasteService

logger = logging.getLogger(__name__)


class QueueDrainScheduler:
    """Periodically drain the AI and tagging queues."""

    __slots__ = ("_ai_worker", "_tagging_worker", "_interval", "_loop", "_wake_event", "_task")

    def __init__(
        self,
        ai_worker: AiResponseWorker,
        tagging_worker: TaggingWorker,
        interval_seconds: float,
    ) -> None:
        self._ai_worker = ai_worker
        self._tagging_worker = tagging_worker
        self._interval = interval_seconds
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the drain task on the running event loop."""
        if self._interval <= 0:
            logger.info("Queue drain loop disabled")
            return
        self._loop = asyncio.get_running_loop()
        self._wake_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("Queue drain loop started (every %.1fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Queue drain loop stopped")

    def wake(self) -> None:
        """Request an immediate drain; safe to call from any thread."""
        if self._loop is None or self._wake_event is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._wake_event.set)

    async def drain_once(self) -> dict:
        ai = await self._ai_worker.process_ai_queue()
        tagging = await self._tagging_worker.process_tagging_queue()
        return {"ai": ai.as_dict(), "tagging": tagging.as_dict()}

    async def _run(self) -> None:
        assert self._wake_event is not None
        while True:
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()
            try:
                result = await self.drain_once()
                if result["ai"]["processed"] or result["tagging"]["processed"]:
                    logger.debug("Queue drain: %s", result)
            except Exception:
                logger.exception("Queue drain error")


@dataclass(slots=True)
class ChatCore:
    """Every service of the chat core, built once per process."""

    settings: Settings
    events: EventBus
    lock: AdvisoryLock
    ai_jobs: JobStore[AiJob]
    tagging_jobs: JobStore[TaggingJob]
    messages: MessageService
    members: MemberService
    taste: TasteService
    hooks: EnqueueHooks
    ai_worker: AiResponseWorker
    tagging_worker: TaggingWorker
    scheduler: QueueDrainScheduler


def build_core(engine: Engine, settings: Settings, events: EventBus | None = None) -> ChatCore:
    events = events or EventBus()
    lock = AdvisoryLock(engine, stale_after_seconds=settings.queue_lock_stale_seconds)
    ai_jobs = JobStore(engine, AiJob, settings, max_attempts=settings.ai_queue_max_attempts)
    tagging_jobs = JobStore(
        engine, TaggingJob, settings, max_attempts=settings.tagging_queue_max_attempts
    )
    messages = MessageService(engine, events, tagging_jobs, settings)
    members = MemberService(engine, events, messages)
    taste = TasteService(engine, events)
    fetcher = MediaFetcher(
        timeout=settings.media_fetch_timeout_seconds, max_bytes=settings.media_max_bytes
    )
    gifs = GifResponder(
        GifSearchClient(
            api_key=settings.giphy_api_key,
            base_url=settings.giphy_base_url,
            limit=settings.gif_search_candidates,
            timeout=settings.media_fetch_timeout_seconds,
        ),
        fetcher,
    )
    ai_worker = AiResponseWorker(ai_jobs, lock, messages, gifs, settings)

    hooks: EnqueueHooks | None = None

    def _on_tagging_completed(message_id: str) -> None:
        if hooks is not None:
            hooks.on_tagging_completed(message_id)

    tagging_worker = TaggingWorker(
        tagging_jobs, lock, messages, fetcher, settings, on_completed=_on_tagging_completed
    )
    scheduler = QueueDrainScheduler(ai_worker, tagging_worker, settings.queue_drain_interval_seconds)
    hooks = EnqueueHooks(
        engine, settings, events, ai_jobs, messages, members, taste, wake=scheduler.wake
    )
    return ChatCore(
        settings=settings,
        events=events,
        lock=lock,
        ai_jobs=ai_jobs,
        tagging_jobs=tagging_jobs,
        messages=messages,
        members=members,
        taste=taste,
        hooks=hooks,
        ai_worker=ai_worker,
        tagging_worker=tagging_worker,
        scheduler=scheduler,
    )
