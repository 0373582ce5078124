"""Tagging worker: classifies messages and their images into the tag taxonomy.

Each job sends the message text plus one image block per analysis frame to
the vision model and stores the normalized payload on the message. The
message's tagging status mirrors the job: processing on claim, then
completed, back to pending for a retry, or failed after the last attempt.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from chatppc.config import Settings
from chatppc.errors import MediaValidationError, ProviderError, TaggingPayloadError
from chatppc.models.job import TaggingJob
from chatppc.models.message import TaggingStatus
from chatppc.services.coordination import TAGGING_QUEUE_LOCK, AdvisoryLock
from chatppc.services.job_store import ClaimedJob, JobStore, QueueRunResult
from chatppc.services.media import MediaFetcher, collect_image_sources
from chatppc.services.messages import MessageService
from chatppc.services.providers import AiProvider, ModelChoice, ResponsesClient, build_client
from chatppc.services.taxonomy import TAGGING_PROMPT, normalize_tagging_payload

logger = logging.getLogger(__name__)

OVERFLOW_MESSAGE_CHARS = 450
_FRAME_INSTRUCTION = (
    "Analysis images are attached in exact source order. Use all analysis frames "
    "for GIF sources and return one images entry per sourceImageUrl."
)


@dataclass(frozen=True, slots=True)
class TaggingImageSource:
    source_image_url: str
    analysis_image_urls: list[str]


def build_tagging_request_text(username: str, message: str, sources: list[TaggingImageSource]) -> str:
    if sources:
        image_sources = json.dumps(
            [
                {
                    "sourceImageUrl": source.source_image_url,
                    "analysisImageCount": len(source.analysis_image_urls),
                }
                for source in sources
            ],
            ensure_ascii=False,
            separators=(",", ":"),
        )
    else:
        image_sources = "[]"
    return "\n".join([
        TAGGING_PROMPT,
        "",
        f"username: {username}",
        f"message: {message}",
        f"imageSources: {image_sources}",
        _FRAME_INSTRUCTION,
    ])


def build_tagging_input(username: str, message: str, sources: list[TaggingImageSource]) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = [
        {"type": "input_text", "text": build_tagging_request_text(username, message, sources)}
    ]
    for source in sources:
        content.extend(
            {"type": "input_image", "image_url": url, "detail": "auto"}
            for url in source.analysis_image_urls
        )
    return [{"role": "user", "content": content}]


class TaggingWorker:
    """Drain the tagging queue."""

    __slots__ = ("_jobs", "_lock", "_messages", "_fetcher", "_settings", "_client_factory", "_on_completed")

    def __init__(
        self,
        jobs: JobStore[TaggingJob],
        lock: AdvisoryLock,
        messages: MessageService,
        fetcher: MediaFetcher,
        settings: Settings,
        client_factory: Callable[[], ResponsesClient] | None = None,
        on_completed: Callable[[str], None] | None = None,
    ) -> None:
        self._jobs = jobs
        self._lock = lock
        self._messages = messages
        self._fetcher = fetcher
        self._settings = settings
        self._client_factory = client_factory or (lambda: build_client(AiProvider.GROK, settings))
        self._on_completed = on_completed

    async def process_tagging_queue(self, max_jobs: int | None = None) -> QueueRunResult:
        """Claim and tag up to ``max_jobs`` messages."""
        if not self._settings.tagging_enabled:
            return QueueRunResult(processed=0, lock_skipped=False)

        requested = self._settings.queue_batch_default if max_jobs is None else max_jobs
        batch_size = max(1, min(self._settings.queue_batch_max, requested))

        with self._lock.hold(TAGGING_QUEUE_LOCK) as acquired:
            if not acquired:
                logger.debug("Tagging queue drain skipped: lock held elsewhere")
                return QueueRunResult(processed=0, lock_skipped=True)

            self._jobs.recover_stale()
            batch = self._jobs.claim_batch(batch_size)
            for job in batch:
                await self._run_job(job)

        if batch:
            logger.info("Processed %d tagging job(s)", len(batch))
        return QueueRunResult(processed=len(batch), lock_skipped=False)

    async def _run_job(self, job: ClaimedJob) -> None:
        self._messages.update_tagging_state(job.source_message_id, TaggingStatus.PROCESSING)
        try:
            payload = await self.generate_payload(job)
        except (ProviderError, TaggingPayloadError, MediaValidationError) as exc:
            logger.warning("Tagging job %s attempt %d failed: %s", job.id, job.attempts, exc)
            self._record_failure(job, str(exc))
            return
        except Exception as exc:
            logger.exception("Unhandled error tagging message %s", job.source_message_id)
            self._record_failure(job, str(exc) or type(exc).__name__)
            return

        if not self._jobs.mark_completed(job.id, expected_attempts=job.attempts):
            logger.warning("Tagging job %s lost its claim; payload discarded", job.id)
            return
        self._messages.update_tagging_state(
            job.source_message_id, TaggingStatus.COMPLETED, payload=payload
        )
        if self._on_completed is not None:
            self._on_completed(job.source_message_id)

    def _record_failure(self, job: ClaimedJob, error: str) -> None:
        terminal = self._jobs.record_failure(job, error)
        self._messages.update_tagging_state(
            job.source_message_id,
            TaggingStatus.FAILED if terminal else TaggingStatus.PENDING,
            error=error,
        )

    async def prepare_image_sources(self, image_urls: list[str]) -> list[TaggingImageSource]:
        """Expand each GIF into three still frames; other images pass through."""
        sources: list[TaggingImageSource] = []
        for url in collect_image_sources(image_urls):
            sources.append(TaggingImageSource(url, await self._fetcher.analysis_image_urls(url)))
        return sources

    async def generate_payload(self, job: ClaimedJob) -> dict[str, Any]:
        """Call the classifier and normalize its answer.

        Raises:
            ProviderError: If the classifier request fails.
            TaggingPayloadError: If the answer is empty or not a JSON object.
            MediaValidationError: If a GIF cannot be decoded.
        """
        sources = await self.prepare_image_sources(job.image_urls)
        client = self._client_factory()
        choice = ModelChoice(model=self._settings.grok_model)
        try:
            response = await client.create(
                input=build_tagging_input(job.username, job.message, sources), choice=choice
            )
        except ProviderError as exc:
            if not exc.is_context_overflow:
                raise
            logger.info("Tagging context overflow for message %s; retrying shortened", job.source_message_id)
            response = await client.create(
                input=build_tagging_input(
                    job.username, job.message[:OVERFLOW_MESSAGE_CHARS], sources
                ),
                choice=choice,
            )

        if not response.text.strip():
            raise TaggingPayloadError("Tagging response is empty")
        return normalize_tagging_payload(
            response.text,
            [source.source_image_url for source in sources],
            response.model or self._settings.grok_model,
            job.message,
        )
