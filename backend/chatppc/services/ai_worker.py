"""AI response worker: drains the AI job queue and posts bot replies.

Each claimed job is routed by intent (GIF search, image generation, refused
image edit, or text generation) and answered with exactly one chat message. Provider
calls go through a small request state machine:

    NORMAL ──context overflow──▶ REDUCED_CONTEXT
    NORMAL | REDUCED_CONTEXT ──5xx──▶ DEGRADED_MODEL
    anything else ──▶ FAILED

A FAILED request surfaces as a ProviderError and the job is retried by
the job store; the user only sees a failure message after the last attempt.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from chatppc.config import Settings
from chatppc.errors import ProviderError, ProviderErrorKind
from chatppc.models.job import AiJob
from chatppc.models.message import SYSTEM_AUTHOR_NAME, MessageType
from chatppc.services.coordination import AI_QUEUE_LOCK, AdvisoryLock
from chatppc.services.gif_search import GifResponder
from chatppc.services.intents import (
    Generate,
    GifRequest,
    ImageEdit,
    classify_intent,
    is_poll_intent,
    strip_ai_mentions,
    strip_leading_ai_mentions,
)
from chatppc.services.job_store import ClaimedJob, JobStore, QueueRunResult
from chatppc.services.media import extract_image_urls
from chatppc.services.messages import MessageService
from chatppc.services.poll_parser import PollPayload, parse_poll, strip_poll_blocks
from chatppc.services.providers import (
    AiProvider,
    ProviderResponse,
    ResponsesClient,
    any_provider_configured,
    build_client,
    degraded_choice,
    error_label,
    is_provider_configured,
    image_generation_tool,
    primary_choice,
    provider_from_target_key,
)

logger = logging.getLogger(__name__)

EMPTY_OUTPUT_TEXT = (
    "Ich wurde erwähnt, konnte aber keine Antwort erzeugen. Bitte versuche es noch einmal."
)
NOT_CONFIGURED_TEXT = (
    "Ich bin aktuell nicht konfiguriert. Bitte GROK_API_KEY/OPENAI_API_KEY setzen."
)
IMAGE_EDIT_DISABLED_TEXT = (
    "Bildgenerierung und Bildbearbeitung sind für @grok deaktiviert. Nutze dafür bitte @chatgpt."
)
CONTEXT_TOO_LONG_TEXT = (
    "Die Anfrage war zu lang. Bitte formuliere deine Frage etwas kürzer und versuche es erneut."
)
NO_RESPONSE_MARKER = "[NO_RESPONSE]"

GROK_PERSONA_PROMPT = "\n".join([
    "Adopt a casual group chat persona who blends in by mirroring each participant's writing style, "
    "leaning toward easy, slightly lazy phrasing and dry wit.",
    "- Use simple, relaxed, sometimes grammatically loose phrasing. Avoid formal or try-hard language.",
    "- Respond candidly and unfiltered, but keep tone deadpan and controlled: unhinged is fine, "
    "loud/angry/shouty is not.",
    "- Dry, dark humor is welcome. Sarcasm, playful insults, low-effort jokes, and occasional swearing "
    "are allowed when contextually appropriate.",
    "- If arguments happen, take a ruthless debating stance and dismantle weak points with sharp wit and facts.",
    "- Group context: assume adults (18+). Minimal offense tolerance is expected, but avoid illegal, "
    "unsafe, coercive, hate-based, or exploitative content.",
    "- Mirror rhythm, meme usage, and slang level of the current chat. If uncertain, default to terse, "
    "dry, slightly irreverent phrasing.",
    "- Do not use emojis or over-the-top reactions unless the chat itself does.",
    "",
    "Always prioritize the group's existing style. Riff off their energy; do not overdo or underdo the banter.",
])

POLL_INSTRUCTION = (
    "Wenn der User eine Umfrage erstellen will, antworte ausschließlich mit genau einem Block in "
    'diesem Format: <POLL_JSON>{"question":"<kurze Frage>","options":["<Option 1>","<Option 2>"],'
    '"multiSelect":false}</POLL_JSON>. Kein zusätzlicher Text davor oder danach. JSON muss gültig '
    "sein, mit 2 bis 15 eindeutigen Optionen."
)


def failure_text(provider: AiProvider, error: ProviderError) -> str:
    if error.is_context_overflow:
        return CONTEXT_TOO_LONG_TEXT
    return f"{error_label(provider)}-Anfrage fehlgeschlagen: {error}"


# ── request state machine ────────────────────────────────────────


class RequestState(str, Enum):
    NORMAL = "normal"
    REDUCED_CONTEXT = "reduced_context"
    DEGRADED_MODEL = "degraded_model"
    FAILED = "failed"


_TRANSITIONS: dict[tuple[RequestState, ProviderErrorKind], RequestState] = {
    (RequestState.NORMAL, ProviderErrorKind.CONTEXT_OVERFLOW): RequestState.REDUCED_CONTEXT,
    (RequestState.NORMAL, ProviderErrorKind.SERVER): RequestState.DEGRADED_MODEL,
    (RequestState.REDUCED_CONTEXT, ProviderErrorKind.SERVER): RequestState.DEGRADED_MODEL,
}


def next_request_state(state: RequestState, error: ProviderError) -> RequestState:
    return _TRANSITIONS.get((state, error.kind), RequestState.FAILED)


@dataclass(frozen=True, slots=True)
class ContextLimits:
    recent_messages: int
    context_chars: int
    line_chars: int
    request_chars: int
    prompt_chars: int


FULL_CONTEXT = ContextLimits(8, 4500, 650, 7500, 1300)
REDUCED_CONTEXT = ContextLimits(2, 900, 220, 1600, 450)

# (context limits, use degraded model) per state
_STATE_PLANS = {
    RequestState.NORMAL: (FULL_CONTEXT, False),
    RequestState.REDUCED_CONTEXT: (REDUCED_CONTEXT, False),
    RequestState.DEGRADED_MODEL: (REDUCED_CONTEXT, True),
}


# ── provider output ──────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class PollOutput:
    poll: PollPayload


@dataclass(frozen=True, slots=True)
class TextOutput:
    text: str


@dataclass(frozen=True, slots=True)
class ImageOutput:
    text: str
    urls: tuple[str, ...]

    def as_markdown(self) -> str:
        blocks = [self.text] if self.text else []
        blocks.extend(
            f"![Generated Image {index}]({url})" for index, url in enumerate(self.urls, start=1)
        )
        return "\n\n".join(blocks)


@dataclass(frozen=True, slots=True)
class EmptyOutput:
    pass


ProviderOutput = PollOutput | TextOutput | ImageOutput | EmptyOutput

_STANDALONE_IMAGE_LINE_RE = re.compile(
    r"^(!\[[^\]]*]\([^)]+\)|https?://\S+\.(png|jpe?g|gif|webp|svg)(\?\S*)?)$", re.IGNORECASE
)


def strip_inline_images(text: str) -> str:
    """Drop lines that hold only a markdown image or an image link."""
    kept = [
        line for line in text.split("\n") if not _STANDALONE_IMAGE_LINE_RE.match(line.strip())
    ]
    return "\n".join(kept).strip()


def decode_output(raw_text: str, images: tuple[str, ...] = ()) -> ProviderOutput:
    """Classify a provider reply. A poll wins over generated images."""
    text = strip_leading_ai_mentions(raw_text.strip())
    poll = parse_poll(text)
    if poll is not None:
        return PollOutput(poll)
    text = strip_poll_blocks(text).strip()
    if images:
        text = "" if text == NO_RESPONSE_MARKER else strip_inline_images(text)
        return ImageOutput(text, tuple(images))
    if not text or text == NO_RESPONSE_MARKER:
        return EmptyOutput()
    return TextOutput(text)


# ── context ──────────────────────────────────────────────────────

_MARKDOWN_IMAGE_RE = re.compile(r"!\[[^\]]*]\([^)]+\)")
_DATA_URL_RE = re.compile(r"data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=]+")
_LINK_RE = re.compile(r"https?://\S+")


def clamp_text(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return value[: max_chars - 1].rstrip() + "…"


def sanitize_for_prompt(value: str) -> str:
    value = _MARKDOWN_IMAGE_RE.sub("[image]", value)
    value = _DATA_URL_RE.sub("[inline-image]", value)
    value = _LINK_RE.sub("[link]", value)
    return " ".join(value.split())


class AiResponseWorker:
    """Drain the AI queue and answer mentions."""

    __slots__ = ("_jobs", "_lock", "_messages", "_gifs", "_settings", "_client_factory")

    def __init__(
        self,
        jobs: JobStore[AiJob],
        lock: AdvisoryLock,
        messages: MessageService,
        gifs: GifResponder,
        settings: Settings,
        client_factory: Callable[[AiProvider], ResponsesClient] | None = None,
    ) -> None:
        self._jobs = jobs
        self._lock = lock
        self._messages = messages
        self._gifs = gifs
        self._settings = settings
        self._client_factory = client_factory or (lambda provider: build_client(provider, settings))

    def _clamp_batch(self, max_jobs: int | None) -> int:
        requested = self._settings.queue_batch_default if max_jobs is None else max_jobs
        return max(1, min(self._settings.queue_batch_max, requested))

    async def process_ai_queue(self, max_jobs: int | None = None) -> QueueRunResult:
        """Claim and process up to ``max_jobs`` AI jobs.

        Returns ``lock_skipped=True`` without side effects when another
        worker is draining the queue.
        """
        if not any_provider_configured(self._settings):
            return QueueRunResult(processed=0, lock_skipped=False)

        with self._lock.hold(AI_QUEUE_LOCK) as acquired:
            if not acquired:
                logger.debug("AI queue drain skipped: lock held elsewhere")
                return QueueRunResult(processed=0, lock_skipped=True)

            self._jobs.recover_stale()
            batch = self._jobs.claim_batch(self._clamp_batch(max_jobs))
            for job in batch:
                await self._run_job(job)

        if batch:
            logger.info("Processed %d AI job(s)", len(batch))
        return QueueRunResult(processed=len(batch), lock_skipped=False)

    async def _run_job(self, job: ClaimedJob) -> None:
        provider = provider_from_target_key(job.target_key)
        try:
            await self.process_job(job)
        except ProviderError as exc:
            logger.warning("AI job %s attempt %d failed: %s", job.id, job.attempts, exc)
            if exc.is_context_overflow:
                # Overflow here already survived the reduced-context request.
                terminal = self._jobs.mark_failed(job.id, str(exc), expected_attempts=job.attempts)
            else:
                terminal = self._jobs.record_failure(job, str(exc))
            if terminal and provider is not None:
                self._post_reply(provider, job, failure_text(provider, exc))
        except Exception as exc:
            logger.exception("Unhandled error processing AI job %s", job.id)
            if self._jobs.record_failure(job, str(exc) or type(exc).__name__) and provider is not None:
                self._post_reply(
                    provider, job, f"{error_label(provider)}-Anfrage fehlgeschlagen: {exc}"
                )

    async def process_job(self, job: ClaimedJob) -> None:
        """Answer one claimed job and mark it completed."""
        provider = provider_from_target_key(job.target_key)
        if provider is None:
            self._jobs.mark_failed(
                job.id, f"Unknown AI target {job.target_key!r}", expected_attempts=job.attempts
            )
            return

        if not is_provider_configured(provider, self._settings):
            self._post_reply(provider, job, NOT_CONFIGURED_TEXT)
            self._jobs.mark_completed(job.id, expected_attempts=job.attempts)
            return

        match classify_intent(job.message, len(job.image_urls)):
            case GifRequest(query=query):
                self._post_reply(provider, job, await self._gifs.respond(query))
            case ImageEdit() if not provider.supports_image_generation:
                self._post_reply(provider, job, IMAGE_EDIT_DISABLED_TEXT)
            case ImageEdit():
                await self._answer_with_model(
                    provider,
                    job,
                    poll_intent=False,
                    image_tool=self._settings.openai_image_generation_enabled,
                )
            case Generate(poll_intent=poll_intent):
                await self._answer_with_model(provider, job, poll_intent=poll_intent)

        self._jobs.mark_completed(job.id, expected_attempts=job.attempts)

    # ── generation ───────────────────────────────────────────────

    async def _answer_with_model(
        self,
        provider: AiProvider,
        job: ClaimedJob,
        poll_intent: bool,
        image_tool: bool = False,
    ) -> None:
        response = await self.generate(provider, job, poll_intent, image_tool=image_tool)
        match decode_output(response.text, response.images):
            case PollOutput(poll=poll):
                self._post_poll(provider, job, poll)
            case TextOutput(text=text):
                self._post_reply(provider, job, text)
            case ImageOutput() as output:
                logger.info(
                    "%s generated %d image(s) for job %s",
                    provider.display_name,
                    len(output.urls),
                    job.id,
                )
                self._post_reply(provider, job, output.as_markdown())
            case EmptyOutput():
                self._post_reply(provider, job, EMPTY_OUTPUT_TEXT)

    async def generate(
        self,
        provider: AiProvider,
        job: ClaimedJob,
        poll_intent: bool,
        image_tool: bool = False,
    ) -> ProviderResponse:
        """Call the provider, stepping through the request state machine.

        With ``image_tool`` the request carries the ``image_generation``
        tool; degraded retries switch it to the fallback image model.
        """
        client = self._client_factory(provider)
        state = RequestState.NORMAL
        while True:
            limits, degraded = _STATE_PLANS[state]
            choice = (
                degraded_choice(provider, self._settings)
                if degraded
                else primary_choice(provider, self._settings)
            )
            extra: dict[str, Any] | None = None
            if image_tool:
                extra = {"tools": [image_generation_tool(self._settings, degraded=degraded)]}
            try:
                return await client.create(
                    input=self.build_input(provider, job, limits, poll_intent),
                    choice=choice,
                    extra=extra,
                )
            except ProviderError as exc:
                next_state = next_request_state(state, exc)
                if next_state is RequestState.FAILED:
                    raise
                logger.warning(
                    "%s request for job %s failed in state %s (%s); retrying as %s",
                    provider.display_name,
                    job.id,
                    state.value,
                    exc.kind.value,
                    next_state.value,
                )
                state = next_state

    def build_input(
        self,
        provider: AiProvider,
        job: ClaimedJob,
        limits: ContextLimits,
        poll_intent: bool,
    ) -> list[dict]:
        """Responses API input: one user turn with text plus image blocks."""
        lines: list[str] = []
        length = 0
        for row in self._messages.recent_messages(limits.recent_messages):
            if row.author_name == SYSTEM_AUTHOR_NAME or row.type == MessageType.ANSWER.value:
                continue
            line = f"{row.author_name}: {clamp_text(sanitize_for_prompt(row.content), limits.line_chars)}"
            projected = length + len(line) + 1
            if projected > limits.context_chars:
                break
            lines.append(line)
            length = projected

        cleaned = strip_ai_mentions(job.message)
        user_prompt = clamp_text(
            sanitize_for_prompt(cleaned or "Bitte hilf bei der neuesten Nachricht in diesem Chat."),
            limits.prompt_chars,
        )
        has_images = bool(job.image_urls)

        sections = [f"Du bist {provider.display_name} in einem Gruppenchat. Antworte klar, hilfreich und auf Deutsch."]
        if provider is AiProvider.GROK:
            sections.append(f"Stilmodus (immer aktiv):\n{GROK_PERSONA_PROMPT}")
            sections.append(
                "Bildanalyse ist für @grok erlaubt. Bildgenerierung und Bildbearbeitung sind deaktiviert."
            )
            if has_images:
                sections.append(
                    "Die Nachricht enthält Bild-Inputs. Nutze sie nur für textliche Analyse/Beschreibung."
                )
        elif has_images:
            sections.append("Die Nachricht enthält Bild-Inputs. Nutze sie als Referenz.")
        if poll_intent or is_poll_intent(cleaned):
            sections.append(POLL_INSTRUCTION)
        if lines:
            sections.append("Letzter Chat-Kontext:\n" + "\n".join(lines))
        sections.append(f"Aktuelle Anfrage von {job.username}: {user_prompt}")

        content: list[dict] = [
            {"type": "input_text", "text": clamp_text("\n\n".join(sections), limits.request_chars)}
        ]
        content.extend(
            {"type": "input_image", "image_url": url, "detail": "auto"} for url in job.image_urls
        )
        return [{"role": "user", "content": content}]

    # ── replies ──────────────────────────────────────────────────

    def _post_reply(self, provider: AiProvider, job: ClaimedJob, content: str) -> None:
        thread_root = self._messages.resolve_thread_root(job.source_message_id)
        self._messages.create_message(
            content=content,
            author_name=provider.display_name,
            question_message_id=thread_root,
            image_urls=extract_image_urls(content),
        )

    def _post_poll(self, provider: AiProvider, job: ClaimedJob, poll: PollPayload) -> None:
        thread_root = self._messages.resolve_thread_root(job.source_message_id)
        tagging_text = "\n".join(
            [poll.question, *(f"{index}. {option}" for index, option in enumerate(poll.options, 1))]
        )
        self._messages.create_message(
            content=poll.question,
            author_name=provider.display_name,
            question_message_id=thread_root,
            message_type=MessageType.VOTING_POLL,
            poll_options=poll.options,
            poll_multi_select=poll.multi_select,
            tagging_text=tagging_text,
        )
