"""Tests for the AI response worker.

Provider calls are replaced with an AsyncMock client; everything else
(queue, lock, messages, tagging enqueue) runs against in-memory SQLite.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import Session, select

from chatppc.errors import ProviderError, ProviderErrorKind
from chatppc.models.message import ChatMessage, MessageType
from chatppc.services.ai_worker import (
    CONTEXT_TOO_LONG_TEXT,
    EMPTY_OUTPUT_TEXT,
    FULL_CONTEXT,
    IMAGE_EDIT_DISABLED_TEXT,
    NO_RESPONSE_MARKER,
    NOT_CONFIGURED_TEXT,
    POLL_INSTRUCTION,
    REDUCED_CONTEXT,
    AiResponseWorker,
    EmptyOutput,
    ImageOutput,
    PollOutput,
    RequestState,
    TextOutput,
    clamp_text,
    decode_output,
    failure_text,
    next_request_state,
    sanitize_for_prompt,
)
from chatppc.services.coordination import AI_QUEUE_LOCK, AdvisoryLock
from chatppc.services.job_store import ClaimedJob, EnqueueOutcome
from chatppc.services.poll_parser import PollPayload
from chatppc.services.providers import AiProvider, ProviderResponse


def _make_client(*results) -> MagicMock:
    """Mock ResponsesClient; each result is returned (or raised) in turn."""
    client = MagicMock()
    side_effect = [
        ProviderResponse(text=result, model="mock") if isinstance(result, str) else result
        for result in results
    ]
    client.create = AsyncMock(side_effect=side_effect)
    return client


def _make_worker(core, client: MagicMock | None = None, gifs: MagicMock | None = None) -> AiResponseWorker:
    client = client or _make_client("ok")
    return AiResponseWorker(
        core.ai_jobs,
        core.lock,
        core.messages,
        gifs or MagicMock(),
        core.settings,
        client_factory=lambda provider: client,
    )


def _enqueue(core, message_id: str, content: str, provider: str = "grok", image_urls=None) -> None:
    outcome = core.ai_jobs.enqueue(
        source_message_id=message_id,
        target_key=f"provider:{provider}",
        username="alice",
        message=content,
        image_urls=image_urls or [],
        provider=provider,
    )
    assert outcome is EnqueueOutcome.QUEUED


def _messages_by(engine, author_name: str) -> list[ChatMessage]:
    with Session(engine) as s:
        return list(
            s.exec(
                select(ChatMessage)
                .where(ChatMessage.author_name == author_name)
                .order_by(ChatMessage.created_at)
            ).all()
        )


def _job(source_message_id: str = "m1", message: str = "@grok what's the weather", **overrides) -> ClaimedJob:
    fields = {
        "id": "job-1",
        "source_message_id": source_message_id,
        "target_key": "provider:grok",
        "username": "alice",
        "message": message,
        "image_urls": [],
        "attempts": 1,
        "provider": "grok",
    }
    fields.update(overrides)
    return ClaimedJob(**fields)


def _request_text(call) -> str:
    return call.kwargs["input"][0]["content"][0]["text"]


# ── queue processing ─────────────────────────────────────────────────


class TestProcessAiQueue:
    @pytest.mark.asyncio
    async def test_reply_is_posted_and_tagged(self, core, engine, persist_message) -> None:
        source_id = persist_message("@grok what's the weather")
        _enqueue(core, source_id, "@grok what's the weather")
        client = _make_client("It's sunny")

        result = await _make_worker(core, client).process_ai_queue()

        assert result.as_dict() == {"processed": 1, "lockSkipped": False}
        [reply] = _messages_by(engine, "Grok")
        assert reply.content == "It's sunny"
        assert reply.question_message_id == source_id
        assert reply.author_id is None

        [tagging_job] = core.tagging_jobs.claim_batch(5)
        assert tagging_job.source_message_id == reply.id
        assert tagging_job.message == "It's sunny"
        assert core.ai_jobs.stats()["completed"] == 1

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere(self, core, engine, persist_message) -> None:
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")
        AdvisoryLock(engine).try_acquire(AI_QUEUE_LOCK)
        client = _make_client("hi")

        result = await _make_worker(core, client).process_ai_queue()

        assert result.as_dict() == {"processed": 0, "lockSkipped": True}
        client.create.assert_not_awaited()
        assert core.ai_jobs.stats()["pending"] == 1

    @pytest.mark.asyncio
    async def test_no_provider_configured(self, make_core, persist_message) -> None:
        core = make_core(grok_api_key="", openai_api_key="")
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")
        client = _make_client("hi")

        result = await _make_worker(core, client).process_ai_queue()

        assert result.as_dict() == {"processed": 0, "lockSkipped": False}
        client.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batch_size_clamped(self, core, persist_message) -> None:
        for index in range(3):
            source_id = persist_message(f"@grok frage {index}")
            _enqueue(core, source_id, f"@grok frage {index}")
        client = _make_client("a", "b", "c")

        worker = _make_worker(core, client)
        assert (await worker.process_ai_queue(max_jobs=0)).processed == 1
        assert (await worker.process_ai_queue()).processed == 2

    @pytest.mark.asyncio
    async def test_unconfigured_provider_job(self, core, engine, persist_message) -> None:
        source_id = persist_message("@chatgpt hi")
        _enqueue(core, source_id, "@chatgpt hi", provider="chatgpt")
        client = _make_client()

        await _make_worker(core, client).process_ai_queue()

        [reply] = _messages_by(engine, "ChatGPT")
        assert reply.content == NOT_CONFIGURED_TEXT
        client.create.assert_not_awaited()
        assert core.ai_jobs.stats()["completed"] == 1

    @pytest.mark.asyncio
    async def test_unknown_target_fails_job(self, core, engine, persist_message) -> None:
        source_id = persist_message("@claude hi")
        _enqueue(core, source_id, "@claude hi", provider="claude")

        await _make_worker(core).process_ai_queue()

        assert core.ai_jobs.stats()["failed"] == 1
        with Session(engine) as s:
            assert len(s.exec(select(ChatMessage)).all()) == 1


# ── replies ──────────────────────────────────────────────────────────


class TestReplies:
    @pytest.mark.asyncio
    async def test_poll_reply_under_thread_root(self, core, engine, persist_message) -> None:
        root_id = persist_message("Was essen wir heute?")
        source_id = persist_message("@grok mach eine umfrage dazu", question_message_id=root_id)
        _enqueue(core, source_id, "@grok mach eine umfrage dazu")
        client = _make_client('<POLL_JSON>{"question":"Pizza?","options":["Ja","Nein"]}</POLL_JSON>')

        await _make_worker(core, client).process_ai_queue()

        [poll] = _messages_by(engine, "Grok")
        assert poll.type == MessageType.VOTING_POLL.value
        assert poll.content == "Pizza?"
        assert poll.question_message_id == root_id
        assert core.messages.read(poll.id).poll_options == ["Ja", "Nein"]
        [tagging_job] = core.tagging_jobs.claim_batch(5)
        assert tagging_job.message == "Pizza?\n1. Ja\n2. Nein"
        assert POLL_INSTRUCTION in _request_text(client.create.await_args_list[0])

    @pytest.mark.asyncio
    async def test_leading_mention_stripped(self, core, engine, persist_message) -> None:
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")

        await _make_worker(core, _make_client("@grok Sure thing")).process_ai_queue()

        [reply] = _messages_by(engine, "Grok")
        assert reply.content == "Sure thing"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["", "   ", NO_RESPONSE_MARKER])
    async def test_empty_output(self, core, engine, persist_message, raw) -> None:
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")

        await _make_worker(core, _make_client(raw)).process_ai_queue()

        [reply] = _messages_by(engine, "Grok")
        assert reply.content == EMPTY_OUTPUT_TEXT

    @pytest.mark.asyncio
    async def test_image_generation_refused_for_grok(self, core, engine, persist_message) -> None:
        source_id = persist_message("@grok make an image of a dragon")
        _enqueue(core, source_id, "@grok make an image of a dragon")
        client = _make_client()

        await _make_worker(core, client).process_ai_queue()

        [reply] = _messages_by(engine, "Grok")
        assert reply.content == IMAGE_EDIT_DISABLED_TEXT
        client.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gif_request(self, core, engine, persist_message) -> None:
        source_id = persist_message("@grok such mal ein gif von katzen raus")
        _enqueue(core, source_id, "@grok such mal ein gif von katzen raus")
        gifs = MagicMock()
        gifs.respond = AsyncMock(return_value="![katzen](https://media.test/cat.gif)")
        client = _make_client()

        await _make_worker(core, client, gifs).process_ai_queue()

        gifs.respond.assert_awaited_once_with("katzen")
        client.create.assert_not_awaited()
        [reply] = _messages_by(engine, "Grok")
        assert reply.content == "![katzen](https://media.test/cat.gif)"
        [tagging_job] = core.tagging_jobs.claim_batch(5)
        assert tagging_job.image_urls == ["https://media.test/cat.gif"]


# ── failures ─────────────────────────────────────────────────────────


# ── image generation ─────────────────────────────────────────────────

_GENERATED = "data:image/png;base64,iVBORw0KGgo="


class TestImageGeneration:
    @pytest.mark.asyncio
    async def test_chatgpt_image_request_uses_tool(self, make_core, engine, persist_message) -> None:
        core = make_core(openai_api_key="sk-test")
        source_id = persist_message("@chatgpt draw a picture of a dragon")
        _enqueue(core, source_id, "@chatgpt draw a picture of a dragon", provider="chatgpt")
        client = _make_client(
            ProviderResponse(text="Hier ist dein Drache!", model="gpt-4o-mini", images=(_GENERATED,))
        )

        await _make_worker(core, client).process_ai_queue()

        [tool] = client.create.await_args.kwargs["extra"]["tools"]
        assert tool["type"] == "image_generation"
        assert tool["model"] == core.settings.openai_image_model
        assert tool["output_format"] == "png"
        [reply] = _messages_by(engine, "ChatGPT")
        assert reply.content == f"Hier ist dein Drache!\n\n![Generated Image 1]({_GENERATED})"
        assert reply.question_message_id == source_id
        [tagging_job] = core.tagging_jobs.claim_batch(5)
        assert tagging_job.source_message_id == reply.id
        assert tagging_job.image_urls == [_GENERATED]

    @pytest.mark.asyncio
    async def test_degraded_retry_switches_image_model(self, make_core, persist_message) -> None:
        core = make_core(openai_api_key="sk-test")
        source_id = persist_message("@chatgpt draw a picture of a dragon")
        _enqueue(core, source_id, "@chatgpt draw a picture of a dragon", provider="chatgpt")
        client = _make_client(
            _server_error(), ProviderResponse(text="", model=None, images=(_GENERATED,))
        )

        await _make_worker(core, client).process_ai_queue()

        first, second = client.create.await_args_list
        assert first.kwargs["extra"]["tools"][0]["model"] == core.settings.openai_image_model
        assert second.kwargs["extra"]["tools"][0]["model"] == core.settings.openai_image_fallback_model

    @pytest.mark.asyncio
    async def test_tool_disabled(self, make_core, engine, persist_message) -> None:
        core = make_core(openai_api_key="sk-test", openai_image_generation_enabled=False)
        source_id = persist_message("@chatgpt draw a picture of a dragon")
        _enqueue(core, source_id, "@chatgpt draw a picture of a dragon", provider="chatgpt")
        client = _make_client("Das kann ich gerade nicht.")

        await _make_worker(core, client).process_ai_queue()

        assert client.create.await_args.kwargs["extra"] is None
        [reply] = _messages_by(engine, "ChatGPT")
        assert reply.content == "Das kann ich gerade nicht."

    @pytest.mark.asyncio
    async def test_plain_question_has_no_tool(self, make_core, persist_message) -> None:
        core = make_core(openai_api_key="sk-test")
        source_id = persist_message("@chatgpt wie spät ist es?")
        _enqueue(core, source_id, "@chatgpt wie spät ist es?", provider="chatgpt")
        client = _make_client("Zeit für Kaffee.")

        await _make_worker(core, client).process_ai_queue()

        assert client.create.await_args.kwargs["extra"] is None


def _overflow() -> ProviderError:
    return ProviderError("context window exceeded", kind=ProviderErrorKind.CONTEXT_OVERFLOW, status_code=400)


def _server_error() -> ProviderError:
    return ProviderError("upstream down", kind=ProviderErrorKind.SERVER, status_code=502)


class TestRequestStates:
    @pytest.mark.asyncio
    async def test_overflow_retries_with_reduced_context(self, core, engine, persist_message) -> None:
        for word in ("eins", "zwei", "drei", "vier", "fuenf"):
            persist_message(word, author_name="bob")
        source_id = persist_message("@grok fass zusammen")
        _enqueue(core, source_id, "@grok fass zusammen")
        client = _make_client(_overflow(), "kurz")

        await _make_worker(core, client).process_ai_queue()

        first, second = client.create.await_args_list
        assert "bob: eins" in _request_text(first)
        assert "bob: eins" not in _request_text(second)
        assert second.kwargs["choice"].model == core.settings.grok_model
        [reply] = _messages_by(engine, "Grok")
        assert reply.content == "kurz"

    @pytest.mark.asyncio
    async def test_server_error_switches_to_fallback_model(self, core, persist_message) -> None:
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")
        client = _make_client(_server_error(), "ok")

        await _make_worker(core, client).process_ai_queue()

        first, second = client.create.await_args_list
        assert first.kwargs["choice"].model == core.settings.grok_model
        assert second.kwargs["choice"].model == core.settings.grok_fallback_model

    @pytest.mark.asyncio
    async def test_overflow_then_server_error(self, core, persist_message) -> None:
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")
        client = _make_client(_overflow(), _server_error(), "ok")

        await _make_worker(core, client).process_ai_queue()

        assert client.create.await_count == 3
        assert client.create.await_args_list[2].kwargs["choice"].model == core.settings.grok_fallback_model

    @pytest.mark.asyncio
    async def test_failed_attempt_is_retried_silently(self, core, engine, persist_message) -> None:
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")
        client = _make_client(ProviderError("bad request", kind=ProviderErrorKind.CLIENT), "second try")
        worker = _make_worker(core, client)

        await worker.process_ai_queue()
        assert _messages_by(engine, "Grok") == []
        assert core.ai_jobs.stats()["pending"] == 1

        await worker.process_ai_queue()
        [reply] = _messages_by(engine, "Grok")
        assert reply.content == "second try"

    @pytest.mark.asyncio
    async def test_terminal_failure_posts_message(self, make_core, engine, persist_message) -> None:
        core = make_core(ai_queue_max_attempts=1)
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")
        client = _make_client(ProviderError("quota exceeded", kind=ProviderErrorKind.CLIENT))

        await _make_worker(core, client).process_ai_queue()

        [reply] = _messages_by(engine, "Grok")
        assert reply.content == "Grok-Anfrage fehlgeschlagen: quota exceeded"
        assert reply.question_message_id == source_id
        assert core.ai_jobs.stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_terminal_overflow_asks_for_shorter_prompt(self, core, engine, persist_message) -> None:
        """An overflow that survives reduced context fails the job without retries."""
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")
        client = _make_client(_overflow(), _overflow())

        result = await _make_worker(core, client).process_ai_queue()

        assert result.processed == 1
        assert client.create.await_count == 2
        [reply] = _messages_by(engine, "Grok")
        assert reply.content == CONTEXT_TOO_LONG_TEXT
        stats = core.ai_jobs.stats()
        assert stats["failed"] == 1
        assert stats["pending"] == 0

        assert (await _make_worker(core, client).process_ai_queue()).processed == 0
        assert client.create.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, make_core, engine, persist_message) -> None:
        core = make_core(ai_queue_max_attempts=1)
        source_id = persist_message("@grok hi")
        _enqueue(core, source_id, "@grok hi")

        result = await _make_worker(core, _make_client(RuntimeError("kaputt"))).process_ai_queue()

        assert result.processed == 1
        [reply] = _messages_by(engine, "Grok")
        assert reply.content == "Grok-Anfrage fehlgeschlagen: kaputt"
        assert core.ai_jobs.stats()["failed"] == 1


class TestStateMachine:
    def test_transitions(self) -> None:
        assert next_request_state(RequestState.NORMAL, _overflow()) is RequestState.REDUCED_CONTEXT
        assert next_request_state(RequestState.NORMAL, _server_error()) is RequestState.DEGRADED_MODEL
        assert next_request_state(RequestState.REDUCED_CONTEXT, _server_error()) is RequestState.DEGRADED_MODEL
        assert next_request_state(RequestState.REDUCED_CONTEXT, _overflow()) is RequestState.FAILED
        assert next_request_state(RequestState.DEGRADED_MODEL, _server_error()) is RequestState.FAILED
        transport = ProviderError("timeout", kind=ProviderErrorKind.TRANSPORT)
        assert next_request_state(RequestState.NORMAL, transport) is RequestState.FAILED

    def test_failure_text(self) -> None:
        assert failure_text(AiProvider.CHATGPT, ProviderError("nope")) == "OpenAI-Anfrage fehlgeschlagen: nope"
        assert failure_text(AiProvider.GROK, _overflow()) == CONTEXT_TOO_LONG_TEXT


# ── prompt building ──────────────────────────────────────────────────


class TestBuildInput:
    def test_context_and_request(self, core, persist_message) -> None:
        persist_message("hallo, schau https://x.test/page", author_name="bob")
        persist_message("bob ist aufgestiegen", author_name="System")
        persist_message("geheime antwort", author_name="carol", message_type=MessageType.ANSWER)
        source_id = persist_message("@grok what's the weather")
        worker = _make_worker(core)

        [turn] = worker.build_input(AiProvider.GROK, _job(source_id), FULL_CONTEXT, poll_intent=False)

        assert turn["role"] == "user"
        text = turn["content"][0]["text"]
        assert "bob: hallo, schau [link]" in text
        assert "System:" not in text
        assert "geheime antwort" not in text
        assert "Du bist Grok" in text
        assert "Stilmodus" in text
        assert "Aktuelle Anfrage von alice: what's the weather" in text
        assert POLL_INSTRUCTION not in text

    def test_chatgpt_has_no_persona(self, core) -> None:
        worker = _make_worker(core)
        [turn] = worker.build_input(
            AiProvider.CHATGPT, _job(target_key="provider:chatgpt"), FULL_CONTEXT, poll_intent=True
        )
        text = turn["content"][0]["text"]
        assert "Du bist ChatGPT" in text
        assert "Stilmodus" not in text
        assert POLL_INSTRUCTION in text

    def test_image_blocks(self, core) -> None:
        worker = _make_worker(core)
        urls = ["https://x.test/a.png", "https://x.test/b.png"]
        [turn] = worker.build_input(AiProvider.GROK, _job(image_urls=urls), FULL_CONTEXT, poll_intent=False)
        assert turn["content"][1:] == [
            {"type": "input_image", "image_url": url, "detail": "auto"} for url in urls
        ]
        assert "Bild-Inputs" in turn["content"][0]["text"]

    def test_reduced_limits(self, core) -> None:
        worker = _make_worker(core)
        [turn] = worker.build_input(
            AiProvider.GROK, _job(message="@grok " + "wort " * 500), REDUCED_CONTEXT, poll_intent=False
        )
        assert len(turn["content"][0]["text"]) <= REDUCED_CONTEXT.request_chars

    def test_empty_prompt_gets_default(self, core) -> None:
        worker = _make_worker(core)
        [turn] = worker.build_input(AiProvider.GROK, _job(message="@grok"), FULL_CONTEXT, poll_intent=False)
        assert "Bitte hilf bei der neuesten Nachricht" in turn["content"][0]["text"]


class TestOutputHelpers:
    def test_decode_poll(self) -> None:
        output = decode_output('<POLL_JSON>{"question":"Q","options":["A","B"]}</POLL_JSON>')
        assert output == PollOutput(PollPayload(question="Q", options=["A", "B"], multi_select=False))

    def test_decode_text_drops_invalid_block(self) -> None:
        assert decode_output("Hier: <POLL_JSON>{broken</POLL_JSON>") == TextOutput("Hier:")

    def test_decode_empty(self) -> None:
        assert decode_output("@grok") == EmptyOutput()
        assert decode_output(f"  {NO_RESPONSE_MARKER}  ") == EmptyOutput()

    def test_clamp_text(self) -> None:
        assert clamp_text("kurz", 10) == "kurz"
        assert clamp_text("abcdefghij", 5) == "abcd…"

    def test_sanitize_for_prompt(self) -> None:
        text = "look ![cat](https://x.test/c.png)  data:image/png;base64,AAAA  and https://y.test"
        assert sanitize_for_prompt(text) == "look [image] [inline-image] and [link]"

    def test_decode_images_strips_inline_links(self) -> None:
        raw = "@chatgpt Fertig!\n![alt](https://x.test/old.png)\nhttps://x.test/old.webp\nViel Spaß"
        output = decode_output(raw, (_GENERATED,))
        assert output == ImageOutput("Fertig!\nViel Spaß", (_GENERATED,))

    def test_decode_images_without_text(self) -> None:
        output = decode_output(NO_RESPONSE_MARKER, ("data:image/png;base64,AA", "data:image/png;base64,BB"))
        assert output.as_markdown() == (
            "![Generated Image 1](data:image/png;base64,AA)\n\n"
            "![Generated Image 2](data:image/png;base64,BB)"
        )

    def test_poll_wins_over_images(self) -> None:
        raw = '<POLL_JSON>{"question":"Q","options":["A","B"]}</POLL_JSON>'
        assert isinstance(decode_output(raw, (_GENERATED,)), PollOutput)

