from __future__ import annotations

import io
import os

# Set test environment BEFORE importing chatppc modules.
# chatppc.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any chatppc imports.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("QUEUE_DRAIN_INTERVAL_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from chatppc.config import Settings, get_settings
from chatppc.db import get_session
from chatppc.events import EventBus
from chatppc.main import app as fastapi_app
from chatppc.models.message import ChatMessage, MessageType, PollOption
from chatppc.models.user import User
from chatppc.worker import ChatCore, build_core


def make_test_settings(**overrides) -> Settings:
    defaults = {
        "db_url": "sqlite://",
        "openai_api_key": "",
        "grok_api_key": "test-grok-key",
        "giphy_api_key": "",
        "worker_token": "",
        "queue_drain_interval_seconds": 0,
        "queue_retry_base_delay_seconds": 0,
    }
    defaults.update(overrides)
    return Settings(**defaults)


def _make_gif_bytes(frames: int = 5) -> bytes:
    images = [Image.new("RGB", (8, 8), color=(i * 40, 0, 255 - i * 40)) for i in range(frames)]
    buf = io.BytesIO()
    images[0].save(buf, format="GIF", save_all=True, append_images=images[1:], duration=80, loop=0)
    return buf.getvalue()


def _make_png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), color=(0, 255, 0)).save(buf, format="PNG")
    return buf.getvalue()


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Core fixtures ─────────────────────────────────────────────────────


@pytest.fixture(name="make_core")
def make_core_fixture(engine):
    """Factory building a ChatCore on the test engine with settings overrides."""

    def _make_core(events: EventBus | None = None, **overrides) -> ChatCore:
        return build_core(engine, make_test_settings(**overrides), events=events)

    return _make_core


@pytest.fixture(name="core")
def core_fixture(make_core) -> ChatCore:
    """Core with Grok configured (AI + tagging) and OpenAI unconfigured."""
    return make_core()


@pytest.fixture(name="make_user")
def make_user_fixture(engine):
    def _make_user(username: str = "alice") -> str:
        with Session(engine) as s:
            user = User(username=username)
            s.add(user)
            s.commit()
            return user.id

    return _make_user


@pytest.fixture(name="persist_message")
def persist_message_fixture(engine):
    """Insert a message the way the chat layer would, without any hooks."""

    def _persist(
        content: str,
        author_name: str = "alice",
        author_id: str | None = None,
        question_message_id: str | None = None,
        message_type: MessageType = MessageType.MESSAGE,
        poll_options: list[str] | None = None,
        tagging_payload_json: str | None = None,
        tagging_status: str | None = None,
    ) -> str:
        with Session(engine) as s:
            message = ChatMessage(
                content=content,
                author_name=author_name,
                author_id=author_id,
                question_message_id=question_message_id,
                type=message_type.value,
                tagging_payload_json=tagging_payload_json,
                tagging_status=tagging_status,
            )
            s.add(message)
            for index, label in enumerate(poll_options or []):
                s.add(PollOption(message_id=message.id, label=label, sort_order=index))
            s.commit()
            return message.id

    return _persist


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(session, core):
    """FastAPI TestClient serving the test core with overridden DB session."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    fastapi_app.dependency_overrides[get_settings] = lambda: core.settings
    with TestClient(fastapi_app) as client:
        fastapi_app.state.core = core
        yield client
    fastapi_app.dependency_overrides.clear()


# ── Media fixtures ────────────────────────────────────────────────────


@pytest.fixture(name="gif_bytes")
def gif_bytes_fixture() -> bytes:
    """Five-frame animated GIF."""
    return _make_gif_bytes()


@pytest.fixture(name="png_bytes")
def png_bytes_fixture() -> bytes:
    return _make_png_bytes()
