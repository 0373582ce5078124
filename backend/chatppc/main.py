from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

import chatppc.models  # noqa: F401  registers SQLModel tables

from chatppc.config import get_settings
from chatppc.db import create_db_and_tables, engine
from chatppc.routers import health, members, status, taste, worker
from chatppc.worker import build_core

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    create_db_and_tables()

    core = build_core(engine, settings)
    app.state.core = core
    if not settings.tagging_enabled:
        logger.warning("GROK_API_KEY not set; message tagging is disabled")

    core.scheduler.start()

    yield

    await core.scheduler.stop()


app = FastAPI(
    title="chatppc core",
    description="Job queue, AI workers and scoring for the chat backend",
    version="0.1.0",
    lifespan=lifespan,
)


app.include_router(health.router)
app.include_router(worker.router)
app.include_router(status.router)
app.include_router(members.router)
app.include_router(taste.router)
