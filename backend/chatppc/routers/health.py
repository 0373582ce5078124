from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session, text

from chatppc.db import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    queues: dict | str = "unavailable"
    scheduler = "unavailable"
    core = getattr(request.app.state, "core", None)
    if core is not None:
        try:
            queues = {"ai": core.ai_jobs.stats(), "tagging": core.tagging_jobs.stats()}
        except Exception:
            logger.warning("Queue stats unavailable", exc_info=True)
            queues = "error"
        scheduler = "running" if core.scheduler.running else "stopped"

    return {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "service": "chatppc-core",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "queues": queues,
            "scheduler": scheduler,
        },
    }
