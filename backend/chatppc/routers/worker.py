"""Worker endpoints: drain the AI and tagging queues on demand."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Response

from chatppc.dependencies import get_core, require_worker_token
from chatppc.worker import ChatCore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["worker"], dependencies=[Depends(require_worker_token)])


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


@router.api_route("/ai/worker", methods=["GET", "POST"])
async def run_ai_worker(
    response: Response,
    max_jobs: int | None = Query(None, alias="maxJobs"),
    core: ChatCore = Depends(get_core),
) -> dict:
    result = await core.ai_worker.process_ai_queue(max_jobs)
    _no_store(response)
    return {"ok": True, **result.as_dict()}


@router.api_route("/tagging/worker", methods=["GET", "POST"])
async def run_tagging_worker(
    response: Response,
    max_jobs: int | None = Query(None, alias="maxJobs"),
    core: ChatCore = Depends(get_core),
) -> dict:
    result = await core.tagging_worker.process_tagging_queue(max_jobs)
    _no_store(response)
    return {"ok": True, **result.as_dict()}
