from __future__ import annotations

from fastapi import APIRouter, Depends

from chatppc.dependencies import get_core
from chatppc.services.providers import AiProvider, is_provider_configured
from chatppc.worker import ChatCore

router = APIRouter(prefix="/api/ai", tags=["ai"])


@router.get("/status")
async def ai_status(core: ChatCore = Depends(get_core)) -> dict:
    """Queue counts per status and per provider."""
    providers = {
        provider.value: {
            "configured": is_provider_configured(provider, core.settings),
            "active": core.ai_jobs.count_active(provider.target_key),
        }
        for provider in AiProvider
    }
    return {
        "providers": providers,
        "taggingEnabled": core.settings.tagging_enabled,
        "queues": {
            "ai": core.ai_jobs.stats(),
            "tagging": core.tagging_jobs.stats(),
        },
    }
