from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from chatppc.dependencies import get_taste_service
from chatppc.services.taste import TasteService

router = APIRouter(prefix="/api/taste", tags=["taste"])


@router.get("/{user_id}")
def taste_profile(
    user_id: str,
    recompute: bool = False,
    taste: TasteService = Depends(get_taste_service),
) -> dict:
    """Stored taste profile; computed on first read."""
    profile = None if recompute else taste.get_profile(user_id)
    if profile is None:
        profile = taste.recompute_profile(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found")
    return profile
