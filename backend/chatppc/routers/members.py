"""Member progress read endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from chatppc.dependencies import get_member_service
from chatppc.errors import AdmissionError
from chatppc.services.member_progress import MemberRank, ensure_bot_capacity, get_bot_limit_for_rank
from chatppc.services.members import MemberService

router = APIRouter(prefix="/api/members", tags=["members"])


@router.get("/ranks/{rank}/bot-limit")
async def bot_limit(rank: str) -> dict:
    try:
        member_rank = MemberRank(rank.upper())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown rank '{rank}'")
    return {"rank": member_rank.value, "botLimit": get_bot_limit_for_rank(member_rank)}


@router.get("/{user_id}/progress")
def member_progress(
    user_id: str,
    recompute: bool = False,
    members: MemberService = Depends(get_member_service),
) -> dict:
    progress = members.recompute_member(user_id) if recompute else members.get_progress(user_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="User not found")
    return progress.as_dict()


@router.get("/{user_id}/bot-capacity")
def bot_capacity(
    user_id: str,
    bot_count: int = Query(0, alias="botCount", ge=0),
    members: MemberService = Depends(get_member_service),
) -> dict:
    """Check whether the member may create another bot."""
    progress = members.get_progress(user_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="User not found")
    try:
        ensure_bot_capacity(progress.rank, bot_count)
    except AdmissionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return {
        "rank": progress.rank.value,
        "botLimit": get_bot_limit_for_rank(progress.rank),
        "botCount": bot_count,
        "allowed": True,
    }
