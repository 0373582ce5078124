"""FastAPI dependency injection for the chat core services."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatppc.config import Settings, get_settings
from chatppc.services.members import MemberService
from chatppc.services.taste import TasteService
from chatppc.worker import ChatCore

_bearer_scheme = HTTPBearer(auto_error=False)


def get_core(request: Request) -> ChatCore:
    """Inject the ChatCore built at startup."""
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Chat core not initialized")
    return core


def get_member_service(core: ChatCore = Depends(get_core)) -> MemberService:
    return core.members


def get_taste_service(core: ChatCore = Depends(get_core)) -> TasteService:
    return core.taste


def require_worker_token(
    token: str | None = Query(None),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard the worker endpoints when ``WORKER_TOKEN`` is set.

    Accepts the token as a bearer credential or a ``token`` query parameter.
    """
    expected = settings.worker_token
    if not expected:
        return
    supplied = credentials.credentials if credentials is not None else token
    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid worker token")
