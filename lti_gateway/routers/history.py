"""History routes: list or clear the calling student's history."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from lti_gateway.deps import get_history, require_user
from lti_gateway.history import HistoryLog

router = APIRouter(prefix="/api/history", tags=["history"])


@router.get("")
async def list_history(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    kind: str | None = Query(None),
    history: HistoryLog = Depends(get_history),
):
    user_id = require_user(request)
    entries = await history.read(user_id, limit=limit, kind=kind)
    return {"items": [e.to_dict() for e in entries]}


@router.delete("")
async def clear_history(request: Request, history: HistoryLog = Depends(get_history)):
    user_id = require_user(request)
    await history.clear(user_id)
    return {"ok": True}
