"""Admin routes: monthly active-user usage report (JSON or CSV)."""

from __future__ import annotations

import csv
import io
import re

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from lti_gateway.deps import get_message_ledger, require_admin
from lti_gateway.errors import MalformedRequest
from lti_gateway.quota import utcnow, year_month

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@router.get("/users")
async def users(
    request: Request,
    month: str | None = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(1000, ge=1, le=1000),
    format: str = Query("json"),
):
    """Users who spent message quota in ``month``, most used first."""
    month = month or year_month(utcnow())
    if not _MONTH_RE.match(month):
        raise MalformedRequest("month must look like YYYY-MM", code="bad_month")

    ledger = get_message_ledger(request)
    rows = await ledger.month_usage(month)
    page = rows[offset:offset + limit]

    if format.lower() == "csv":
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(["month", "user", "used", "limit"])
        for user, used in page:
            writer.writerow([month, user, used, ledger.limit])
        return Response(
            buf.getvalue(),
            media_type="text/csv; charset=utf-8",
            headers={"Cache-Control": "no-store"},
        )

    return {
        "month": month,
        "totalUsers": len(rows),
        "offset": offset,
        "limit": limit,
        "limitPerUser": ledger.limit,
        "users": [{"user": user, "used": used} for user, used in page],
    }
