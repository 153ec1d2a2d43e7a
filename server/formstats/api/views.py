"""Form view notification endpoint.

This is the thin FastAPI adapter. It pulls the referrer and user agent out of
the request and hands them to the batcher. It never waits for a flush.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/api/v1/public")


def _referrer_from_body(body_bytes: bytes) -> str | None:
    """Return ``referrer`` from a JSON body, or None if absent or unparseable."""
    if not body_bytes:
        return None
    try:
        body = json.loads(body_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if isinstance(body, dict) and isinstance(body.get("referrer"), str):
        return body["referrer"] or None
    return None


@router.post("/forms/{form_key}/view")
async def record_form_view(form_key: str, request: Request) -> JSONResponse:
    """Record one impression of an embedded form.

    Referrer precedence: body ``referrer``, then the Referer header, then
    "direct". Malformed bodies are ignored.
    """
    from formstats.main import get_batcher

    referrer = _referrer_from_body(await request.body()) or request.headers.get("referer")
    user_agent = request.headers.get("user-agent")

    get_batcher().record_view(form_key, referrer=referrer, user_agent=user_agent)
    return JSONResponse(content={"success": True})
