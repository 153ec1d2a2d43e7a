"""Form registration and analytics endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from formstats.storage.base import FormExistsError

router = APIRouter(prefix="/api/v1")


class FormCreate(BaseModel):
    form_key: str = Field(min_length=1, max_length=128)
    name: str = ""


@router.post("/forms", status_code=201)
async def create_form(payload: FormCreate) -> JSONResponse:
    """Register a form so its views can be counted."""
    from formstats.main import get_store

    try:
        record = await get_store().create_form(payload.form_key, payload.name)
    except FormExistsError:
        return JSONResponse(content={"error": "form already exists"}, status_code=409)

    return JSONResponse(
        content={"form_key": record.form_key, "id": record.internal_id, "name": record.name},
        status_code=201,
    )


@router.get("/forms/{form_key}/analytics")
async def get_form_analytics(
    form_key: str,
    top: int = Query(default=10, ge=1, le=100),
) -> JSONResponse:
    """Return persisted view counts and traffic sources for a form.

    Views still sitting in the batcher queue are not included.
    """
    from formstats.main import get_store

    record = await get_store().get_form(form_key)
    if record is None:
        return JSONResponse(content={"error": "form not found"}, status_code=404)

    return JSONResponse(content={
        "form_key": record.form_key,
        "name": record.name,
        "views": record.views,
        "traffic": record.traffic,
        "top_sources": [
            {"name": source, "count": count}
            for source, count in record.top_sources(top)
        ],
    })
