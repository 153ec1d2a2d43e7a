"""In-process FormStore, used for development and tests."""

from __future__ import annotations

import asyncio
import copy
import uuid

import structlog

from formstats.core.models import FormRecord, FormSnapshot, FormUpdate
from formstats.storage.base import FormExistsError, FormNotFoundError

log = structlog.get_logger()


class MemoryFormStore:
    """FormStore backed by a dict. Contents are lost on restart."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._by_key: dict[str, FormRecord] = {}
        self._key_by_id: dict[str, str] = {}

    async def find_form(self, form_key: str) -> FormSnapshot | None:
        record = self._by_key.get(form_key)
        if record is None:
            return None
        return FormSnapshot(internal_id=record.internal_id, traffic=dict(record.traffic))

    async def update_form(self, internal_id: str, update: FormUpdate) -> None:
        async with self._lock:
            form_key = self._key_by_id.get(internal_id)
            if form_key is None:
                raise FormNotFoundError(internal_id)
            record = self._by_key[form_key]
            record.views += update.increment_views_by
            record.traffic = dict(update.traffic)

    async def get_form(self, form_key: str) -> FormRecord | None:
        record = self._by_key.get(form_key)
        return copy.deepcopy(record) if record is not None else None

    async def create_form(self, form_key: str, name: str = "") -> FormRecord:
        async with self._lock:
            if form_key in self._by_key:
                raise FormExistsError(form_key)
            record = FormRecord(internal_id=uuid.uuid4().hex, form_key=form_key, name=name)
            self._by_key[form_key] = record
            self._key_by_id[record.internal_id] = form_key
        log.info("form_created", form_key=form_key, internal_id=record.internal_id)
        return copy.deepcopy(record)
