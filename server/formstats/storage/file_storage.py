"""File-based FormStore implementation.

Stores every form in a single JSON document:

    {"forms": {"<form_key>": {"id": "...", "name": "...",
                              "views": 0, "traffic": {"direct": 3}}}}

The document is loaded once at startup and rewritten on every change via a
temporary file and ``os.replace``, so a crash mid-write leaves the previous
version intact.
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from pathlib import Path

import structlog

from formstats.core.models import FormRecord, FormSnapshot, FormUpdate
from formstats.storage.base import FormExistsError, FormNotFoundError

log = structlog.get_logger()


class FileFormStore:
    """FormStore backed by a JSON file on disk."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._forms: dict[str, dict] = self._load()

    def _load(self) -> dict[str, dict]:
        if not self._path.exists():
            return {}
        with open(self._path) as f:
            raw = json.load(f) or {}
        if not isinstance(raw, dict) or not isinstance(raw.get("forms", {}), dict):
            raise ValueError(
                f"{self._path}: expected a JSON object with a \"forms\" object, "
                f"got {type(raw).__name__}"
            )
        forms = raw.get("forms", {})
        log.info("form_store_loaded", path=str(self._path), forms=len(forms))
        return forms

    def _write(self) -> None:
        """Atomically replace the document on disk. Caller holds the lock."""
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        payload = json.dumps({"forms": self._forms}, separators=(",", ":"), sort_keys=True)
        with open(tmp_path, "w") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._path)

    def _key_for_id(self, internal_id: str) -> str | None:
        for form_key, entry in self._forms.items():
            if entry.get("id") == internal_id:
                return form_key
        return None

    @staticmethod
    def _to_record(form_key: str, entry: dict) -> FormRecord:
        traffic = entry.get("traffic") or {}
        return FormRecord(
            internal_id=entry["id"],
            form_key=form_key,
            name=entry.get("name", ""),
            views=int(entry.get("views", 0)),
            traffic={k: v for k, v in traffic.items() if isinstance(v, int)},
        )

    async def find_form(self, form_key: str) -> FormSnapshot | None:
        entry = self._forms.get(form_key)
        if entry is None:
            return None
        return FormSnapshot(internal_id=entry["id"], traffic=dict(entry.get("traffic") or {}))

    async def update_form(self, internal_id: str, update: FormUpdate) -> None:
        async with self._lock:
            form_key = self._key_for_id(internal_id)
            if form_key is None:
                raise FormNotFoundError(internal_id)
            entry = self._forms[form_key]
            previous = (entry.get("views", 0), entry.get("traffic"))
            entry["views"] = int(entry.get("views", 0)) + update.increment_views_by
            entry["traffic"] = dict(update.traffic)
            try:
                self._write()
            except OSError:
                entry["views"], entry["traffic"] = previous
                raise
        log.debug("form_written", form_key=form_key, views=entry["views"])

    async def get_form(self, form_key: str) -> FormRecord | None:
        entry = self._forms.get(form_key)
        if entry is None:
            return None
        return self._to_record(form_key, entry)

    async def create_form(self, form_key: str, name: str = "") -> FormRecord:
        async with self._lock:
            if form_key in self._forms:
                raise FormExistsError(form_key)
            entry = {"id": uuid.uuid4().hex, "name": name, "views": 0, "traffic": {}}
            self._forms[form_key] = entry
            try:
                self._write()
            except OSError:
                del self._forms[form_key]
                raise
        log.info("form_created", form_key=form_key, internal_id=entry["id"])
        return self._to_record(form_key, entry)
