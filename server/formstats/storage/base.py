"""Storage interface (port) for persisted subscription forms."""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from formstats.core.models import FormRecord, FormSnapshot, FormUpdate


class FormNotFoundError(LookupError):
    """No form with the given key or internal id exists."""


class FormExistsError(ValueError):
    """A form with the given key is already registered."""


class FormStore(Protocol):
    """Port: persistent form records owned outside the batcher.

    ``update_form`` must apply ``increment_views_by`` atomically and replace
    ``traffic`` wholesale. It raises on failure.
    """

    async def find_form(self, form_key: str) -> FormSnapshot | None: ...

    async def update_form(self, internal_id: str, update: FormUpdate) -> None: ...

    async def get_form(self, form_key: str) -> FormRecord | None: ...

    async def create_form(self, form_key: str, name: str = "") -> FormRecord: ...
