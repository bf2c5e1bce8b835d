"""Base models shared by the sync pipeline.

Every mirrored row is a :class:`Record`: an opaque key plus a mapping of
field name to value.  Records are frozen; "mutating" one always produces a
new instance through :meth:`Record.with_fields`, so a snapshot handed to the
UI layer or kept as an edit baseline can never change underneath it.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

RecordId = int | str
"""Record key type.  Opaque to the core; only equality and hashing are used."""


def is_valid_record_id(value: Any) -> bool:
    """Return ``True`` when *value* can identify a record."""
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return isinstance(value, int)


class DashBaseModel(BaseModel):
    """Base for pydashsync wire/response models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )


class Record(BaseModel):
    """A keyed row of the mirrored dataset."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: RecordId
    fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _require_id(cls, value: RecordId) -> RecordId:
        if not is_valid_record_id(value):
            raise ValueError("record id must be a non-empty string or an integer")
        return value

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def with_fields(self, patch: Mapping[str, Any]) -> Record:
        """Return a copy with *patch* applied on top of the current fields."""
        if not patch:
            return self
        merged = dict(self.fields)
        merged.update(copy.deepcopy(dict(patch)))
        return Record(id=self.id, fields=merged)

    def as_row(self) -> dict[str, Any]:
        """Flat row dict (fields only; the key field is part of the fields)."""
        return copy.deepcopy(self.fields)
