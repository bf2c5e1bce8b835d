"""Normalization helpers.

Centralizes defensive parsing of raw rows and change payloads.  Every
ingestion path (snapshot fetch, realtime change, optimistic insert) goes
through :func:`normalize_record`, and every change payload goes through
:func:`extract_id`, so the store never sees ad hoc fallbacks.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydashsync.models._base import Record, RecordId, is_valid_record_id
from pydashsync.models.shapes import RecordShape

# Key aliases: supabase-js style first, raw realtime wire names second.
_TYPE_KEYS = ("eventType", "type")
_NEW_KEYS = ("new", "record")
_OLD_KEYS = ("old", "old_record")


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def is_meaningful(value: Any) -> bool:
    """Return True if the value counts as present when filling defaults."""

    if value is None:
        return False
    if value == "":
        return False
    if value == {}:
        return False
    return bool(value != [])


def coerce_record_id(value: Any, shape: RecordShape) -> RecordId | None:
    """Turn a raw key value into a record id, or ``None`` if unusable."""
    if isinstance(value, str):
        value = value.strip()
        if shape.integer_key and value.lstrip("-").isdigit():
            value = int(value)
    elif isinstance(value, float) and shape.integer_key and value.is_integer():
        value = int(value)
    return value if is_valid_record_id(value) else None


def _first_mapping(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Mapping[str, Any] | None:
    for key in keys:
        candidate = payload.get(key)
        if isinstance(candidate, Mapping) and candidate:
            return candidate
    return None


def change_type_of(payload: Mapping[str, Any]) -> str | None:
    for key in _TYPE_KEYS:
        candidate = payload.get(key)
        if isinstance(candidate, str) and candidate:
            return candidate.strip().upper()
    return None


def new_side(payload: Mapping[str, Any]) -> Mapping[str, Any] | None:
    return _first_mapping(payload, _NEW_KEYS)


def old_side(payload: Mapping[str, Any]) -> Mapping[str, Any] | None:
    return _first_mapping(payload, _OLD_KEYS)


def extract_id(payload: Mapping[str, Any], shape: RecordShape) -> RecordId | None:
    """Affected record id of a change payload.

    Prefers the new-record side and falls back to the old-record side
    (deletes only carry the old side; updates may carry both).
    """
    for side in (new_side(payload), old_side(payload)):
        if side is None:
            continue
        record_id = coerce_record_id(side.get(shape.key), shape)
        if record_id is not None:
            return record_id
    return None


def normalize_record(raw: Mapping[str, Any] | None, shape: RecordShape) -> Record | None:
    """Build a :class:`Record` from a raw row.

    Missing, null or empty fields that the shape has defaults for are
    filled in.  Returns ``None`` when the row has no usable key.
    """
    if not isinstance(raw, Mapping):
        return None
    record_id = coerce_record_id(raw.get(shape.key), shape)
    if record_id is None:
        return None

    fields: dict[str, Any] = dict(raw)
    for name in shape.defaults:
        if not is_meaningful(fields.get(name)):
            fields[name] = shape.default_for(name)
    fields[shape.key] = record_id
    return Record(id=record_id, fields=fields)
