"""Shared helpers for REST endpoint modules.

This module centralizes the most repeated patterns:
- building table paths and ``eq`` filters
- wrapping API/transport failures into mutation errors

It is internal to pydashsync and may change at any time.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

from pydashsync.exceptions import (
    DashSyncApiError,
    DashSyncMutationError,
    DashSyncTransportError,
)
from pydashsync.models._base import RecordId

RETURN_REPRESENTATION = {"prefer": "return=representation"}


def table_path(table: str) -> str:
    """Path of *table* below the REST root (non-ASCII names are quoted)."""
    return "/" + quote(table, safe="")


def eq_filter(key: str, value: RecordId) -> dict[str, str]:
    return {key: f"eq.{value}"}


def order_param(order: tuple[str, ...]) -> dict[str, str]:
    return {"order": ",".join(order)} if order else {}


def mutation_error(
    exc: DashSyncApiError | DashSyncTransportError,
    *,
    operation: str,
    table: str,
    record_id: RecordId | None = None,
) -> DashSyncMutationError:
    """Describe a failed write; callers raise it ``from exc``."""
    target = f"{table} {record_id!r}" if record_id is not None else table
    return DashSyncMutationError(
        f"{operation} on {target} failed: {exc}",
        operation=operation,
        record_id=record_id,
    )


def first_row(body: Any) -> dict[str, Any] | None:
    """First row of a ``return=representation`` reply."""
    if isinstance(body, list):
        body = body[0] if body else None
    return body if isinstance(body, dict) else None
