"""Row endpoints of the REST persistence service.

Endpoints:
  - GET    /rest/v1/{table}?select=*&order=...
  - POST   /rest/v1/{table}
  - PATCH  /rest/v1/{table}?{key}=eq.{id}
  - DELETE /rest/v1/{table}?{key}=eq.{id}
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydashsync._api._common import (
    RETURN_REPRESENTATION,
    eq_filter,
    first_row,
    mutation_error,
    order_param,
    table_path,
)
from pydashsync._transport import Transport
from pydashsync.exceptions import DashSyncApiError, DashSyncTransportError
from pydashsync.models._base import RecordId
from pydashsync.models.shapes import RecordShape

_logger = logging.getLogger(__name__)


async def fetch_all(transport: Transport, shape: RecordShape) -> list[dict[str, Any]]:
    """Fetch every row of the shape's table in snapshot order."""
    params = {"select": "*", **order_param(shape.order)}
    body = await transport.request("GET", table_path(shape.topic), params=params)
    if not isinstance(body, list):
        raise DashSyncTransportError(
            f"Expected a row list from {shape.topic}, got {type(body).__name__}",
            endpoint=table_path(shape.topic),
        )
    rows = [row for row in body if isinstance(row, dict)]
    _logger.debug("Fetched %d %s rows", len(rows), shape.topic)
    return rows


async def insert_row(
    transport: Transport,
    shape: RecordShape,
    fields: Mapping[str, Any],
) -> dict[str, Any]:
    """Insert one row and return it as stored (falls back to *fields*)."""
    try:
        body = await transport.request(
            "POST",
            table_path(shape.topic),
            json_body=dict(fields),
            headers=RETURN_REPRESENTATION,
        )
    except (DashSyncApiError, DashSyncTransportError) as exc:
        raise mutation_error(exc, operation="insert", table=shape.topic, record_id=fields.get(shape.key)) from exc
    return first_row(body) or dict(fields)


async def update_row(
    transport: Transport,
    shape: RecordShape,
    record_id: RecordId,
    diff: Mapping[str, Any],
) -> dict[str, Any] | None:
    """Apply *diff* to one row; returns the stored row when the server echoes it."""
    try:
        body = await transport.request(
            "PATCH",
            table_path(shape.topic),
            params=eq_filter(shape.key, record_id),
            json_body=dict(diff),
            headers=RETURN_REPRESENTATION,
        )
    except (DashSyncApiError, DashSyncTransportError) as exc:
        raise mutation_error(exc, operation="update", table=shape.topic, record_id=record_id) from exc
    return first_row(body)


async def delete_row(transport: Transport, shape: RecordShape, record_id: RecordId) -> None:
    try:
        await transport.request(
            "DELETE",
            table_path(shape.topic),
            params=eq_filter(shape.key, record_id),
        )
    except (DashSyncApiError, DashSyncTransportError) as exc:
        raise mutation_error(exc, operation="delete", table=shape.topic, record_id=record_id) from exc
