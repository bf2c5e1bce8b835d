"""Change event dispatcher.

Turns an opaque realtime payload into a validated :class:`ChangeEvent` and
hands it to the store.  A payload that cannot be classified is a data
quality problem, not a connection problem: it is logged and dropped here
and never reaches the UI.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from pydashsync._redact import redact_for_log
from pydashsync.ingestion.normalize import (
    change_type_of,
    extract_id,
    new_side,
    normalize_record,
    old_side,
    safe_str,
)
from pydashsync.models.shapes import RecordShape
from pydashsync.state.events import ChangeEvent, ChangeSource, ChangeType

_logger = logging.getLogger(__name__)


def build_change_event(
    payload: Mapping[str, Any],
    shape: RecordShape,
    *,
    source: ChangeSource = ChangeSource.REMOTE,
) -> ChangeEvent | None:
    """Validate and classify *payload*; ``None`` when it must be discarded."""
    raw_type = change_type_of(payload)
    try:
        change = ChangeType(raw_type) if raw_type is not None else None
    except ValueError:
        change = None
    if change is None:
        _logger.warning("Ignoring %s change with unknown event type %r", shape.topic, raw_type)
        return None

    record_id = extract_id(payload, shape)
    if record_id is None:
        _logger.warning(
            "Discarding %s %s without an extractable %r: %s",
            shape.topic,
            change,
            shape.key,
            redact_for_log(dict(payload)),
        )
        return None

    new = normalize_record(new_side(payload), shape)
    old = normalize_record(old_side(payload), shape)
    try:
        return ChangeEvent(
            type=change,
            topic=shape.topic,
            record_id=record_id,
            new=new,
            old=old,
            source=source,
            commit_timestamp=safe_str(payload.get("commit_timestamp")),
            raw=dict(payload),
        )
    except ValidationError:
        _logger.warning("Discarding malformed %s %s for %r", shape.topic, change, record_id, exc_info=True)
        return None


class ChangeDispatcher:
    """Validates raw payloads and forwards classified events to a sink."""

    def __init__(self, shape: RecordShape, sink: Callable[[ChangeEvent], Any]) -> None:
        self._shape = shape
        self._sink = sink
        self.discarded = 0

    def dispatch(self, payload: Mapping[str, Any]) -> ChangeEvent | None:
        if not isinstance(payload, Mapping):
            _logger.warning("Ignoring non-object %s change payload: %r", self._shape.topic, type(payload).__name__)
            self.discarded += 1
            return None

        event = build_change_event(payload, self._shape)
        if event is None:
            self.discarded += 1
            return None

        self._sink(event)
        return event
