"""Deterministic in-memory reconciliation store.

This is the only component allowed to mutate the mirror.  The mirror keeps
the last known-good server value of each record; pending edit values live
in the :class:`EditTracker` and are overlaid when the UI reads, which is
what lets an edit survive a reconnect-triggered refresh and what makes
cancelling an edit fall back to the freshest mirrored value rather than the
original baseline.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydashsync.exceptions import UnknownRecordError
from pydashsync.models._base import Record, RecordId
from pydashsync.models.shapes import RecordShape
from pydashsync.state.edits import EditTracker
from pydashsync.state.events import ChangeEvent, ChangeType
from pydashsync.state.policy import MergeAction, decide, overlay_pending

_logger = logging.getLogger(__name__)


class ReconciliationStore:
    """Mirror of one topic, merged under the edit-aware policy.

    Given the same sequence of events and edit operations the store always
    produces the same mirror.
    """

    def __init__(self, shape: RecordShape, tracker: EditTracker) -> None:
        self._shape = shape
        self._tracker = tracker
        self._mirror: dict[RecordId, Record] = {}

    @property
    def shape(self) -> RecordShape:
        return self._shape

    @property
    def tracker(self) -> EditTracker:
        return self._tracker

    def __len__(self) -> int:
        return len(self._mirror)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._mirror

    # ------------------------------------------------------------------
    # Remote changes
    # ------------------------------------------------------------------

    def apply(self, event: ChangeEvent) -> MergeAction:
        """Apply a classified change event."""
        record_id = event.record_id
        action = decide(
            event.type,
            present=record_id in self._mirror,
            editing=self._tracker.is_editing(record_id),
        )

        if action in (MergeAction.ADD, MergeAction.REPLACE):
            if event.new is None:
                return action
            self._mirror[record_id] = event.new
        elif action == MergeAction.REMOVE:
            self._mirror.pop(record_id, None)

        if event.type == ChangeType.DELETE and self._tracker.cancel(record_id):
            _logger.info("Record %r deleted remotely; local edit discarded", record_id)

        if action == MergeAction.SUPPRESS:
            _logger.debug("Remote update for %r suppressed (under local edit)", record_id)
        elif action == MergeAction.DUPLICATE:
            _logger.debug("Duplicate insert for %r ignored", record_id)
        return action

    def replace_all(self, records: Iterable[Record]) -> None:
        """Replace the mirror with a full snapshot.

        Records under edit take the snapshot as their new mirrored value;
        their pending values keep winning on read.  An edited record that is
        missing from the snapshot was deleted while we were not listening,
        and deletion wins over the edit.
        """
        fresh: dict[RecordId, Record] = {}
        for record in records:
            if record.id in fresh:
                _logger.warning("Snapshot for %s contains duplicate id %r; keeping first", self._shape.topic, record.id)
                continue
            fresh[record.id] = record

        for record_id in self._tracker.editing_ids():
            if record_id not in fresh:
                self._tracker.cancel(record_id)
                _logger.info("Record %r missing from snapshot; local edit discarded", record_id)

        self._mirror = fresh

    # ------------------------------------------------------------------
    # Local edits
    # ------------------------------------------------------------------

    def commit_local(self, record_id: RecordId, diff: dict[str, Any]) -> Record:
        """Fold a persisted edit into the mirror.

        The session closes unless fields were changed after *diff* was
        taken; those stay pending against the saved value.
        """
        current = self._mirror.get(record_id)
        if current is None:
            raise UnknownRecordError(record_id)
        updated = current.with_fields(diff)
        self._mirror[record_id] = updated
        if self._tracker.settle(record_id, updated, diff):
            _logger.debug("Record %r changed during save; edit session kept", record_id)
        return updated

    def cancel_edit(self, record_id: RecordId) -> Record | None:
        """Discard the edit session; returns the last known-good record."""
        self._tracker.cancel(record_id)
        return self._mirror.get(record_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, record_id: RecordId) -> Record | None:
        """Displayed value of a record (pending edits overlaid)."""
        record = self._mirror.get(record_id)
        if record is None:
            return None
        pending = self._tracker.pending(record_id)
        return overlay_pending(record, pending) if pending else record

    def get_mirrored(self, record_id: RecordId) -> Record | None:
        """Last known-good server value of a record."""
        return self._mirror.get(record_id)

    def records(self) -> list[Record]:
        """All displayed records, ordered by the shape's sort key."""
        views = [self.get(record_id) for record_id in self._mirror]
        present = [view for view in views if view is not None]
        return sorted(present, key=self._shape.sort_key, reverse=self._shape.reverse_sort)

    def ids(self) -> list[RecordId]:
        return list(self._mirror)

    def next_id(self) -> int:
        """Next free integer id (``max + 1``), for shapes with integer keys."""
        numeric = [record_id for record_id in self._mirror if isinstance(record_id, int)]
        return max(numeric, default=0) + 1
