"""Local edit sessions.

An edit session shields a record from remote updates while the user is
changing it, and remembers what the record looked like when editing began
so a save only submits the fields that actually changed.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from pydashsync.exceptions import DashSyncEditError
from pydashsync.models._base import Record, RecordId

_logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class EditSession:
    """Unsaved local state of one record."""

    id: RecordId
    baseline: Record
    pending: dict[str, Any] = field(default_factory=dict)

    def diff(self) -> dict[str, Any]:
        """Fields whose pending value differs from the baseline."""
        changed: dict[str, Any] = {}
        for name, value in self.pending.items():
            if self.baseline.fields.get(name, _MISSING) != value:
                changed[name] = copy.deepcopy(value)
        return changed


class EditTracker:
    """Registry of records currently under local edit.

    At most one session exists per id; sessions for different ids are
    independent of each other.
    """

    def __init__(self) -> None:
        self._sessions: dict[RecordId, EditSession] = {}

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def begin(self, record_id: RecordId, current: Record) -> bool:
        """Open a session for *record_id* with *current* as baseline.

        Returns ``False`` (and leaves the existing session untouched) when
        the record is already being edited.
        """
        if record_id in self._sessions:
            _logger.debug("Edit session for %r already open; begin ignored", record_id)
            return False
        self._sessions[record_id] = EditSession(id=record_id, baseline=current)
        return True

    def set_field(self, record_id: RecordId, name: str, value: Any) -> None:
        session = self._require(record_id)
        session.pending[name] = copy.deepcopy(value)

    def has_changes(self, record_id: RecordId) -> bool:
        session = self._sessions.get(record_id)
        if session is None:
            return False
        return bool(session.diff())

    def commit(self, record_id: RecordId) -> dict[str, Any]:
        """Return the diff to submit.

        The session stays open; the caller closes it with :meth:`settle`
        only once the persistence call has succeeded.
        """
        return self._require(record_id).diff()

    def settle(self, record_id: RecordId, saved: Record, sent: dict[str, Any]) -> bool:
        """Rebase a session onto *saved* after *sent* was persisted.

        Pending values that were part of *sent* are dropped; anything set
        since then is kept against the new baseline.  Returns whether the
        session is still open.
        """
        session = self._sessions.get(record_id)
        if session is None:
            return False
        session.pending = {
            name: value
            for name, value in session.pending.items()
            if name not in sent or sent[name] != value
        }
        session.baseline = saved
        if session.diff():
            return True
        del self._sessions[record_id]
        return False

    def cancel(self, record_id: RecordId) -> bool:
        """Discard the session for *record_id*.  Returns whether one existed."""
        return self._sessions.pop(record_id, None) is not None

    def is_editing(self, record_id: RecordId) -> bool:
        return record_id in self._sessions

    def get(self, record_id: RecordId) -> EditSession | None:
        return self._sessions.get(record_id)

    def pending(self, record_id: RecordId) -> dict[str, Any]:
        """Copy of the raw pending values (changed or not) for *record_id*."""
        session = self._sessions.get(record_id)
        if session is None:
            return {}
        return copy.deepcopy(session.pending)

    def editing_ids(self) -> list[RecordId]:
        return list(self._sessions)

    def changed_ids(self) -> list[RecordId]:
        return [record_id for record_id, session in self._sessions.items() if session.diff()]

    def _require(self, record_id: RecordId) -> EditSession:
        session = self._sessions.get(record_id)
        if session is None:
            raise DashSyncEditError(f"No edit session open for record {record_id!r}")
        return session
