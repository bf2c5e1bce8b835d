"""Deterministic merge policy.

This module intentionally contains *no* payload parsing.  The ingestion
boundary produces validated :class:`ChangeEvent`s; the functions here only
decide what a change does to the mirror given what is already there and
whether the record is under local edit.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydashsync.models._base import Record
from pydashsync.state.events import ChangeType


class MergeAction(StrEnum):
    ADD = "add"
    DUPLICATE = "duplicate"
    REPLACE = "replace"
    SUPPRESS = "suppress"
    REMOVE = "remove"
    ABSENT = "absent"


def decide(change: ChangeType, *, present: bool, editing: bool) -> MergeAction:
    """Decide what a remote change does to the mirror.

    Policy:
    - Insert adds only unseen ids; a repeated insert is a duplicate delivery.
    - Update is suppressed while the record is under local edit; otherwise it
      replaces the record (or adds it when the insert was never seen).
    - Delete always removes, edit session or not.
    """
    if change == ChangeType.INSERT:
        return MergeAction.DUPLICATE if present else MergeAction.ADD
    if change == ChangeType.UPDATE:
        if editing:
            return MergeAction.SUPPRESS
        return MergeAction.REPLACE if present else MergeAction.ADD
    return MergeAction.REMOVE if present else MergeAction.ABSENT


def overlay_pending(record: Record, pending: Mapping[str, Any]) -> Record:
    """Local pending values win over mirrored values for the keys they supply."""
    return record.with_fields(pending)
