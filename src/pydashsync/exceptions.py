"""Custom exception hierarchy for pydashsync."""

from __future__ import annotations

from typing import Any


class DashSyncError(Exception):
    """Base exception for all pydashsync errors."""


class DashSyncConfigError(DashSyncError):
    """Invalid or missing configuration."""


class DashSyncTransportError(DashSyncError):
    """HTTP-level failure (network, non-2xx without error body, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class DashSyncApiError(DashSyncError):
    """The persistence API rejected a request with a structured error body."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        endpoint: str = "",
        details: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.code = code
        self.endpoint = endpoint
        self.details = details
        self.hint = hint
        super().__init__(message)


class DashSyncMutationError(DashSyncError):
    """An insert, update or delete was not accepted by the persistence service.

    Raised to the caller of the write operation.  Local state is left as it
    was before the call; in particular an edit session keeps its pending
    values so the save can be retried without re-entering data.

    ``failed`` is populated by bulk operations and maps each failed record
    id to the exception that caused it.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        record_id: Any = None,
        failed: dict[Any, BaseException] | None = None,
    ) -> None:
        self.operation = operation
        self.record_id = record_id
        self.failed = failed or {}
        super().__init__(message)


class DashSyncChannelError(DashSyncError):
    """A realtime channel could not be opened or joined.

    Never raised to UI code; the connection manager turns it into a status
    transition.
    """

    def __init__(self, message: str, *, status: str = "") -> None:
        self.status = status
        super().__init__(message)


class DashSyncEditError(DashSyncError):
    """Edit-session misuse (e.g. setting a field without an open session)."""


class UnknownRecordError(DashSyncError, KeyError):
    """The requested record id is not present in the mirror."""

    def __init__(self, record_id: Any) -> None:
        self.record_id = record_id
        super().__init__(f"Record {record_id!r} is not in the mirror")

    def __str__(self) -> str:
        return str(self.args[0])
