"""pydashsync - Async realtime mirror and edit reconciliation for dashboard tables."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pydashsync")
except PackageNotFoundError:
    __version__ = "0+local"
from pydashsync.client import DashSyncClient, PersistenceService, RestPersistence, TopicSync
from pydashsync.config import SyncConfig
from pydashsync.connection.machine import BackoffPolicy
from pydashsync.exceptions import (
    DashSyncApiError,
    DashSyncChannelError,
    DashSyncConfigError,
    DashSyncEditError,
    DashSyncError,
    DashSyncMutationError,
    DashSyncTransportError,
    UnknownRecordError,
)
from pydashsync.models import MENU, ORDERS, SHAPES, Record, RecordId, RecordShape
from pydashsync.state.events import (
    ChangeEvent,
    ChangeSource,
    ChangeType,
    ChannelStatus,
    ConnectionState,
    ConnectionStatusEvent,
)

__all__ = [
    "__version__",
    "BackoffPolicy",
    "ChangeEvent",
    "ChangeSource",
    "ChangeType",
    "ChannelStatus",
    "ConnectionState",
    "ConnectionStatusEvent",
    "DashSyncApiError",
    "DashSyncChannelError",
    "DashSyncClient",
    "DashSyncConfigError",
    "DashSyncEditError",
    "DashSyncError",
    "DashSyncMutationError",
    "DashSyncTransportError",
    "MENU",
    "ORDERS",
    "PersistenceService",
    "Record",
    "RecordId",
    "RecordShape",
    "RestPersistence",
    "SHAPES",
    "SyncConfig",
    "TopicSync",
    "UnknownRecordError",
]
