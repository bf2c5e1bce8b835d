"""Data models for mirrored records and table shapes."""

from pydashsync.models._base import DashBaseModel, Record, RecordId, is_valid_record_id
from pydashsync.models.shapes import (
    MENU,
    MENU_CATEGORIES,
    ORDER_STATUSES,
    ORDERS,
    PAYMENT_STATUSES,
    SHAPES,
    RecordShape,
)

__all__ = [
    "DashBaseModel",
    "MENU",
    "MENU_CATEGORIES",
    "ORDERS",
    "ORDER_STATUSES",
    "PAYMENT_STATUSES",
    "Record",
    "RecordId",
    "RecordShape",
    "SHAPES",
    "is_valid_record_id",
]
