"""Ingestion layer.

Adapters that receive data (realtime changes, REST snapshots, optimistic
local writes) and emit normalized records and change events.
"""

__all__: list[str] = []
