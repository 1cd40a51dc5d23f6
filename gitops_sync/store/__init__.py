"""Store module for holding Applications and the state of their reconciliation."""

from .in_memory import InMemoryStore
from .report import status_report
from .status import (
    AppStatus,
    Operation,
    ResourceAction,
    ResourceResult,
    SyncPhase,
    SyncResult,
    SyncStatus,
)
from .store import Store, StoreEvent

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "status_report",
    "AppStatus",
    "Operation",
    "ResourceAction",
    "ResourceResult",
    "SyncPhase",
    "SyncResult",
    "SyncStatus",
]
