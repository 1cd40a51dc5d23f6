"""Status information for an Application and its reconciliation passes."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from gitops_sync.manifest import NamedResource, Revision

__all__ = [
    "SyncStatus",
    "SyncPhase",
    "Operation",
    "ResourceAction",
    "ResourceResult",
    "SyncResult",
    "AppStatus",
]


class SyncStatus(StrEnum):
    """Outcome of a reconciliation pass."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    ERROR = "Error"
    UNKNOWN = "Unknown"


class SyncPhase(StrEnum):
    """Stage of the reconciliation cycle an Application is in."""

    IDLE = "Idle"
    FETCHING = "Fetching"
    RENDERING = "Rendering"
    DIFFING = "Diffing"
    SYNCING = "Syncing"


class Operation(StrEnum):
    """Kind of reconciliation pass."""

    SYNC = "sync"
    """Fetch, render, diff and apply."""

    REFRESH = "refresh"
    """Fetch, render and diff without mutating the cluster."""


class ResourceAction(StrEnum):
    """What happened to a single resource during a pass."""

    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"
    PRUNE_SKIPPED = "PruneSkipped"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    OUT_OF_SYNC = "OutOfSync"


@dataclass
class ResourceResult(DataClassDictMixin):
    """The outcome of applying or deleting a single resource."""

    resource_id: NamedResource
    action: ResourceAction
    message: str | None = None
    attempts: int = 0
    conflict: bool = False

    def __str__(self) -> str:
        if self.message:
            return f"{self.resource_id}: {self.action} ({self.message})"
        return f"{self.resource_id}: {self.action}"

    class Config(BaseConfig):
        omit_none = True


@dataclass
class SyncResult(DataClassDictMixin):
    """The outcome of one reconciliation pass of an Application."""

    status: SyncStatus
    operation: Operation = Operation.SYNC
    revision: Revision | None = None
    resources: list[ResourceResult] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    message: str | None = None
    """Cause of a cycle level failure, e.g. 'SyncTimeout: ...' or 'RevisionNotFound: ...'."""

    @property
    def errors(self) -> list[ResourceResult]:
        """Resource level failures of the pass."""
        return [r for r in self.resources if r.action == ResourceAction.FAILED]

    class Config(BaseConfig):
        omit_none = True


@dataclass
class AppStatus:
    """Current state of an Application held by the store."""

    phase: SyncPhase = SyncPhase.IDLE
    current: SyncResult | None = None
    """The most recent pass of any outcome."""

    last_good: SyncResult | None = None
    """The most recent pass that did not end in Error."""

    history: deque[SyncResult] = field(default_factory=deque)

    @property
    def status(self) -> SyncStatus:
        if self.current is None:
            return SyncStatus.UNKNOWN
        return self.current.status

    @property
    def last_synced_revision(self) -> Revision | None:
        """Revision of the last pass that applied the source without errors."""
        for result in reversed(self.history):
            if (
                result.operation == Operation.SYNC
                and result.status != SyncStatus.ERROR
            ):
                return result.revision
        return None
