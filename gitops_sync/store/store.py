"""Store module for holding Applications and their sync status."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from gitops_sync.manifest import Application, NamedResource

from .status import AppStatus, SyncPhase, SyncResult


class StoreEvent(str, Enum):
    """Enum for store events."""

    APPLICATION_ADDED = "application_added"
    APPLICATION_REMOVED = "application_removed"
    PHASE_CHANGED = "phase_changed"
    RESULT_RECORDED = "result_recorded"


class Store(ABC):
    """Abstract base class for the Application store with listener support.

    Listeners are called with the Application name and an event specific
    value: the Application, the new SyncPhase or the recorded SyncResult.
    """

    @abstractmethod
    def add_application(self, app: Application) -> None:
        """Add or replace an Application."""

    @abstractmethod
    def remove_application(self, name: str) -> None:
        """Remove an Application and its status, raising ApplicationNotFound if unknown."""

    @abstractmethod
    def get_application(self, name: str) -> Application | None:
        """Retrieve an Application by name."""

    @abstractmethod
    def list_applications(self) -> list[Application]:
        """List all Applications sorted by name."""

    @abstractmethod
    def get_status(self, name: str) -> AppStatus | None:
        """Retrieve the status of an Application."""

    @abstractmethod
    def set_phase(self, name: str, phase: SyncPhase) -> None:
        """Record the stage of the reconciliation cycle an Application is in."""

    @abstractmethod
    def record_result(self, name: str, result: SyncResult) -> None:
        """Record the outcome of a reconciliation pass.

        The result becomes the current result and is appended to the bounded
        history. It becomes the last known good result unless it is an Error,
        so a failed cycle never erases the previous good state.
        """

    @abstractmethod
    def get_managed(self, name: str) -> set[NamedResource]:
        """Return the resources last applied on behalf of an Application."""

    @abstractmethod
    def set_managed(self, name: str, resources: set[NamedResource]) -> None:
        """Replace the resources applied on behalf of an Application."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[str, Any], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """

    @abstractmethod
    async def watch_result(self, name: str) -> SyncResult:
        """Wait for the next SyncResult recorded for the Application.

        The caller is expected to handle timeouts.
        """
