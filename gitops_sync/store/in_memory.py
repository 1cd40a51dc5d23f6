"""Module for in memory Application store."""

import asyncio
from collections import defaultdict, deque
from collections.abc import Callable
import logging
from typing import Any, DefaultDict

from gitops_sync.exceptions import ApplicationNotFound
from gitops_sync.manifest import Application, NamedResource

from .status import AppStatus, SyncPhase, SyncResult, SyncStatus
from .store import Store, StoreEvent

_LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Holds Applications, their status and the resources they manage keyed by
    Application name. Supports event listeners for changes.
    """

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        """Initialize the InMemoryStore."""
        self._history_limit = history_limit
        self._apps: dict[str, Application] = {}
        self._status: dict[str, AppStatus] = {}
        self._managed: dict[str, set[NamedResource]] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_application(self, app: Application) -> None:
        if (existing := self._apps.get(app.name)) is not None and existing == app:
            _LOGGER.debug("Application %s unchanged, skipping", app.name)
            return
        _LOGGER.debug("Adding application %s to store", app.name)
        self._apps[app.name] = app
        if app.name not in self._status:
            self._status[app.name] = AppStatus(
                history=deque(maxlen=self._history_limit)
            )
        self._fire_event(StoreEvent.APPLICATION_ADDED, app.name, app)

    def remove_application(self, name: str) -> None:
        if (app := self._apps.pop(name, None)) is None:
            raise ApplicationNotFound(f"Application {name} not found")
        self._status.pop(name, None)
        self._managed.pop(name, None)
        self._fire_event(StoreEvent.APPLICATION_REMOVED, name, app)

    def get_application(self, name: str) -> Application | None:
        return self._apps.get(name)

    def list_applications(self) -> list[Application]:
        return [self._apps[name] for name in sorted(self._apps)]

    def get_status(self, name: str) -> AppStatus | None:
        return self._status.get(name)

    def _require_status(self, name: str) -> AppStatus:
        if (status := self._status.get(name)) is None:
            raise ApplicationNotFound(f"Application {name} not found")
        return status

    def set_phase(self, name: str, phase: SyncPhase) -> None:
        status = self._require_status(name)
        if status.phase == phase:
            return
        _LOGGER.debug("Application %s phase %s -> %s", name, status.phase, phase)
        status.phase = phase
        self._fire_event(StoreEvent.PHASE_CHANGED, name, phase)

    def record_result(self, name: str, result: SyncResult) -> None:
        status = self._require_status(name)
        if result.status == SyncStatus.ERROR:
            _LOGGER.error(
                "Application %s %s failed: %s",
                name,
                result.operation,
                result.message or "; ".join(str(r) for r in result.errors),
            )
        else:
            _LOGGER.info(
                "Application %s %s at %s: %s",
                name,
                result.operation,
                result.revision,
                result.status,
            )
        status.current = result
        status.history.append(result)
        if result.status != SyncStatus.ERROR:
            status.last_good = result
        self._fire_event(StoreEvent.RESULT_RECORDED, name, result)

    def get_managed(self, name: str) -> set[NamedResource]:
        return set(self._managed.get(name, set()))

    def set_managed(self, name: str, resources: set[NamedResource]) -> None:
        self._require_status(name)
        self._managed[name] = set(resources)

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[str, Any], None],
    ) -> Callable[[], None]:
        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch_result(self, name: str) -> SyncResult:
        future: asyncio.Future[SyncResult] = (
            asyncio.get_running_loop().create_future()
        )

        def callback(recorded_name: str, result: SyncResult) -> None:
            if recorded_name == name and not future.done():
                future.set_result(result)

        remove_listener = self.add_listener(StoreEvent.RESULT_RECORDED, callback)
        try:
            return await future
        except asyncio.CancelledError:
            _LOGGER.debug("watch_result for %s cancelled.", name)
            raise
        finally:
            remove_listener()
