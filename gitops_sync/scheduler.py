"""Reconciliation Scheduler driving the cycles of all Applications.

The scheduler owns an explicit map from Application name to an _AppSlot
holding the per-Application lock, the pending trigger, the cancellation token
of the in-flight cycle and the tasks working on its behalf.

Triggers are put on a queue and dispatched to a single worker task per
Application, so at most one cycle per Application is in flight. A trigger for
an Application that is already reconciling is coalesced into one pending
trigger, where sync takes precedence over refresh, and runs when the current
cycle ends. Cycles of distinct Applications run concurrently on a worker pool
bounded by the configured concurrency.

Automated Applications are polled on a fixed interval and re-synced when a
revision notification names their repository. Automated Applications with
self-heal also re-sync when the cluster reports a change to a resource they
own. Manual Applications only run on an explicit sync or refresh.
"""

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from .cluster import ClusterRegistry, LiveStateObserver
from .config import ControllerConfig
from .exceptions import ApplicationNotFound, ClusterException, GitOpsException
from .manifest import Application
from .reconciler import Reconciler
from .source_controller import SourceFetcher
from .store import Operation, Store
from .task import TaskService, get_task_service

__all__ = ["ReconciliationScheduler"]

_LOGGER = logging.getLogger(__name__)

_PRECEDENCE = {Operation.REFRESH: 0, Operation.SYNC: 1}


def _normalize_url(url: str) -> str:
    return url.rstrip("/").removesuffix(".git").lower()


@dataclass
class _AppSlot:
    """Scheduler state of a single Application."""

    app: Application
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: Operation | None = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    worker: asyncio.Task[Any] | None = None
    poll_task: asyncio.Task[Any] | None = None
    watch_task: asyncio.Task[Any] | None = None

    def merge(self, operation: Operation) -> None:
        """Coalesce a trigger into the pending trigger."""
        if self.pending is None or _PRECEDENCE[operation] > _PRECEDENCE[self.pending]:
            self.pending = operation

    def loops(self) -> list[asyncio.Task[Any]]:
        return [t for t in (self.poll_task, self.watch_task) if t is not None]


class ReconciliationScheduler:
    """Schedules reconciliation cycles for a set of Applications."""

    def __init__(
        self,
        reconciler: Reconciler,
        store: Store,
        fetcher: SourceFetcher,
        clusters: ClusterRegistry,
        config: ControllerConfig | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize ReconciliationScheduler."""
        self._reconciler = reconciler
        self._store = store
        self._fetcher = fetcher
        self._clusters = clusters
        self._config = config or ControllerConfig()
        self._tasks = task_service or get_task_service()
        self._slots: dict[str, _AppSlot] = {}
        self._queue: asyncio.Queue[tuple[str, Operation]] = asyncio.Queue()
        self._pool = asyncio.Semaphore(self._config.concurrency)
        self._dispatcher: asyncio.Task[Any] | None = None

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def in_flight(self) -> list[str]:
        """Return the names of Applications with a cycle in progress."""
        return sorted(name for name, slot in self._slots.items() if slot.lock.locked())

    async def start(self) -> None:
        """Start dispatching triggers and the poll and watch loops."""
        if self.running:
            return
        _LOGGER.info("Starting scheduler with %d applications", len(self._slots))
        self._dispatcher = self._tasks.create_background_task(
            self._dispatch(), name="scheduler-dispatch"
        )
        for slot in self._slots.values():
            self._start_loops(slot)

    async def stop(self) -> None:
        """Stop all loops, letting in-flight cluster operations complete."""
        _LOGGER.info("Stopping scheduler")
        tasks: list[asyncio.Task[Any]] = []
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
            self._dispatcher = None
        workers: list[asyncio.Task[Any]] = []
        for slot in self._slots.values():
            slot.pending = None
            slot.cancel.set()
            tasks.extend(slot.loops())
            slot.poll_task = slot.watch_task = None
            if slot.worker is not None:
                workers.append(slot.worker)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, *workers, return_exceptions=True)

    def add_application(self, app: Application) -> None:
        """Add an Application, scheduling its first cycle if it is automated."""
        if app.name in self._slots:
            self.update_application(app)
            return
        self._store.add_application(app)
        slot = _AppSlot(app)
        self._slots[app.name] = slot
        if self.running:
            self._start_loops(slot)

    def update_application(self, app: Application) -> None:
        """Replace the definition of an Application, cancelling its in-flight cycle."""
        if (slot := self._slots.get(app.name)) is None:
            raise ApplicationNotFound(f"Application {app.name} not found")
        if slot.app == app:
            return
        _LOGGER.info("Application %s changed, cancelling in-flight cycle", app.name)
        self._store.add_application(app)
        slot.app = app
        slot.cancel.set()
        self._stop_loops(slot)
        if self.running:
            self._start_loops(slot)

    def remove_application(self, name: str) -> None:
        """Remove an Application, cancelling its in-flight cycle."""
        if (slot := self._slots.pop(name, None)) is None:
            raise ApplicationNotFound(f"Application {name} not found")
        _LOGGER.info("Removing application %s", name)
        slot.pending = None
        slot.cancel.set()
        self._stop_loops(slot)
        self._store.remove_application(name)

    def sync(self, name: str) -> None:
        """Request a sync of the Application."""
        self._trigger(name, Operation.SYNC)

    def refresh(self, name: str) -> None:
        """Request a refresh (diff without apply) of the Application."""
        self._trigger(name, Operation.REFRESH)

    def notify_revision(self, repo_url: str, revision: str | None = None) -> list[str]:
        """Handle a notification that a repository has a new revision.

        Automated Applications sourced from the repository are synced, and the
        names of the triggered Applications are returned.
        """
        url = _normalize_url(repo_url)
        names = [
            name
            for name, slot in sorted(self._slots.items())
            if slot.app.sync_policy.automated
            and _normalize_url(slot.app.source.repo_url) == url
        ]
        _LOGGER.info(
            "Revision %s notified for %s, triggering %s", revision or "", repo_url, names
        )
        for name in names:
            self._trigger(name, Operation.SYNC)
        return names

    async def wait_idle(self) -> None:
        """Wait until no trigger is queued and no cycle is pending or in flight."""
        while True:
            await self._queue.join()
            workers = [
                slot.worker
                for slot in self._slots.values()
                if slot.worker is not None and not slot.worker.done()
            ]
            if not workers and self._queue.empty():
                return
            await asyncio.gather(*workers, return_exceptions=True)

    def _trigger(self, name: str, operation: Operation) -> None:
        if name not in self._slots:
            raise ApplicationNotFound(f"Application {name} not found")
        _LOGGER.debug("Trigger %s %s", operation, name)
        self._queue.put_nowait((name, operation))

    async def _dispatch(self) -> None:
        while True:
            name, operation = await self._queue.get()
            try:
                if (slot := self._slots.get(name)) is None:
                    _LOGGER.debug("Dropping trigger for removed application %s", name)
                    continue
                slot.merge(operation)
                if slot.worker is None or slot.worker.done():
                    slot.worker = self._tasks.create_task(
                        self._work(slot), name=f"reconcile-{name}"
                    )
            finally:
                self._queue.task_done()

    async def _work(self, slot: _AppSlot) -> None:
        """Run the pending cycles of one Application until none is left."""
        name = slot.app.name
        while slot.pending is not None and self._slots.get(name) is slot:
            async with self._pool:
                async with slot.lock:
                    operation = slot.pending
                    if operation is None:
                        return
                    slot.pending = None
                    slot.cancel = asyncio.Event()
                    try:
                        await self._reconciler.reconcile(slot.app, operation, slot.cancel)
                    except Exception:
                        _LOGGER.exception("Unexpected error reconciling %s", name)

    def _start_loops(self, slot: _AppSlot) -> None:
        policy = slot.app.sync_policy
        if not policy.automated:
            return
        self._trigger(slot.app.name, Operation.SYNC)
        slot.poll_task = self._tasks.create_background_task(
            self._poll(slot), name=f"poll-{slot.app.name}"
        )
        if policy.self_heal:
            slot.watch_task = self._tasks.create_background_task(
                self._watch(slot), name=f"watch-{slot.app.name}"
            )

    def _stop_loops(self, slot: _AppSlot) -> None:
        for task in slot.loops():
            task.cancel()
        slot.poll_task = slot.watch_task = None

    async def _poll_operation(self, app: Application) -> Operation:
        """Return sync when the source has a revision that was not synced yet."""
        if app.sync_policy.self_heal:
            return Operation.SYNC
        status = self._store.get_status(app.name)
        if status is None or (last := status.last_synced_revision) is None:
            return Operation.SYNC
        try:
            revision = await self._fetcher.resolve_revision(app.source)
        except GitOpsException:
            return Operation.SYNC
        if revision.sha != last.sha:
            _LOGGER.info("Application %s has new revision %s", app.name, revision)
            return Operation.SYNC
        return Operation.REFRESH

    async def _poll(self, slot: _AppSlot) -> None:
        while True:
            await asyncio.sleep(self._config.poll_interval)
            if self._slots.get(slot.app.name) is not slot:
                return
            if slot.pending is None and not slot.lock.locked():
                self._trigger(slot.app.name, await self._poll_operation(slot.app))

    def _owned_kinds(self, name: str) -> list[str]:
        return sorted({rid.kind for rid in self._store.get_managed(name)})

    async def _consume(
        self, slot: _AppSlot, observer: LiveStateObserver, kinds: list[str]
    ) -> None:
        name = slot.app.name
        try:
            async for event in observer.watch(name, kinds):
                if slot.lock.locked():
                    continue
                _LOGGER.info(
                    "Drift on %s (%s), re-syncing %s", event.resource_id, event.type, name
                )
                self._trigger(name, Operation.SYNC)
        except ClusterException as err:
            _LOGGER.warning("Watch for %s failed: %s", name, err)
            await asyncio.sleep(self._config.poll_interval)

    async def _watch(self, slot: _AppSlot) -> None:
        """Re-sync the Application when an owned resource changes in the cluster.

        The watch follows the kinds applied by the latest cycle.
        """
        name = slot.app.name
        observer = LiveStateObserver(
            self._clusters.get(slot.app.destination.cluster),
            self._config.ownership_label,
        )
        while self._slots.get(name) is slot:
            kinds = self._owned_kinds(name)
            if not kinds:
                await self._store.watch_result(name)
                continue
            consumer = asyncio.create_task(self._consume(slot, observer, kinds))
            try:
                while not consumer.done():
                    result = asyncio.create_task(self._store.watch_result(name))
                    done, _ = await asyncio.wait(
                        {consumer, result}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if result not in done:
                        result.cancel()
                        await asyncio.gather(result, return_exceptions=True)
                    elif self._owned_kinds(name) != kinds:
                        break
            finally:
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)
