"""Reconciler running one fetch, render, diff and apply cycle for an Application.

The phase of the cycle is recorded in the store as it progresses:
`Fetching -> Rendering -> Diffing -> Syncing -> Idle`. A cycle always ends in
a SyncResult recorded in the store, any error aborts only the current cycle
and is reported as an Error result with a human readable cause.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from .cluster import ClusterRegistry, LiveStateObserver
from .config import ControllerConfig
from .context import trace_context
from .exceptions import GitOpsException, SyncCancelled, SyncTimeout
from .kinds import KindRegistry
from .manifest import Application, NamedResource, ResourceDescriptor, Revision
from .renderer import ManifestRenderer
from .resource_diff import DiffEngine, DiffRecord
from .source_controller import SourceFetcher
from .store import (
    Operation,
    ResourceAction,
    ResourceResult,
    Store,
    SyncPhase,
    SyncResult,
    SyncStatus,
)
from .sync_executor import SyncExecutor

__all__ = ["Reconciler"]

_LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Cycle:
    """Mutable state of a cycle in progress."""

    app: Application
    operation: Operation
    cancel: asyncio.Event
    started_at: datetime
    revision: Revision | None = None

    def check_cancelled(self) -> None:
        if self.cancel.is_set():
            raise SyncCancelled(f"{self.operation} of {self.app.name} cancelled")


def _final_status(record: DiffRecord, results: list[ResourceResult]) -> SyncStatus:
    if any(r.action == ResourceAction.FAILED for r in results):
        return SyncStatus.ERROR
    if record.orphans or record.collisions:
        return SyncStatus.OUT_OF_SYNC
    if any(r.action == ResourceAction.SKIPPED for r in results):
        return SyncStatus.OUT_OF_SYNC
    return SyncStatus.SYNCED


class Reconciler:
    """Runs reconciliation cycles, one Application at a time per call."""

    def __init__(
        self,
        store: Store,
        fetcher: SourceFetcher,
        clusters: ClusterRegistry,
        config: ControllerConfig | None = None,
        registry: KindRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize Reconciler."""
        self._store = store
        self._fetcher = fetcher
        self._clusters = clusters
        self._config = config or ControllerConfig()
        self._registry = registry or self._config.kind_registry()
        self._renderer = ManifestRenderer(self._registry)
        self._engine = DiffEngine(self._registry, self._config.ownership_label)
        self._sleep = sleep

    def _set_phase(self, app: Application, phase: SyncPhase) -> None:
        if self._store.get_application(app.name) is not None:
            self._store.set_phase(app.name, phase)

    async def reconcile(
        self,
        app: Application,
        operation: Operation = Operation.SYNC,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """Run one cycle for the Application and record its result."""
        cycle = _Cycle(app, operation, cancel or asyncio.Event(), _now())
        try:
            with trace_context(f"{operation} {app.name}"):
                async with self._deadline(app):
                    result = await self._run(cycle)
        except GitOpsException as err:
            result = self._error(cycle, f"{type(err).__name__}: {err}")
        except Exception as err:
            _LOGGER.exception("Unexpected error in %s of %s", operation, app.name)
            result = self._error(cycle, f"{type(err).__name__}: {err}")
        finally:
            self._set_phase(app, SyncPhase.IDLE)
        result.finished_at = _now()
        if self._store.get_application(app.name) is not None:
            self._store.record_result(app.name, result)
        else:
            _LOGGER.debug("Application %s was removed, dropping result", app.name)
        return result

    @asynccontextmanager
    async def _deadline(self, app: Application) -> AsyncIterator[None]:
        """Raise SyncTimeout when the block outlives the cycle timeout."""
        timeout = self._config.cycle_timeout
        try:
            async with asyncio.timeout(timeout):
                yield
        except TimeoutError as err:
            raise SyncTimeout(f"cycle of {app.name} exceeded {timeout:g}s") from err

    def _error(self, cycle: _Cycle, message: str) -> SyncResult:
        return SyncResult(
            status=SyncStatus.ERROR,
            operation=cycle.operation,
            revision=cycle.revision,
            started_at=cycle.started_at,
            message=message,
        )

    async def _diff(
        self,
        app: Application,
        desired: list[ResourceDescriptor],
        observer: LiveStateObserver,
    ) -> DiffRecord:
        ids = [d.resource_id for d in desired]
        versions = {d.resource_id: d.api_version for d in desired}
        # Owned leftovers are searched in every registered kind, since the
        # managed set is empty after a restart.
        kinds = (
            {d.kind for d in desired}
            | set(self._registry.kinds())
            | {rid.kind for rid in self._store.get_managed(app.name)}
        )
        observed, owned = await asyncio.gather(
            observer.observe(ids, versions),
            observer.list_owned(app.name, kinds),
        )
        return self._engine.diff(app, desired, observed, owned)

    async def render(self, app: Application) -> tuple[Revision, list[ResourceDescriptor]]:
        """Fetch and render the desired resources of the Application, stamped as owned."""
        bundle = await self._fetcher.fetch(app.source)
        rendered = await self._renderer.render(bundle, app)
        label = self._config.ownership_label
        return bundle.revision, [r.with_label(label, app.name) for r in rendered]

    async def plan(self, app: Application) -> tuple[Revision, DiffRecord]:
        """Return the changes a sync of the Application would make, without recording status."""
        async with self._deadline(app):
            revision, desired = await self.render(app)
            observer = LiveStateObserver(
                self._clusters.get(app.destination.cluster), self._config.ownership_label
            )
            return revision, await self._diff(app, desired, observer)

    async def _run(self, cycle: _Cycle) -> SyncResult:
        app = cycle.app
        label = self._config.ownership_label

        self._set_phase(app, SyncPhase.FETCHING)
        bundle = await self._fetcher.fetch(app.source)
        cycle.revision = bundle.revision
        cycle.check_cancelled()

        self._set_phase(app, SyncPhase.RENDERING)
        rendered = await self._renderer.render(bundle, app)
        desired = [resource.with_label(label, app.name) for resource in rendered]
        cycle.check_cancelled()

        self._set_phase(app, SyncPhase.DIFFING)
        cluster = self._clusters.get(app.destination.cluster)
        observer = LiveStateObserver(cluster, label)
        record = await self._diff(app, desired, observer)

        if cycle.operation == Operation.REFRESH:
            results = [
                ResourceResult(
                    change.resource_id,
                    ResourceAction.OUT_OF_SYNC,
                    message="; ".join(change.field_diffs) or str(change.change),
                )
                for change in record.changes
            ]
            results.extend(
                ResourceResult(rid, ResourceAction.PRUNE_SKIPPED, message="prune disabled")
                for rid in record.orphans
            )
            results.extend(
                ResourceResult(
                    rid,
                    ResourceAction.SKIPPED,
                    message="live object is not owned by the application",
                )
                for rid in record.collisions
            )
            status = SyncStatus.SYNCED if record.in_sync else SyncStatus.OUT_OF_SYNC
            return SyncResult(
                status=status,
                operation=cycle.operation,
                revision=cycle.revision,
                resources=results,
                started_at=cycle.started_at,
            )

        cycle.check_cancelled()
        self._set_phase(app, SyncPhase.SYNCING)
        executor = SyncExecutor(cluster, self._registry, self._config.retry, self._sleep)
        prune = app.sync_policy.prune
        results = await executor.execute(record, prune=prune, cancel=cycle.cancel)

        if (conflicted := {r.resource_id for r in results if r.conflict}) and (
            not cycle.cancel.is_set()
        ):
            _LOGGER.info(
                "Re-applying %d conflicted resources of %s", len(conflicted), app.name
            )
            retry_record = await self._diff(app, desired, observer)
            retry_record = DiffRecord(
                changes=[c for c in retry_record.changes if c.resource_id in conflicted],
                collisions=[r for r in retry_record.collisions if r in conflicted],
            )
            retried = {
                r.resource_id: r
                for r in await executor.execute(
                    retry_record, prune=prune, cancel=cycle.cancel
                )
            }
            results = [retried.get(r.resource_id, r) if r.conflict else r for r in results]
            for r in results:
                if r.conflict and r.resource_id not in retried:
                    # Live state already matches after the concurrent change
                    r.action = ResourceAction.UPDATED
                    r.message = "converged after conflict"
                    r.conflict = False
            record.collisions.extend(
                r for r in retry_record.collisions if r not in record.collisions
            )

        if self._store.get_application(app.name) is not None:
            self._store.set_managed(app.name, _managed(desired, record, results))
        status = _final_status(record, results)
        message = None
        if cycle.cancel.is_set():
            status = SyncStatus.ERROR
            message = f"SyncCancelled: {cycle.operation} of {app.name} cancelled"
        return SyncResult(
            status=status,
            operation=cycle.operation,
            revision=cycle.revision,
            resources=results,
            started_at=cycle.started_at,
            message=message,
        )


def _managed(
    desired: list[ResourceDescriptor],
    record: DiffRecord,
    results: list[ResourceResult],
) -> set[NamedResource]:
    """Return the resources that may be live and owned after the cycle."""
    deleted = {r.resource_id for r in results if r.action == ResourceAction.DELETED}
    managed = {d.resource_id for d in desired} - set(record.collisions)
    managed |= set(record.orphans)
    managed |= {c.resource_id for c in record.changes}
    return managed - deleted
