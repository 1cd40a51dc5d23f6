"""Orchestrator for gitops-sync.

This module wires the source fetcher, the reconciler and the scheduler
together around a store and a set of destination clusters, and provides a
single interface for bootstrapping Applications and for running either one
pass over all Applications or the long running controller.
"""

import asyncio
from collections.abc import Awaitable, Callable
import logging
from pathlib import Path

from gitops_sync.cluster import ClusterRegistry
from gitops_sync.config import ControllerConfig
from gitops_sync.exceptions import ApplicationNotFound
from gitops_sync.manifest import Application, Revision
from gitops_sync.reconciler import Reconciler
from gitops_sync.resource_diff import DiffRecord
from gitops_sync.scheduler import ReconciliationScheduler
from gitops_sync.source_controller import SourceCache, SourceFetcher
from gitops_sync.store import Operation, Store, SyncResult, SyncStatus
from gitops_sync.task import get_task_service

from .loader import ApplicationLoader, LoadOptions

__all__ = ["Orchestrator"]

_LOGGER = logging.getLogger(__name__)


class Orchestrator:
    """Orchestrator for the components of the controller.

    The orchestrator is responsible for:
    - Creating the fetcher, reconciler and scheduler from the configuration
    - Loading Application definitions into the scheduler
    - Starting and stopping the scheduler and closing cluster clients
    """

    def __init__(
        self,
        store: Store,
        clusters: ClusterRegistry,
        config: ControllerConfig | None = None,
        fetcher: SourceFetcher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator."""
        self.store = store
        self.clusters = clusters
        self.config = config or ControllerConfig()
        cache_dir = Path(self.config.cache_dir) if self.config.cache_dir else None
        self.fetcher = fetcher or SourceFetcher(SourceCache(cache_dir))
        self.reconciler = Reconciler(
            store, self.fetcher, clusters, self.config, sleep=sleep
        )
        self.scheduler = ReconciliationScheduler(
            self.reconciler, store, self.fetcher, clusters, self.config
        )

    async def bootstrap(self, options: LoadOptions) -> list[Application]:
        """Load the Applications and register them with the scheduler."""
        apps = await ApplicationLoader().load(options)
        for app in apps:
            self.scheduler.add_application(app)
        _LOGGER.info("Bootstrapped %d applications", len(apps))
        return apps

    def _application(self, name: str) -> Application:
        if (app := self.store.get_application(name)) is None:
            raise ApplicationNotFound(f"Application {name} not found")
        return app

    async def plan(self, name: str) -> tuple[Revision, DiffRecord]:
        """Return the changes a sync of the Application would make."""
        return await self.reconciler.plan(self._application(name))

    async def run_once(
        self, operation: Operation = Operation.SYNC
    ) -> dict[str, SyncResult]:
        """Run one cycle for every Application, regardless of its sync policy.

        Cycles run concurrently, bounded by the configured concurrency.
        """
        pool = asyncio.Semaphore(self.config.concurrency)

        async def _reconcile(app: Application) -> SyncResult:
            async with pool:
                return await self.reconciler.reconcile(app, operation)

        apps = self.store.list_applications()
        results = await asyncio.gather(*(_reconcile(app) for app in apps))
        return {app.name: result for app, result in zip(apps, results)}

    def has_errors(self) -> bool:
        """Return True if the latest result of any Application is an Error."""
        for app in self.store.list_applications():
            status = self.store.get_status(app.name)
            if status is not None and status.status == SyncStatus.ERROR:
                return True
        return False

    async def start(self) -> None:
        """Start the scheduler."""
        _LOGGER.info("Starting orchestrator")
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop the scheduler and close the cluster clients."""
        _LOGGER.info("Stopping orchestrator")
        await self.scheduler.stop()
        await get_task_service().block_till_done()
        await self.clusters.close()
        _LOGGER.info("Orchestrator stopped")

    async def run(
        self,
        duration: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> bool:
        """Run the controller until the duration elapses or stop_event is set.

        Returns:
            bool: True if no Application ended in an Error result.
        """
        stop_event = stop_event or asyncio.Event()
        await self.start()
        try:
            try:
                async with asyncio.timeout(duration):
                    await stop_event.wait()
            except TimeoutError:
                _LOGGER.info("Run duration of %ss elapsed", duration)
            await self.scheduler.wait_idle()
        except asyncio.CancelledError:
            _LOGGER.info("Orchestrator was cancelled")
            raise
        finally:
            await self.stop()
        return not self.has_errors()
