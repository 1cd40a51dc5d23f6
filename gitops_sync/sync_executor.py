"""Sync Executor applying a DiffRecord to a cluster.

Adds and modifies are applied in waves of ascending kind priority, so that
namespaces and custom resource definitions exist before the resources that
reference them. Resources in the same wave have no declared dependency and
are applied concurrently. Removes run after all applies, in descending
priority.

Every resource operation is retried independently on transient cluster errors
with bounded exponential backoff, honoring a server requested retry-after. A
resource that fails does not stop unrelated resources from being applied.
"""

import asyncio
from collections.abc import Awaitable, Callable
from itertools import groupby
import logging

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from .cluster import ClusterClient
from .config import RetryConfig
from .exceptions import ApplyConflict, ClusterException
from .kinds import KindRegistry
from .manifest import NamedResource
from .resource_diff import ChangeKind, DiffRecord, ResourceChange
from .store.status import ResourceAction, ResourceResult

__all__ = ["SyncExecutor"]

_LOGGER = logging.getLogger(__name__)

CANCELLED_MESSAGE = "sync cancelled"


def _is_transient(err: BaseException) -> bool:
    return isinstance(err, ClusterException) and err.transient


class _RetryAfterWait(wait_base):
    """Waits for the backoff delay, or longer when the server asked for it."""

    def __init__(self, backoff: wait_base) -> None:
        self._backoff = backoff

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._backoff(retry_state)
        err = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(err, "retry_after", None)
        if retry_after is not None and retry_after > delay:
            return retry_after
        return delay


class SyncExecutor:
    """Applies the changes of a DiffRecord to a cluster."""

    def __init__(
        self,
        cluster: ClusterClient,
        registry: KindRegistry,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize SyncExecutor."""
        self._cluster = cluster
        self._registry = registry
        self._retry = retry or RetryConfig()
        self._sleep = sleep

    async def execute(
        self,
        record: DiffRecord,
        prune: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> list[ResourceResult]:
        """Apply the record, returning one result per change, orphan and collision.

        Removes are only executed when prune is set, otherwise they are
        reported as PruneSkipped and the live object is left in place.

        Once cancel is set no new operation is issued, operations already in
        flight complete and the remaining changes are reported as Skipped.
        """
        cancel = cancel or asyncio.Event()
        results: dict[NamedResource, ResourceResult] = {}

        applies = sorted(
            (c for c in record.changes if c.change != ChangeKind.REMOVE),
            key=lambda c: self._registry.sort_key(c.resource_id),
        )
        for priority, wave in groupby(
            applies, key=lambda c: self._registry.priority(c.resource_id.kind)
        ):
            changes = list(wave)
            _LOGGER.debug("Applying wave priority=%d (%d resources)", priority, len(changes))
            for result in await asyncio.gather(
                *(self._run(change, cancel) for change in changes)
            ):
                results[result.resource_id] = result

        removes = sorted(
            (c for c in record.changes if c.change == ChangeKind.REMOVE and prune),
            key=lambda c: self._registry.sort_key(c.resource_id),
            reverse=True,
        )
        for change in removes:
            result = await self._run(change, cancel)
            results[result.resource_id] = result

        ordered = [results[c.resource_id] for c in applies + removes]
        ordered.extend(
            ResourceResult(
                c.resource_id, ResourceAction.PRUNE_SKIPPED, message="prune disabled"
            )
            for c in record.changes
            if c.change == ChangeKind.REMOVE and not prune
        )
        ordered.extend(
            ResourceResult(
                rid, ResourceAction.PRUNE_SKIPPED, message="prune disabled"
            )
            for rid in record.orphans
        )
        ordered.extend(
            ResourceResult(
                rid,
                ResourceAction.SKIPPED,
                message="live object is not owned by the application",
            )
            for rid in record.collisions
        )
        return ordered

    def _retrying(self, change: ResourceChange) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            err = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            _LOGGER.debug(
                "Retrying %s %s in %.2fs (attempt %d): %s",
                change.change,
                change.resource_id,
                delay,
                retry_state.attempt_number,
                err,
            )

        return AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self._retry.max_attempts),
            wait=_RetryAfterWait(self._retry.backoff()),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )

    async def _run(self, change: ResourceChange, cancel: asyncio.Event) -> ResourceResult:
        rid = change.resource_id
        attempts = 0
        try:
            async for attempt in self._retrying(change):
                if cancel.is_set():
                    return ResourceResult(
                        rid, ResourceAction.SKIPPED, message=CANCELLED_MESSAGE, attempts=attempts
                    )
                attempts = attempt.retry_state.attempt_number
                with attempt:
                    action = await self._operate(change)
        except ApplyConflict as err:
            _LOGGER.info("Conflict applying %s: %s", rid, err)
            return ResourceResult(
                rid, ResourceAction.FAILED, message=str(err), attempts=attempts, conflict=True
            )
        except ClusterException as err:
            _LOGGER.warning(
                "Failed %s %s after %d attempts: %s", change.change, rid, attempts, err
            )
            return ResourceResult(
                rid,
                ResourceAction.FAILED,
                message=f"{type(err).__name__}: {err}",
                attempts=attempts,
            )
        _LOGGER.info("%s %s", action, rid)
        return ResourceResult(rid, action, attempts=attempts)

    async def _operate(self, change: ResourceChange) -> ResourceAction:
        if change.change == ChangeKind.REMOVE or change.desired is None:
            api_version = (change.live or {}).get("apiVersion")
            await self._cluster.delete(change.resource_id, api_version)
            return ResourceAction.DELETED
        await self._cluster.apply(change.desired.payload)
        if change.change == ChangeKind.ADD:
            return ResourceAction.CREATED
        return ResourceAction.UPDATED
