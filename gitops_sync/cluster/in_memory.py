"""In-process cluster used for tests and dry runs.

The cluster behaves like an API server for the purposes of reconciliation:
server fields are assigned on create and bumped only on real changes, apply
merges the payload into the live object, and a stale `resourceVersion` in a
payload is rejected with ApplyConflict. Every mutation is recorded in
`mutations`, and failures can be injected with `fail_next`.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
import copy
from dataclasses import dataclass
from datetime import datetime, timezone
import itertools
import logging
from typing import Any

from gitops_sync.exceptions import ApplyConflict, ClusterException
from gitops_sync.manifest import NamedResource

from .client import ClusterClient, WatchEvent, WatchEventType, matches_labels

_LOGGER = logging.getLogger(__name__)

__all__ = ["InMemoryCluster", "Mutation"]

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class Mutation:
    """A change made to the cluster through the client API."""

    operation: str
    resource_id: NamedResource


@dataclass
class _Fault:
    exc: ClusterException
    resource_id: NamedResource | None
    operation: str | None
    times: int


def _deep_merge(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(live)
    for key, value in desired.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class InMemoryCluster(ClusterClient):
    """A ClusterClient holding objects in memory."""

    def __init__(self) -> None:
        """Initialize InMemoryCluster."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)
        self._ips = itertools.count(10)
        self._faults: list[_Fault] = []
        self._watchers: list[tuple[set[str], dict[str, str] | None, asyncio.Queue[WatchEvent]]] = []
        self.mutations: list[Mutation] = []
        """Log of create, update and delete operations issued through the API."""
        self.calls: list[tuple[str, NamedResource | str]] = []
        """Log of every API call, including reads."""

    def fail_next(
        self,
        exc: ClusterException,
        resource_id: NamedResource | None = None,
        times: int = 1,
        operation: str | None = None,
    ) -> None:
        """Raise exc on the next calls matching the resource and operation.

        The operation is one of get, list, apply or delete, or None for any.
        """
        self._faults.append(_Fault(exc, resource_id, operation, times))

    def _check_fault(self, operation: str, resource_id: NamedResource | None) -> None:
        for fault in self._faults:
            if fault.operation is not None and fault.operation != operation:
                continue
            if fault.resource_id is not None and fault.resource_id != resource_id:
                continue
            fault.times -= 1
            if fault.times <= 0:
                self._faults.remove(fault)
            _LOGGER.debug("Injecting %s for %s %s", fault.exc, operation, resource_id)
            raise fault.exc

    def _notify(self, event_type: WatchEventType, resource_id: NamedResource, obj: dict[str, Any]) -> None:
        for kinds, selector, queue in self._watchers:
            if resource_id.kind in kinds and matches_labels(obj, selector):
                queue.put_nowait(WatchEvent(event_type, resource_id, copy.deepcopy(obj)))

    def _assign_server_fields(self, obj: dict[str, Any], existing: dict[str, Any] | None) -> None:
        metadata = obj.setdefault("metadata", {})
        if existing is None:
            metadata["uid"] = f"00000000-0000-0000-0000-{next(self._uids):012d}"
            metadata["generation"] = 1
            metadata["creationTimestamp"] = datetime.now(timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            )
        else:
            for key in ("uid", "creationTimestamp"):
                metadata[key] = existing["metadata"][key]
            metadata["generation"] = existing["metadata"].get("generation", 1) + 1
        metadata["resourceVersion"] = str(next(self._versions))
        obj.setdefault("status", {})
        spec = obj.get("spec")
        if obj.get("kind") == "Service" and isinstance(spec, dict):
            spec.setdefault("clusterIP", f"10.96.0.{next(self._ips)}")
        if obj.get("kind") == "Deployment" and isinstance(spec, dict):
            spec.setdefault("replicas", 1)

    def _store(self, payload: dict[str, Any]) -> tuple[WatchEventType | None, dict[str, Any]]:
        """Merge payload into the live object returning the event type, or None if unchanged."""
        resource_id = NamedResource.from_doc(payload)
        existing = self._objects.get(resource_id)
        if existing is None:
            obj = copy.deepcopy(payload)
            obj.get("metadata", {}).pop("resourceVersion", None)
            self._assign_server_fields(obj, None)
            self._objects[resource_id] = obj
            return WatchEventType.ADDED, obj
        requested = payload.get("metadata", {}).get("resourceVersion")
        if requested is not None and requested != existing["metadata"]["resourceVersion"]:
            raise ApplyConflict(
                f"{resource_id} was modified (resourceVersion {requested} != "
                f"{existing['metadata']['resourceVersion']})"
            )
        merged = _deep_merge(existing, payload)
        merged["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
        if merged == existing:
            return None, existing
        self._assign_server_fields(merged, existing)
        self._objects[resource_id] = merged
        return WatchEventType.MODIFIED, merged

    def seed(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create or change an object out-of-band, without recording a mutation."""
        resource_id = NamedResource.from_doc(payload)
        event_type, obj = self._store(payload)
        if event_type is not None:
            self._notify(event_type, resource_id, obj)
        return copy.deepcopy(obj)

    def replace(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Overwrite an object out-of-band, dropping fields not in payload."""
        resource_id = NamedResource.from_doc(payload)
        existing = self._objects.pop(resource_id, None)
        obj = copy.deepcopy(payload)
        self._assign_server_fields(obj, existing)
        self._objects[resource_id] = obj
        self._notify(
            WatchEventType.ADDED if existing is None else WatchEventType.MODIFIED,
            resource_id,
            obj,
        )
        return copy.deepcopy(obj)

    def remove(self, resource_id: NamedResource) -> None:
        """Delete an object out-of-band."""
        if (obj := self._objects.pop(resource_id, None)) is not None:
            self._notify(WatchEventType.DELETED, resource_id, obj)

    def objects(self) -> dict[NamedResource, dict[str, Any]]:
        """Return a copy of all live objects."""
        return copy.deepcopy(self._objects)

    async def get(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> dict[str, Any] | None:
        self.calls.append(("get", resource_id))
        self._check_fault("get", resource_id)
        await asyncio.sleep(0)
        if (obj := self._objects.get(resource_id)) is None:
            return None
        return copy.deepcopy(obj)

    async def list(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
        api_version: str | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("list", kind))
        self._check_fault("list", None)
        await asyncio.sleep(0)
        return [
            copy.deepcopy(obj)
            for resource_id, obj in sorted(self._objects.items())
            if resource_id.kind == kind
            and (namespace is None or resource_id.namespace == namespace)
            and matches_labels(obj, label_selector)
        ]

    async def apply(self, payload: dict[str, Any]) -> dict[str, Any]:
        resource_id = NamedResource.from_doc(payload)
        self.calls.append(("apply", resource_id))
        self._check_fault("apply", resource_id)
        await asyncio.sleep(0)
        event_type, obj = self._store(payload)
        if event_type is not None:
            operation = CREATE if event_type == WatchEventType.ADDED else UPDATE
            self.mutations.append(Mutation(operation, resource_id))
            self._notify(event_type, resource_id, obj)
        return copy.deepcopy(obj)

    async def delete(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> bool:
        self.calls.append(("delete", resource_id))
        self._check_fault("delete", resource_id)
        await asyncio.sleep(0)
        if (obj := self._objects.pop(resource_id, None)) is None:
            return False
        self.mutations.append(Mutation(DELETE, resource_id))
        self._notify(WatchEventType.DELETED, resource_id, obj)
        return True

    async def watch(
        self, kinds: Iterable[str], label_selector: dict[str, str] | None = None
    ) -> AsyncIterator[WatchEvent]:
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        watcher = (set(kinds), label_selector, queue)
        self._watchers.append(watcher)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(watcher)
