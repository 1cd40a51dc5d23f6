"""Live-State Observer reading current resource state from a cluster.

The observer is read-only. Cluster errors such as ClusterUnreachable or
PermissionDenied propagate to the caller and are never reported as an absent
object.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
import logging
from typing import Any

from gitops_sync.manifest import NamedResource

from .client import ClusterClient, WatchEvent

_LOGGER = logging.getLogger(__name__)

__all__ = ["LiveStateObserver"]


class LiveStateObserver:
    """Reads the live objects relevant to an Application."""

    def __init__(self, cluster: ClusterClient, ownership_label: str) -> None:
        """Initialize LiveStateObserver."""
        self._cluster = cluster
        self._ownership_label = ownership_label

    async def observe(
        self,
        resource_ids: Iterable[NamedResource],
        api_versions: dict[NamedResource, str] | None = None,
    ) -> dict[NamedResource, dict[str, Any] | None]:
        """Return the live object of each resource, or None if it is absent."""
        ids = sorted(set(resource_ids))
        versions = api_versions or {}
        results = await asyncio.gather(
            *(self._cluster.get(rid, versions.get(rid)) for rid in ids)
        )
        return dict(zip(ids, results))

    async def list_owned(
        self, app_name: str, kinds: Iterable[str]
    ) -> dict[NamedResource, dict[str, Any]]:
        """Return live objects of the kinds carrying the ownership label of the Application."""
        selector = {self._ownership_label: app_name}
        kind_list = sorted(set(kinds))
        results = await asyncio.gather(
            *(self._cluster.list(kind, label_selector=selector) for kind in kind_list)
        )
        owned: dict[NamedResource, dict[str, Any]] = {}
        for objects in results:
            for obj in objects:
                owned[NamedResource.from_doc(obj)] = obj
        _LOGGER.debug("Found %d live objects owned by %s", len(owned), app_name)
        return owned

    async def watch(
        self, app_name: str, kinds: Iterable[str]
    ) -> AsyncIterator[WatchEvent]:
        """Yield changes to live objects owned by the Application until cancelled."""
        selector = {self._ownership_label: app_name}
        async for event in self._cluster.watch(sorted(set(kinds)), selector):
            _LOGGER.debug("Observed %s %s", event.type, event.resource_id)
            yield event
