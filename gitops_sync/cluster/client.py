"""Interface to the API of a target cluster."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from gitops_sync.manifest import NamedResource

__all__ = [
    "ClusterClient",
    "WatchEvent",
    "WatchEventType",
    "matches_labels",
]


class WatchEventType(StrEnum):
    """Type of change reported by a watch stream."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A change to a live object."""

    type: WatchEventType
    resource_id: NamedResource
    object: dict[str, Any]


def matches_labels(obj: dict[str, Any], label_selector: dict[str, str] | None) -> bool:
    """Return True if the object carries every label in the selector."""
    if not label_selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in label_selector.items())


class ClusterClient(ABC):
    """Typed CRUD operations over resources of a single cluster.

    Implementations raise ClusterUnreachable, RateLimited, PermissionDenied
    or ApplyConflict from gitops_sync.exceptions.
    """

    @abstractmethod
    async def get(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> dict[str, Any] | None:
        """Return the live object, or None if it does not exist."""

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
        api_version: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return live objects of a kind, in all namespaces when namespace is None."""

    @abstractmethod
    async def apply(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create or update the object, returning the live result.

        Applying a payload that is already in effect is a no-op.
        """

    @abstractmethod
    async def delete(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> bool:
        """Delete the object, returning False if it did not exist."""

    @abstractmethod
    def watch(
        self, kinds: Iterable[str], label_selector: dict[str, str] | None = None
    ) -> AsyncIterator[WatchEvent]:
        """Return a stream of changes to objects of the kinds.

        The stream ends when the consuming task is cancelled.
        """

    async def close(self) -> None:
        """Release any connections held by the client."""
