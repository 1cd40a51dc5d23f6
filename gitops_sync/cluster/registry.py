"""Lookup of the cluster client for an Application destination."""

from collections.abc import Callable
import logging

from gitops_sync.exceptions import ClusterUnreachable
from gitops_sync.manifest import IN_CLUSTER

from .client import ClusterClient

_LOGGER = logging.getLogger(__name__)

__all__ = ["ClusterRegistry"]


class ClusterRegistry:
    """Destination cluster name to ClusterClient.

    Clients may be registered directly or created lazily by a factory on
    first use, e.g. one KubernetesCluster per kubeconfig context.
    """

    def __init__(
        self,
        clusters: dict[str, ClusterClient] | None = None,
        factory: Callable[[str], ClusterClient] | None = None,
    ) -> None:
        """Initialize ClusterRegistry."""
        self._clusters: dict[str, ClusterClient] = dict(clusters or {})
        self._factory = factory

    @classmethod
    def single(cls, client: ClusterClient) -> "ClusterRegistry":
        """Return a registry sending every destination to client."""
        return cls(factory=lambda _: client)

    def register(self, name: str, client: ClusterClient) -> None:
        self._clusters[name] = client

    def get(self, name: str = IN_CLUSTER) -> ClusterClient:
        """Return the client for the destination cluster."""
        if (client := self._clusters.get(name)) is not None:
            return client
        if self._factory is None:
            raise ClusterUnreachable(f"Unknown destination cluster '{name}'")
        _LOGGER.debug("Creating client for cluster %s", name)
        client = self._factory(name)
        self._clusters[name] = client
        return client

    async def close(self) -> None:
        """Close all clients."""
        for client in {id(c): c for c in self._clusters.values()}.values():
            await client.close()
        self._clusters.clear()
