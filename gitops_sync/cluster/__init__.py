"""Access to target clusters and their live state.

The KubernetesCluster client is imported from `gitops_sync.cluster.kubernetes`
directly so that the in-memory cluster can be used without cluster
credentials.
"""

from .client import ClusterClient, WatchEvent, WatchEventType
from .in_memory import InMemoryCluster, Mutation
from .observer import LiveStateObserver
from .registry import ClusterRegistry

__all__ = [
    "ClusterClient",
    "ClusterRegistry",
    "InMemoryCluster",
    "LiveStateObserver",
    "Mutation",
    "WatchEvent",
    "WatchEventType",
]
