"""
gitops-sync reconciles Kubernetes clusters with Applications defined in git.

An Application names a source (a git repository, OCI artifact or local
directory at a target revision), a renderer producing Kubernetes objects
from it, a destination cluster and namespace, and a sync policy. The
controller repeatedly fetches, renders and diffs each Application against
the live cluster and applies the difference.
"""

__all__ = [
    "manifest",
    "config",
    "exceptions",
    "source_controller",
    "renderer",
    "cluster",
    "resource_diff",
    "sync_executor",
    "reconciler",
    "scheduler",
    "store",
    "orchestrator",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
