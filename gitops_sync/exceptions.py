"""Exceptions related to gitops-sync."""

from typing import ClassVar

__all__ = [
    "GitOpsException",
    "InputException",
    "CommandException",
    "SourceUnreachable",
    "RevisionNotFound",
    "RenderError",
    "ClusterException",
    "ClusterUnreachable",
    "RateLimited",
    "PermissionDenied",
    "ApplyConflict",
    "SyncTimeout",
    "SyncCancelled",
    "ApplicationNotFound",
]


class GitOpsException(Exception):
    """Generic base exception used for this library."""


class InputException(GitOpsException):
    """Raised when the input files or values are not formatted as expected."""


class CommandException(GitOpsException):
    """Raised when there is a failure running a subcommand."""


class SourceException(GitOpsException):
    """Base class for failures reading from a source repository."""


class SourceUnreachable(SourceException):
    """Raised on network or authentication failures talking to a source repository."""


class RevisionNotFound(SourceException):
    """Raised when a revision reference does not resolve in the source repository."""

    def __init__(self, repo_url: str, revision: str) -> None:
        super().__init__(f"Revision '{revision}' not found in {repo_url}")
        self.repo_url = repo_url
        self.revision = revision


class RenderError(CommandException):
    """Raised when manifests can't be rendered from a bundle.

    Any partially rendered output is discarded.
    """


class ClusterException(GitOpsException):
    """Base class for errors returned by the cluster API."""

    transient: ClassVar[bool] = False
    """Whether the operation may succeed if retried."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ClusterUnreachable(ClusterException):
    """Raised when the cluster API can't be reached or returns a server error."""

    transient = True


class RateLimited(ClusterException):
    """Raised when the cluster API signals backpressure (e.g. HTTP 429)."""

    transient = True


class PermissionDenied(ClusterException):
    """Raised when the credentials are not allowed to perform the operation."""


class ApplyConflict(ClusterException):
    """Raised when a concurrent external mutation of a resource is detected."""


class SyncTimeout(GitOpsException):
    """Raised when a reconciliation cycle exceeds its deadline."""


class SyncCancelled(GitOpsException):
    """Raised when an in-flight reconciliation cycle has been cancelled."""


class ApplicationNotFound(GitOpsException):
    """Raised when an Application is not known to the store."""
