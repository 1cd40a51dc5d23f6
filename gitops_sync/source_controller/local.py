"""Sources read in place from a local directory that is not a git repository."""

import hashlib
import logging
from pathlib import Path
from urllib.parse import urlparse

from gitops_sync.exceptions import SourceUnreachable
from gitops_sync.manifest import Revision

_LOGGER = logging.getLogger(__name__)

__all__ = ["FILE_SCHEME", "local_path", "is_local_source", "content_revision"]

FILE_SCHEME = "file://"
LOCAL_REF = "local"


def local_path(url: str) -> Path:
    """Return the filesystem path of a file:// url or plain path."""
    if url.startswith(FILE_SCHEME):
        return Path(urlparse(url).path)
    return Path(url)


def _is_git_repo(path: Path) -> bool:
    return (path / ".git").exists() or (
        (path / "HEAD").is_file() and (path / "objects").is_dir()
    )


def is_local_source(url: str) -> bool:
    """Return True if url refers to a local directory that is not a git repository."""
    if "://" in url and not url.startswith(FILE_SCHEME):
        return False
    path = local_path(url)
    return path.is_dir() and not _is_git_repo(path)


def content_revision(url: str) -> Revision:
    """Return a Revision derived from the names and contents of all files."""
    root = local_path(url)
    if not root.is_dir():
        raise SourceUnreachable(f"Local source directory does not exist: {root}")
    digest = hashlib.sha256()
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        rel = path.relative_to(root)
        if any(part.startswith(".") for part in rel.parts):
            continue
        digest.update(rel.as_posix().encode("utf-8"))
        digest.update(b"\0")
        digest.update(path.read_bytes())
        digest.update(b"\0")
    sha = digest.hexdigest()[:40]
    _LOGGER.debug("Local source %s has content revision %s", root, sha[:12])
    return Revision(sha=sha, ref=LOCAL_REF)
