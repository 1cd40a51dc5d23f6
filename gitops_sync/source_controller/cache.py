"""Cache management for fetched sources."""

import hashlib
import tempfile
import logging
from pathlib import Path
from shutil import rmtree
from urllib.parse import urlparse

from slugify import slugify

from gitops_sync.exceptions import SourceException

_LOGGER = logging.getLogger(__name__)

__all__ = ["SourceCache"]

DEFAULT_CACHE_DIR = "gitops-sync-cache"


class SourceCache:
    """Cache manager for source repositories.

    The cache persists for the lifetime of the controller and stores fetched
    repositories in a dedicated directory with one entry per url, e.g.
    `<cache_dir>/deploy/ab1234567890abcdef`.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / DEFAULT_CACHE_DIR
        self._repos: dict[str, Path] = {}

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def _slugify_url(self, url: str) -> str:
        """Extract and slugify a repository name from a URL."""
        parsed = urlparse(url)
        path = parsed.path.rstrip("/")
        if path.endswith(".git"):
            path = path[:-4]
        slug = path.split("/")[-1]
        # SSH URLs (git@github.com:user/repo.git) have no scheme
        if parsed.scheme == "" and "@" in url and ":" in url:
            slug = url.rsplit(":", 1)[1].rstrip("/").split("/")[-1].removesuffix(".git")
        # OCI references carry a tag or digest after the repository name
        slug = slug.split("@")[0].split(":")[0]
        return slugify(slug, max_length=50, lowercase=True, separator="-") or "source"

    def get_repo_path(self, url: str) -> Path:
        """Get the local directory where the repository at url is cached."""
        if (path := self._repos.get(url)) is not None:
            return path
        cache_key = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
        cache_path = self._cache_dir / self._slugify_url(url) / cache_key
        try:
            cache_path.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise SourceException(
                f"Failed to create cache directory {cache_path}: {err}"
            ) from err
        self._repos[url] = cache_path
        return cache_path

    def remove(self, url: str) -> None:
        """Delete the cached content of a single repository."""
        if (path := self._repos.pop(url, None)) is not None and path.exists():
            _LOGGER.info("Removing cached repository: %s", path)
            rmtree(path, ignore_errors=True)

    def cleanup(self) -> None:
        """Clean up all cached repositories."""
        for url in list(self._repos):
            self.remove(url)
