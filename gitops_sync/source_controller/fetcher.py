"""Source Fetcher returning the manifest bundle of an Application source.

The fetcher first resolves the target revision cheaply (`git ls-remote`, an
OCI reference or a content hash) and only materializes content when the
revision differs from the last one fetched for the same source. Operations on
the same repository are serialized with a lock, different repositories are
fetched concurrently.
"""

import asyncio
from collections import defaultdict
import logging
from pathlib import Path

from gitops_sync.context import trace_context
from gitops_sync.exceptions import InputException
from gitops_sync.manifest import (
    ApplicationSource,
    ManifestBundle,
    Revision,
    list_manifest_files,
)

from .cache import SourceCache
from .git import GitMirror
from .local import content_revision, is_local_source, local_path
from .oci import OCI_SCHEME, oci_revision, pull_oci

_LOGGER = logging.getLogger(__name__)

__all__ = ["SourceFetcher"]


def _bundle_root(checkout: Path, path: str) -> Path:
    root = (checkout / path).resolve()
    if not root.is_relative_to(checkout.resolve()):
        raise InputException(f"Source path '{path}' is outside of the repository")
    return root


class SourceFetcher:
    """Fetches and caches the desired-state bundles of Application sources."""

    def __init__(self, cache: SourceCache | None = None) -> None:
        """Initialize SourceFetcher."""
        self._cache = cache or SourceCache()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._mirrors: dict[str, GitMirror] = {}
        self._bundles: dict[tuple[str, str, str, bool], ManifestBundle] = {}
        self._retired: dict[tuple[str, str, str, bool], Revision] = {}

    def _mirror(self, url: str) -> GitMirror:
        if (mirror := self._mirrors.get(url)) is None:
            mirror = GitMirror(url, self._cache.get_repo_path(url))
            self._mirrors[url] = mirror
        return mirror

    async def resolve_revision(self, source: ApplicationSource) -> Revision:
        """Resolve the target revision of the source without fetching content.

        Raises SourceUnreachable or RevisionNotFound.
        """
        url = source.repo_url
        if url.startswith(OCI_SCHEME):
            return oci_revision(url, source.target_revision)
        if is_local_source(url):
            return await asyncio.to_thread(content_revision, url)
        return await asyncio.to_thread(
            self._mirror(url).resolve, source.target_revision
        )

    async def _materialize(self, source: ApplicationSource, revision: Revision) -> Path:
        url = source.repo_url
        if url.startswith(OCI_SCHEME):
            return await asyncio.to_thread(
                pull_oci, url, source.target_revision, self._cache.get_repo_path(url)
            )
        if is_local_source(url):
            return local_path(url)
        return await asyncio.to_thread(self._mirror(url).checkout, revision)

    def last_revision(self, source: ApplicationSource) -> Revision | None:
        """Return the revision of the last bundle fetched for the source."""
        if (bundle := self._bundles.get(self._key(source))) is not None:
            return bundle.revision
        return None

    def _key(self, source: ApplicationSource) -> tuple[str, str, str, bool]:
        return (source.repo_url, source.path, source.target_revision, source.recurse)

    async def fetch(self, source: ApplicationSource) -> ManifestBundle:
        """Return the manifest bundle of the source at its latest revision."""
        url = source.repo_url
        async with self._locks[url]:
            with trace_context(f"fetch {url}"):
                revision = await self.resolve_revision(source)
                key = self._key(source)
                if (bundle := self._bundles.get(key)) is not None and (
                    bundle.revision.sha == revision.sha
                ):
                    _LOGGER.debug("Source %s unchanged at %s", url, revision)
                    return bundle
                checkout = await self._materialize(source, revision)
                root = _bundle_root(checkout, source.path)
                files = await asyncio.to_thread(
                    list_manifest_files, root, source.recurse
                )
                bundle = ManifestBundle(revision=revision, root=root, files=files)
                _LOGGER.info(
                    "Fetched %s/%s at %s (%d files)", url, source.path, revision, len(files)
                )
                previous = self._bundles.get(key)
                self._bundles[key] = bundle
                if previous is not None and url in self._mirrors:
                    await self._retire(key, previous.revision)
                return bundle

    async def _retire(self, key: tuple[str, str, str, bool], revision: Revision) -> None:
        """Keep the checkout replaced for key and remove the one replaced before it.

        A cycle may still be reading the bundle just replaced, so one older
        checkout per source is kept. A checkout is only removed once no cached
        bundle of the repository uses it.
        """
        url = key[0]
        stale = self._retired.get(key)
        self._retired[key] = revision
        if stale is None or stale.sha == revision.sha:
            return
        in_use = {b.revision.sha for k, b in self._bundles.items() if k[0] == url}
        in_use |= {r.sha for k, r in self._retired.items() if k[0] == url}
        if stale.sha not in in_use:
            await asyncio.to_thread(self._mirror(url).remove_worktree, stale.sha)

    def invalidate(self, repo_url: str) -> None:
        """Forget the cached bundles of a repository so the next fetch re-reads it."""
        for key in [key for key in self._bundles if key[0] == repo_url]:
            del self._bundles[key]
        if repo_url.startswith(OCI_SCHEME):
            self._cache.remove(repo_url)

    def cleanup(self) -> None:
        """Remove all cached content."""
        self._bundles.clear()
        self._retired.clear()
        self._mirrors.clear()
        self._cache.cleanup()
