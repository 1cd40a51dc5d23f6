"""OCI artifact sources pulled with oras.

The revision of an OCI source is the tag or digest of its reference, e.g.
`oci://ghcr.io/example/deploy:v1.2.0` resolves to `v1.2.0` without contacting
the registry.
"""

import logging
from pathlib import Path

from oras.client import OrasClient

from gitops_sync.exceptions import RevisionNotFound, SourceUnreachable
from gitops_sync.manifest import Revision

_LOGGER = logging.getLogger(__name__)

__all__ = ["OCI_SCHEME", "oci_revision", "pull_oci"]

OCI_SCHEME = "oci://"
DEFAULT_TAG = "latest"


def _split_reference(url: str, target_revision: str) -> tuple[str, str]:
    """Return the repository and the tag or digest of an OCI url."""
    target = url.removeprefix(OCI_SCHEME)
    if "@" in target:
        repository, digest = target.rsplit("@", 1)
        return repository, digest
    last = target.rsplit("/", 1)[-1]
    if ":" in last:
        repository, tag = target.rsplit(":", 1)
        return repository, tag
    if target_revision and target_revision != "HEAD":
        return target, target_revision
    return target, DEFAULT_TAG


def oci_revision(url: str, target_revision: str) -> Revision:
    """Return the Revision identifying the artifact referenced by url."""
    _, version = _split_reference(url, target_revision)
    return Revision(sha=version, ref=target_revision or None)


def _versioned_target(repository: str, version: str) -> str:
    if version.startswith("sha256:"):
        return f"{repository}@{version}"
    return f"{repository}:{version}"


def pull_oci(url: str, target_revision: str, outdir: Path) -> Path:
    """Pull the artifact into outdir, returning the directory of its content."""
    repository, version = _split_reference(url, target_revision)
    target = _versioned_target(repository, version)
    content_dir = outdir / version.replace(":", "-")
    if content_dir.exists() and any(content_dir.iterdir()):
        _LOGGER.debug("Reusing pulled OCI artifact %s", target)
        return content_dir
    content_dir.mkdir(parents=True, exist_ok=True)
    _LOGGER.info("Pulling OCI artifact %s", target)
    client = OrasClient()
    try:
        files = client.pull(target=target, outdir=str(content_dir))
    except ValueError as err:
        if "not found" in str(err).lower() or "404" in str(err):
            raise RevisionNotFound(url, version) from err
        raise SourceUnreachable(f"Unable to pull {target}: {err}") from err
    except OSError as err:
        raise SourceUnreachable(f"Unable to pull {target}: {err}") from err
    _LOGGER.debug("Downloaded resources: %s", files)
    return content_dir
