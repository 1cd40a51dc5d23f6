"""Tests for the source fetcher."""

from pathlib import Path

import pytest

from gitops_sync.exceptions import InputException, RevisionNotFound, SourceUnreachable
from gitops_sync.manifest import ApplicationSource
from gitops_sync.source_controller import SourceCache, SourceFetcher
from gitops_sync.source_controller.oci import oci_revision

from ..helpers import GitSource, config_map


def _source(url: str, path: str = "apps/web", revision: str = "HEAD") -> ApplicationSource:
    return ApplicationSource(repo_url=url, path=path, target_revision=revision)


async def test_fetch_head(fetcher: SourceFetcher, git_source: GitSource) -> None:
    """Test the default branch is checked out and the bundle reused while unchanged."""
    source = _source(git_source.url)
    bundle = await fetcher.fetch(source)

    assert bundle.revision.sha == git_source.repo.head.commit.hexsha
    assert bundle.revision.ref == "HEAD"
    assert bundle.files == ("config.yaml",)
    assert (bundle.root / "config.yaml").read_text().startswith("apiVersion: v1")
    assert fetcher.last_revision(source) == bundle.revision

    assert await fetcher.fetch(source) is bundle


async def test_fetch_new_revision(fetcher: SourceFetcher, git_source: GitSource) -> None:
    source = _source(git_source.url)
    first = await fetcher.fetch(source)
    git_source.write("apps/web/extra.yaml", [config_map("extra", {})])
    sha = git_source.commit("add extra")

    bundle = await fetcher.fetch(source)

    assert bundle.revision.sha == sha
    assert bundle.files == ("config.yaml", "extra.yaml")
    # The previous revision is still readable from its own checkout
    assert first.root != bundle.root
    assert first.files == ("config.yaml",)
    assert not (first.root / "extra.yaml").exists()


async def test_old_worktrees_removed(
    fetcher: SourceFetcher, git_source: GitSource
) -> None:
    """Test only the current and the previous checkout are kept on disk."""
    source = _source(git_source.url)
    bundles = [await fetcher.fetch(source)]
    for i in range(4):
        git_source.write(f"apps/web/extra{i}.yaml", [config_map(f"extra{i}", {})])
        git_source.commit(f"add extra{i}")
        bundles.append(await fetcher.fetch(source))

    worktrees = bundles[-1].root.parents[2]
    assert sorted(p.name for p in worktrees.iterdir()) == sorted(
        b.revision.sha for b in bundles[-2:]
    )
    assert bundles[-2].root.exists()
    assert not bundles[0].root.exists()


async def test_branch_and_tag(fetcher: SourceFetcher, git_source: GitSource) -> None:
    initial = git_source.repo.head.commit.hexsha
    git_source.tag("v1")
    git_source.repo.create_head("release")
    git_source.write("apps/web/extra.yaml", [config_map("extra", {})])
    head = git_source.commit("add extra")

    assert (await fetcher.resolve_revision(_source(git_source.url, revision="v1"))).sha == initial
    assert (
        await fetcher.resolve_revision(_source(git_source.url, revision="release"))
    ).sha == initial
    assert (await fetcher.resolve_revision(_source(git_source.url, revision="main"))).sha == head

    bundle = await fetcher.fetch(_source(git_source.url, revision="v1"))
    assert bundle.files == ("config.yaml",)


async def test_commit_sha(fetcher: SourceFetcher, git_source: GitSource) -> None:
    """Test full and abbreviated commit hashes are checked out."""
    initial = git_source.repo.head.commit.hexsha
    git_source.write("apps/web/extra.yaml", [config_map("extra", {})])
    git_source.commit("add extra")

    bundle = await fetcher.fetch(_source(git_source.url, revision=initial))
    assert bundle.revision.sha == initial
    assert bundle.files == ("config.yaml",)

    revision = await fetcher.resolve_revision(_source(git_source.url, revision=initial[:10]))
    assert revision.sha == initial


async def test_revision_not_found(fetcher: SourceFetcher, git_source: GitSource) -> None:
    with pytest.raises(RevisionNotFound):
        await fetcher.fetch(_source(git_source.url, revision="does-not-exist"))


async def test_source_unreachable(fetcher: SourceFetcher, tmp_path: Path) -> None:
    with pytest.raises(SourceUnreachable):
        await fetcher.fetch(_source(f"file://{tmp_path}/missing"))


async def test_path_outside_repository(fetcher: SourceFetcher, git_source: GitSource) -> None:
    with pytest.raises(InputException, match="outside of the repository"):
        await fetcher.fetch(_source(git_source.url, path="../.."))


async def test_local_directory(fetcher: SourceFetcher, tmp_path: Path) -> None:
    """Test a plain directory is read in place with a content revision."""
    root = tmp_path / "local"
    (root / "apps").mkdir(parents=True)
    (root / "apps" / "config.yaml").write_text("apiVersion: v1\n")
    source = _source(str(root), path="apps")

    bundle = await fetcher.fetch(source)
    assert bundle.revision.ref == "local"
    assert bundle.root == (root / "apps").resolve()
    assert bundle.files == ("config.yaml",)
    assert (await fetcher.resolve_revision(source)) == bundle.revision

    (root / "apps" / "config.yaml").write_text("apiVersion: v2\n")
    changed = await fetcher.fetch(source)
    assert changed.revision.sha != bundle.revision.sha


async def test_invalidate(fetcher: SourceFetcher, git_source: GitSource) -> None:
    source = _source(git_source.url)
    bundle = await fetcher.fetch(source)
    fetcher.invalidate(git_source.url)
    assert fetcher.last_revision(source) is None
    refetched = await fetcher.fetch(source)
    assert refetched is not bundle
    assert refetched.revision == bundle.revision


@pytest.mark.parametrize(
    ("url", "target", "expected"),
    [
        ("oci://ghcr.io/example/deploy:v1.2.0", "HEAD", "v1.2.0"),
        ("oci://ghcr.io/example/deploy@sha256:abcd", "HEAD", "sha256:abcd"),
        ("oci://ghcr.io/example/deploy", "v2", "v2"),
        ("oci://ghcr.io/example/deploy", "HEAD", "latest"),
        ("oci://localhost:5000/deploy", "", "latest"),
    ],
)
def test_oci_revision(url: str, target: str, expected: str) -> None:
    assert oci_revision(url, target).sha == expected


def test_cache_paths(tmp_path: Path) -> None:
    cache = SourceCache(tmp_path)
    path = cache.get_repo_path("https://github.com/example/Deploy.git")
    assert path.parent.name == "deploy"
    assert path.is_dir()
    assert cache.get_repo_path("https://github.com/example/Deploy.git") == path
    assert cache.get_repo_path("git@github.com:example/deploy.git") != path
    assert cache.get_repo_path("oci://ghcr.io/example/charts:1.0").parent.name == "charts"

    cache.cleanup()
    assert not path.exists()
