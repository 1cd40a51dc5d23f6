"""Shared fixtures for gitops-sync tests."""

from collections.abc import Generator
from pathlib import Path

import pytest

from gitops_sync.cluster import ClusterRegistry, InMemoryCluster
from gitops_sync.config import ControllerConfig, RetryConfig
from gitops_sync.source_controller import SourceCache, SourceFetcher
from gitops_sync.store import InMemoryStore
from gitops_sync.task import TaskService, task_service_context

from .helpers import FakeSleep, GitSource, config_map


@pytest.fixture(name="git_source")
def git_source_fixture(tmp_path: Path) -> GitSource:
    """A git repository with a single ConfigMap committed on main."""
    source = GitSource(tmp_path / "repo")
    source.write("apps/web/config.yaml", [config_map("web-config", {"color": "blue"})])
    source.commit("initial")
    return source


@pytest.fixture(name="config")
def config_fixture(tmp_path: Path) -> ControllerConfig:
    return ControllerConfig(
        concurrency=2,
        poll_interval=60.0,
        cycle_timeout=30.0,
        cache_dir=str(tmp_path / "cache"),
        retry=RetryConfig(max_attempts=3, base_delay=0.01, max_delay=0.05),
    )


@pytest.fixture(name="fetcher")
def fetcher_fixture(config: ControllerConfig) -> SourceFetcher:
    assert config.cache_dir
    return SourceFetcher(SourceCache(Path(config.cache_dir)))


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture(name="clusters")
def clusters_fixture(cluster: InMemoryCluster) -> ClusterRegistry:
    return ClusterRegistry.single(cluster)


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture(name="fake_sleep")
def fake_sleep_fixture() -> FakeSleep:
    return FakeSleep()


@pytest.fixture(name="task_service")
def task_service_fixture() -> Generator[TaskService, None, None]:
    with task_service_context() as service:
        yield service
