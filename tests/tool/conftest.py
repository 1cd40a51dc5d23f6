"""Fixtures for command line tests."""

from pathlib import Path
from typing import Any

import pytest
import yaml

from ..helpers import GitSource


def application(
    name: str, repo_url: str, namespace: str = "default", prune: bool = True, **source: Any
) -> dict[str, Any]:
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {"name": name},
        "spec": {
            "source": {"repoURL": repo_url, "path": "apps/web", **source},
            "destination": {"namespace": namespace},
            "syncPolicy": {"automated": {"prune": prune}},
        },
    }


@pytest.fixture(name="apps_file")
def apps_file_fixture(tmp_path: Path, git_source: GitSource) -> Path:
    """A file defining the web and staging Applications."""
    path = tmp_path / "apps.yaml"
    path.write_text(
        yaml.dump_all(
            [
                application("web", git_source.url),
                application("staging", git_source.url, namespace="staging"),
            ]
        )
    )
    return path


@pytest.fixture(name="cache_dir")
def cache_dir_fixture(tmp_path: Path) -> str:
    return str(tmp_path / "cache")
