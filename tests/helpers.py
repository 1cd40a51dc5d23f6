"""Helpers for building Applications, sources and manifests in tests."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import git
import yaml

from gitops_sync.manifest import (
    Application,
    ApplicationDestination,
    ApplicationSource,
    SyncPolicy,
)

_ACTOR = git.Actor("Test", "test@example.com")


class GitSource:
    """A local git repository used as the source of Applications."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.repo = git.Repo.init(str(path), initial_branch="main")

    @property
    def url(self) -> str:
        return f"file://{self.path}"

    def write(self, name: str, content: str | list[dict[str, Any]]) -> None:
        if not isinstance(content, str):
            content = yaml.dump_all(content, sort_keys=False)
        target = self.path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)

    def remove(self, name: str) -> None:
        (self.path / name).unlink()

    def commit(self, message: str = "update") -> str:
        """Commit all files, returning the commit sha."""
        self.repo.git.add("--all")
        commit = self.repo.index.commit(message, author=_ACTOR, committer=_ACTOR)
        return commit.hexsha

    def tag(self, name: str) -> None:
        self.repo.create_tag(name)


def config_map(name: str, data: dict[str, str], namespace: str | None = None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data}


def deployment(name: str, replicas: int = 1, image: str = "nginx:1.25") -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": image}]},
            },
        },
    }


def make_app(
    name: str,
    repo_url: str,
    path: str = ".",
    namespace: str = "default",
    automated: bool = False,
    prune: bool = False,
    self_heal: bool = False,
    **source: Any,
) -> Application:
    return Application(
        name=name,
        source=ApplicationSource(repo_url=repo_url, path=path, **source),
        destination=ApplicationDestination(namespace=namespace),
        sync_policy=SyncPolicy(automated=automated, prune=prune, self_heal=self_heal),
    )


@dataclass
class FakeSleep:
    """Records requested delays without sleeping."""

    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


