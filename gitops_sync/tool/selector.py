"""Shared flags and setup for gitops-sync commands."""

from argparse import Action, ArgumentParser, Namespace
import logging
import pathlib
from typing import Any

import yaml

from gitops_sync.cluster import ClusterClient, ClusterRegistry, InMemoryCluster
from gitops_sync.config import ControllerConfig, load_config
from gitops_sync.exceptions import InputException
from gitops_sync.manifest import IN_CLUSTER
from gitops_sync.orchestrator import LoadOptions, Orchestrator
from gitops_sync.store import InMemoryStore

_LOGGER = logging.getLogger(__name__)


class CsvAppendAction(Action):
    """Append comma separated values to the argument list."""

    def __call__(
        self,
        parser: ArgumentParser,
        namespace: Namespace,
        values: Any,
        option_string: str | None = None,
    ) -> None:
        result = getattr(namespace, self.dest) or []
        result.extend(value for value in values.split(",") if value)
        setattr(namespace, self.dest, result)


def add_selector_flags(args: ArgumentParser) -> None:
    """Add flags selecting the Application definitions."""
    args.add_argument(
        "path",
        help="File or directory with Application definitions",
        type=pathlib.Path,
    )
    args.add_argument(
        "--app",
        "-a",
        dest="apps",
        help="Only use the named Applications (comma separated, repeatable)",
        action=CsvAppendAction,
        default=None,
    )


def add_cluster_flags(args: ArgumentParser) -> None:
    """Add flags for the controller configuration and the target clusters."""
    args.add_argument(
        "--config",
        help="Controller configuration file",
        type=pathlib.Path,
        default=None,
    )
    args.add_argument(
        "--cache-dir",
        help="Directory for fetched sources, overrides the configuration",
        type=str,
        default=None,
    )
    args.add_argument(
        "--kube-context",
        help="Kubeconfig context of the in-cluster destination",
        type=str,
        default=None,
    )
    args.add_argument(
        "--dry-cluster",
        help="Use an in-memory cluster instead of a Kubernetes API server",
        action="store_true",
        default=False,
    )
    args.add_argument(
        "--seed",
        help="YAML file of live objects to load into the in-memory cluster",
        type=pathlib.Path,
        default=None,
    )


def build_config(config: pathlib.Path | None, cache_dir: str | None) -> ControllerConfig:
    result = load_config(config)
    if cache_dir:
        result.cache_dir = cache_dir
    return result


def seed_cluster(cluster: InMemoryCluster, seed: pathlib.Path) -> None:
    """Load the live objects in a YAML file into the in-memory cluster."""
    try:
        docs = list(yaml.safe_load_all(seed.read_text()))
    except FileNotFoundError as err:
        raise InputException(f"Seed file not found: {seed}") from err
    except yaml.YAMLError as err:
        raise InputException(f"Invalid YAML in seed file {seed}: {err}") from err
    for doc in docs:
        if not doc:
            continue
        if not isinstance(doc, dict):
            raise InputException(f"Seed file {seed} contains a non-object document")
        cluster.seed(doc)
    _LOGGER.debug("Seeded in-memory cluster with %d objects", len(cluster.objects()))


def build_clusters(
    dry_cluster: bool,
    seed: pathlib.Path | None,
    kube_context: str | None,
) -> ClusterRegistry:
    """Return the registry of destination clusters for the flags."""
    if dry_cluster or seed:
        cluster = InMemoryCluster()
        if seed:
            seed_cluster(cluster, seed)
        return ClusterRegistry.single(cluster)

    from gitops_sync.cluster.kubernetes import KubernetesCluster

    def _factory(name: str) -> ClusterClient:
        return KubernetesCluster(context=kube_context if name == IN_CLUSTER else name)

    return ClusterRegistry(factory=_factory)


async def build_orchestrator(
    path: pathlib.Path,
    apps: list[str] | None,
    config: pathlib.Path | None,
    cache_dir: str | None,
    kube_context: str | None,
    dry_cluster: bool,
    seed: pathlib.Path | None,
    **kwargs: Any,  # pylint: disable=unused-argument
) -> Orchestrator:
    """Create an Orchestrator from the command flags and load its Applications."""
    controller_config = build_config(config, cache_dir)
    orchestrator = Orchestrator(
        InMemoryStore(controller_config.history_limit),
        build_clusters(dry_cluster, seed, kube_context),
        controller_config,
    )
    await orchestrator.bootstrap(LoadOptions(path, names=apps))
    return orchestrator
