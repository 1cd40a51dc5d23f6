"""Representation of Applications and the resources they manage.

An Application names a desired-state source (a repository, a path and a
revision reference), a target (cluster and namespace) and a sync policy. The
rendered contents of a source are a list of ResourceDescriptor objects, each
identifying exactly one cluster object by its NamedResource.

Applications may be written in the Argo CD format:
```yaml
apiVersion: argoproj.io/v1alpha1
kind: Application
metadata:
  name: web
spec:
  source:
    repoURL: https://github.com/example/deploy.git
    path: apps/web
    targetRevision: main
  destination:
    name: in-cluster
    namespace: default
  syncPolicy:
    automated:
      prune: true
```
"""

import copy
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, ClassVar

import aiofiles
import yaml
from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "read_applications",
    "NamedResource",
    "ResourceDescriptor",
    "Application",
    "ApplicationSource",
    "ApplicationDestination",
    "SyncPolicy",
    "Revision",
    "ManifestBundle",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
APPLICATION_DOMAINS = ("argoproj.io", "gitops-sync.io")
APPLICATION_KIND = "Application"
DEFAULT_NAMESPACE = "gitops-sync"
DEFAULT_DESTINATION_NAMESPACE = "default"
IN_CLUSTER = "in-cluster"
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"
LIST_KIND = "List"

RENDERER_DIRECTORY = "directory"
RENDERER_KUSTOMIZE = "kustomize"
RENDERER_HELM = "helm"
RENDERERS = (RENDERER_DIRECTORY, RENDERER_KUSTOMIZE, RENDERER_HELM)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def compact_dict(self) -> dict[str, Any]:
        """Return a compact dictionary representation of the object."""
        return self.to_dict()

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        """Return the identity of a raw kubernetes object."""
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        if not isinstance(metadata := doc.get("metadata"), dict):
            raise InputException(f"Invalid object missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        return cls(kind=kind, namespace=metadata.get("namespace"), name=name)


@dataclass(frozen=True)
class ResourceDescriptor:
    """A cluster object identity plus its desired or observed configuration."""

    resource_id: NamedResource
    payload: dict[str, Any] = field(compare=True, hash=False)

    @property
    def kind(self) -> str:
        return self.resource_id.kind

    @property
    def api_version(self) -> str:
        return str(self.payload.get("apiVersion", ""))

    @property
    def labels(self) -> dict[str, str]:
        return self.payload.get("metadata", {}).get("labels") or {}

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ResourceDescriptor":
        """Parse a ResourceDescriptor from a raw kubernetes object."""
        if not doc.get("apiVersion"):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        return cls(resource_id=NamedResource.from_doc(doc), payload=doc)

    def with_namespace(self, namespace: str | None) -> "ResourceDescriptor":
        """Return a copy placed in the specified namespace (None if cluster scoped)."""
        payload = copy.deepcopy(self.payload)
        metadata = payload.setdefault("metadata", {})
        if namespace is None:
            metadata.pop("namespace", None)
        else:
            metadata["namespace"] = namespace
        return ResourceDescriptor(
            resource_id=NamedResource(self.kind, namespace, self.resource_id.name),
            payload=payload,
        )

    def with_label(self, key: str, value: str) -> "ResourceDescriptor":
        """Return a copy with the label set."""
        payload = copy.deepcopy(self.payload)
        metadata = payload.setdefault("metadata", {})
        labels = metadata.get("labels") or {}
        labels[key] = value
        metadata["labels"] = labels
        return ResourceDescriptor(resource_id=self.resource_id, payload=payload)

    def canonical_yaml(self) -> str:
        """Return a deterministic YAML serialization of the payload."""
        return yaml.dump(self.payload, sort_keys=True, default_flow_style=False)


@dataclass
class SyncPolicy(BaseManifest):
    """How changes in the source are applied to the cluster."""

    automated: bool = False
    """Reconcile on every poll interval and revision notification."""

    prune: bool = False
    """Delete owned resources that are no longer present in the source."""

    self_heal: bool = False
    """Re-sync an automated Application when live state drifts."""


@dataclass
class ApplicationSource(BaseManifest):
    """Location of the desired state for an Application."""

    repo_url: str
    """URL of the git repository (or oci:// / file:// location)."""

    path: str = "."
    """Directory inside the repository holding the manifests."""

    target_revision: str = "HEAD"
    """Branch, tag, commit sha or HEAD."""

    renderer: str = RENDERER_DIRECTORY
    """How the bundle is expanded: directory, kustomize or helm."""

    parameters: dict[str, str] = field(default_factory=dict)
    """Key-value overlay used when rendering."""

    recurse: bool = True
    """Read manifests in subdirectories of the path (directory renderer)."""

    release_name: str | None = None
    """Release name passed to the helm renderer, defaults to the Application name."""


@dataclass
class ApplicationDestination(BaseManifest):
    """Target cluster and namespace for an Application."""

    cluster: str = IN_CLUSTER
    """Name of the destination cluster."""

    namespace: str = DEFAULT_DESTINATION_NAMESPACE
    """Namespace for resources that don't specify one."""


def _parse_parameters(value: Any) -> dict[str, str]:
    """Parse parameters given as a mapping or a list of name/value pairs."""
    if not value:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, list):
        result: dict[str, str] = {}
        for item in value:
            if not isinstance(item, dict) or "name" not in item:
                raise InputException(f"Invalid parameter, expected name/value: {item}")
            result[str(item["name"])] = str(item.get("value", ""))
        return result
    raise InputException(f"Invalid parameters, expected mapping or list: {value}")


@dataclass
class Application(BaseManifest):
    """A desired-state source deployed to a target with a sync policy."""

    kind: ClassVar[str] = APPLICATION_KIND
    """The kind of the object."""

    name: str
    """The name of the Application, unique per controller."""

    source: ApplicationSource
    """Where the desired state is read from."""

    destination: ApplicationDestination = field(
        default_factory=ApplicationDestination
    )
    """Where the desired state is applied."""

    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    """How the desired state is applied."""

    namespace: str = DEFAULT_NAMESPACE
    """The namespace the Application object itself lives in."""

    @property
    def namespaced_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Application":
        """Parse an Application from a raw kubernetes object."""
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not api_version.startswith(APPLICATION_DOMAINS):
            raise InputException(
                f"Invalid object expected one of '{APPLICATION_DOMAINS}': {doc}"
            )
        if doc.get("kind") != APPLICATION_KIND:
            raise InputException(f"Invalid object expected {APPLICATION_KIND}: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls.__name__} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls.__name__} missing metadata.name: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        if not (source := spec.get("source")):
            raise InputException(f"Invalid {cls.__name__} missing spec.source: {doc}")
        if not (repo_url := source.get("repoURL")):
            raise InputException(
                f"Invalid {cls.__name__} missing spec.source.repoURL: {doc}"
            )

        renderer = RENDERER_DIRECTORY
        parameters = _parse_parameters(source.get("parameters"))
        recurse = True
        release_name = None
        if (helm := source.get("helm")) is not None:
            renderer = RENDERER_HELM
            parameters.update(_parse_parameters(helm.get("parameters")))
            release_name = helm.get("releaseName")
        elif (kustomize := source.get("kustomize")) is not None:
            renderer = RENDERER_KUSTOMIZE
            parameters.update(_parse_parameters(kustomize.get("parameters")))
        elif (directory := source.get("directory")) is not None:
            recurse = bool(directory.get("recurse", True))

        destination = spec.get("destination") or {}
        cluster = destination.get("name")
        if not cluster:
            server = destination.get("server")
            cluster = IN_CLUSTER if server in (None, IN_CLUSTER_SERVER) else server

        sync_policy = SyncPolicy()
        if (policy := spec.get("syncPolicy")) and "automated" in policy:
            automated = policy.get("automated") or {}
            sync_policy = SyncPolicy(
                automated=True,
                prune=bool(automated.get("prune", False)),
                self_heal=bool(automated.get("selfHeal", False)),
            )
        elif policy and policy.get("prune"):
            sync_policy = SyncPolicy(prune=True)

        return cls(
            name=name,
            namespace=metadata.get("namespace", DEFAULT_NAMESPACE),
            source=ApplicationSource(
                repo_url=repo_url,
                path=source.get("path") or ".",
                target_revision=source.get("targetRevision") or "HEAD",
                renderer=renderer,
                parameters=parameters,
                recurse=recurse,
                release_name=release_name,
            ),
            destination=ApplicationDestination(
                cluster=cluster,
                namespace=destination.get("namespace")
                or DEFAULT_DESTINATION_NAMESPACE,
            ),
            sync_policy=sync_policy,
        )


@dataclass(frozen=True)
class Revision:
    """An immutable snapshot identifier of a desired-state source."""

    sha: str
    """The commit hash (or content digest) of the snapshot."""

    ref: str | None = None
    """The reference that was resolved to produce this revision."""

    @property
    def short(self) -> str:
        return self.sha[:12]

    def __str__(self) -> str:
        if self.ref:
            return f"{self.ref}@{self.short}"
        return self.short


@dataclass(frozen=True)
class ManifestBundle:
    """The manifests of an Application path at a specific revision."""

    revision: Revision
    """The revision the bundle was read from."""

    root: Path
    """Local directory holding the Application path."""

    files: tuple[str, ...] = ()
    """Manifest files relative to the root, sorted."""


def list_manifest_files(root: Path, recurse: bool = True) -> tuple[str, ...]:
    """Return the sorted manifest files under root, skipping hidden paths."""
    if not root.is_dir():
        return ()
    candidates = root.rglob("*") if recurse else root.iterdir()
    return tuple(
        sorted(
            path.relative_to(root).as_posix()
            for path in candidates
            if path.is_file()
            and path.suffix.lower() in MANIFEST_SUFFIXES
            and not any(part.startswith(".") for part in path.relative_to(root).parts)
        )
    )


async def _read_file(path: Path) -> str:
    async with aiofiles.open(str(path), encoding="utf-8") as manifest_file:
        return await manifest_file.read()


async def read_applications(path: Path) -> list[Application]:
    """Return all Application objects defined in a file or directory."""
    if path.is_dir():
        files = [path / name for name in list_manifest_files(path, recurse=True)]
    elif path.exists():
        files = [path]
    else:
        raise InputException(f"Application path does not exist: {path}")

    apps: list[Application] = []
    for app_file in files:
        try:
            content = await _read_file(app_file)
        except (OSError, UnicodeDecodeError) as err:
            raise InputException(f"Unable to read {app_file}: {err}") from err
        try:
            docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            raise InputException(f"Invalid YAML in file {app_file}: {err}") from err
        for doc in docs:
            if not isinstance(doc, dict) or doc.get("kind") != APPLICATION_KIND:
                _LOGGER.debug("Skipping non-Application document in %s", app_file)
                continue
            apps.append(Application.parse_doc(doc))

    names = [app.name for app in apps]
    if duplicates := sorted({name for name in names if names.count(name) > 1}):
        raise InputException(f"Duplicate Application names in {path}: {duplicates}")
    return apps
