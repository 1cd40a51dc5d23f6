"""Registry of per-kind behavior for diffing and applying resources.

Each resource kind maps to a KindSpec with:
  - the apply priority: lower priorities are applied first so that namespaces
    and custom resource definitions exist before the resources that reference
    them, and removed last.
  - whether the kind is namespaced.
  - the fields the cluster mutates out-of-band, ignored when diffing.

Unknown kinds are namespaced, have priority 0 and only use the common ignore
fields. The registry can be extended without modifying the diff engine or the
sync executor:
```python
from gitops_sync.kinds import KindRegistry, KindSpec

registry = KindRegistry()
registry.register(KindSpec("Certificate", priority=2, ignore_fields=("spec.secretTemplate",)))
```
"""

from collections.abc import Iterable
from dataclasses import dataclass, replace
import logging
import re

from .manifest import NamedResource

__all__ = [
    "KindSpec",
    "KindRegistry",
    "split_field_path",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_PRIORITY = 0

# Field paths are dot separated, a literal dot in a key is escaped with a
# backslash (e.g. annotation names).
COMMON_IGNORE_FIELDS: tuple[str, ...] = (
    "metadata.uid",
    "metadata.resourceVersion",
    "metadata.generation",
    "metadata.creationTimestamp",
    "metadata.managedFields",
    "metadata.selfLink",
    r"metadata.annotations.kubectl\.kubernetes\.io/last-applied-configuration",
    "status",
)


@dataclass(frozen=True)
class KindSpec:
    """Behavior of a single resource kind."""

    kind: str
    """The resource kind e.g. Deployment."""

    priority: int = DEFAULT_PRIORITY
    """Apply order, lower values are applied first."""

    namespaced: bool = True
    """False for cluster scoped kinds."""

    ignore_fields: tuple[str, ...] = ()
    """Fields mutated by the cluster that are not compared, in addition to the common fields."""


DEFAULT_KINDS: tuple[KindSpec, ...] = (
    KindSpec("Namespace", priority=-10, namespaced=False),
    KindSpec("CustomResourceDefinition", priority=-9, namespaced=False),
    KindSpec("PriorityClass", priority=-8, namespaced=False),
    KindSpec("StorageClass", priority=-8, namespaced=False),
    KindSpec("ServiceAccount", priority=-5, ignore_fields=("secrets",)),
    KindSpec("ClusterRole", priority=-5, namespaced=False),
    KindSpec("Role", priority=-5),
    KindSpec("ClusterRoleBinding", priority=-4, namespaced=False),
    KindSpec("RoleBinding", priority=-4),
    KindSpec("ConfigMap", priority=-3),
    KindSpec("Secret", priority=-3),
    KindSpec("PersistentVolume", priority=-2, namespaced=False),
    KindSpec("PersistentVolumeClaim", priority=-2, ignore_fields=("spec.volumeName",)),
    KindSpec(
        "Service",
        priority=DEFAULT_PRIORITY,
        ignore_fields=("spec.clusterIP", "spec.clusterIPs"),
    ),
    KindSpec(
        "Deployment",
        priority=DEFAULT_PRIORITY,
        ignore_fields=(
            r"metadata.annotations.deployment\.kubernetes\.io/revision",
        ),
    ),
    KindSpec("StatefulSet", priority=DEFAULT_PRIORITY),
    KindSpec("DaemonSet", priority=DEFAULT_PRIORITY),
    KindSpec("Job", priority=DEFAULT_PRIORITY, ignore_fields=("spec.selector",)),
    KindSpec("CronJob", priority=DEFAULT_PRIORITY),
    KindSpec("HorizontalPodAutoscaler", priority=1),
    KindSpec("Ingress", priority=1),
    KindSpec("ServiceMonitor", priority=1),
    KindSpec("MutatingWebhookConfiguration", priority=2, namespaced=False),
    KindSpec("ValidatingWebhookConfiguration", priority=2, namespaced=False),
)


def split_field_path(path: str) -> list[str]:
    """Split a dotted field path into its keys, honoring escaped dots."""
    raw_parts = re.split(r"(?<!\\)\.", path)
    return [re.sub(r"\\(.)", r"\1", raw_part) for raw_part in raw_parts]


class KindRegistry:
    """Lookup of KindSpec by resource kind."""

    def __init__(
        self,
        specs: Iterable[KindSpec] = DEFAULT_KINDS,
        common_ignore_fields: Iterable[str] = COMMON_IGNORE_FIELDS,
    ) -> None:
        """Initialize KindRegistry."""
        self._specs: dict[str, KindSpec] = {}
        self._common_ignore_fields = tuple(common_ignore_fields)
        for spec in specs:
            self.register(spec)

    def register(self, spec: KindSpec) -> None:
        """Add or replace the behavior of a kind."""
        if spec.kind in self._specs:
            _LOGGER.debug("Replacing kind spec for %s", spec.kind)
        self._specs[spec.kind] = spec

    def update(
        self,
        kind: str,
        priority: int | None = None,
        namespaced: bool | None = None,
        ignore_fields: Iterable[str] = (),
    ) -> KindSpec:
        """Override individual attributes of a kind, extending its ignore fields."""
        spec = self.get(kind)
        changes: dict[str, object] = {}
        if priority is not None:
            changes["priority"] = priority
        if namespaced is not None:
            changes["namespaced"] = namespaced
        if extra := tuple(f for f in ignore_fields if f not in spec.ignore_fields):
            changes["ignore_fields"] = spec.ignore_fields + extra
        spec = replace(spec, **changes)  # type: ignore[arg-type]
        self.register(spec)
        return spec

    def get(self, kind: str) -> KindSpec:
        """Return the spec for the kind, or a default spec for unknown kinds."""
        if (spec := self._specs.get(kind)) is not None:
            return spec
        return KindSpec(kind)

    def kinds(self) -> list[str]:
        """Return all registered kinds in apply order."""
        return [
            spec.kind
            for spec in sorted(self._specs.values(), key=lambda s: (s.priority, s.kind))
        ]

    def priority(self, kind: str) -> int:
        return self.get(kind).priority

    def namespaced(self, kind: str) -> bool:
        return self.get(kind).namespaced

    def ignore_fields(self, kind: str) -> tuple[str, ...]:
        """Return the common and kind specific ignored field paths."""
        return self._common_ignore_fields + self.get(kind).ignore_fields

    def sort_key(self, resource_id: NamedResource) -> tuple[int, str, str, str]:
        """Return a key ordering resources for apply."""
        return (
            self.priority(resource_id.kind),
            resource_id.kind,
            resource_id.namespace or "",
            resource_id.name,
        )
