"""Module for computing the difference between desired and live resources.

A live object is compared on the fields the desired object declares, after
removing the fields the cluster mutates on its own (the ignore fields of the
kind registry). Fields only present in the live object, e.g. server defaults,
are not drift.

Live objects are only considered when they carry the ownership label of the
Application. A desired resource that collides with an unowned live object is
never part of the changes and is reported separately.
"""

from collections.abc import Callable, Generator, Iterable
import copy
from dataclasses import dataclass, field
from decimal import Decimal
import difflib
from enum import StrEnum
import json
import logging
from typing import Any

import yaml
from kubernetes.utils import parse_quantity

from .kinds import KindRegistry, split_field_path
from .manifest import Application, NamedResource, ResourceDescriptor

__all__ = [
    "ChangeKind",
    "ResourceChange",
    "DiffRecord",
    "DiffEngine",
    "is_owned",
    "normalize",
    "compare_fields",
    "perform_text_diff",
    "perform_yaml_diff",
    "perform_json_diff",
]

_LOGGER = logging.getLogger(__name__)

_TRUNCATE = "[Diff truncated by gitops-sync]"
_UNSET = "<unset>"
# Parents of fields holding resource quantities, e.g. resources.limits.cpu
_QUANTITY_FIELDS = frozenset({"resources", "capacity", "allocatable", "hard"})


class ChangeKind(StrEnum):
    """Kind of change needed to converge a resource."""

    ADD = "Add"
    MODIFY = "Modify"
    REMOVE = "Remove"


def is_owned(obj: dict[str, Any] | None, ownership_label: str, app_name: str) -> bool:
    """Return True if the live object carries the ownership label of the Application."""
    if not obj:
        return False
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return labels.get(ownership_label) == app_name


def _remove_path(obj: Any, keys: list[str]) -> None:
    if not isinstance(obj, dict) or not keys:
        return
    head, rest = keys[0], keys[1:]
    if head not in obj:
        return
    if not rest:
        del obj[head]
        return
    _remove_path(obj[head], rest)
    if obj[head] == {}:
        del obj[head]


def normalize(payload: dict[str, Any], ignore_fields: Iterable[str]) -> dict[str, Any]:
    """Return a copy of the payload without the ignored field paths."""
    result = copy.deepcopy(payload)
    for path in ignore_fields:
        _remove_path(result, split_field_path(path))
    return result


def _format(value: Any) -> str:
    if value is _UNSET:
        return _UNSET
    return json.dumps(value, sort_keys=True)


def _quantity(value: Any) -> Decimal | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return parse_quantity(str(value) if isinstance(value, float) else value)
    except (ValueError, ArithmeticError):
        return None


def _same_scalar(desired: Any, live: Any, path: str) -> bool:
    """Return True if the scalars are equal, reading numbers the way the API server does.

    The server returns resource quantities in canonical string form, so `1`
    matches `"1"` anywhere, and `0.5` matches `"500m"` under resource fields.
    """
    if desired == live:
        return True
    numeric = any(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in (desired, live)
    )
    if not numeric and not _QUANTITY_FIELDS.intersection(path.split(".")):
        return False
    if (quantity := _quantity(desired)) is None:
        return False
    return quantity == _quantity(live)


def _join(path: str, key: str) -> str:
    key = key.replace(".", "\\.")
    return f"{path}.{key}" if path else key


def compare_fields(desired: Any, live: Any, path: str = "") -> list[str]:
    """Compare the fields declared by desired against live.

    Maps are compared recursively on the desired keys and lists element-wise.
    Returns one entry per differing field, e.g. `spec.replicas: 1 -> 2`.
    """
    if isinstance(desired, dict) and isinstance(live, dict):
        diffs: list[str] = []
        for key in desired:
            child = _join(path, str(key))
            if key not in live:
                if desired[key] is None:
                    continue
                diffs.append(f"{child}: {_UNSET} -> {_format(desired[key])}")
                continue
            diffs.extend(compare_fields(desired[key], live[key], child))
        return diffs
    if isinstance(desired, list) and isinstance(live, list):
        if len(desired) != len(live):
            return [f"{path}: {_format(live)} -> {_format(desired)}"]
        diffs = []
        for index, (d_item, l_item) in enumerate(zip(desired, live)):
            diffs.extend(compare_fields(d_item, l_item, f"{path}[{index}]"))
        return diffs
    if not _same_scalar(desired, live, path):
        return [f"{path}: {_format(live)} -> {_format(desired)}"]
    return []


def _project(live: Any, desired: Any) -> Any:
    """Return the part of live that has the shape declared by desired."""
    if isinstance(desired, dict) and isinstance(live, dict):
        return {k: _project(live[k], v) for k, v in desired.items() if k in live}
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        return [_project(l_item, d_item) for l_item, d_item in zip(live, desired)]
    return live


def _dump(obj: dict[str, Any] | None) -> list[str]:
    if not obj:
        return []
    return yaml.dump(obj, sort_keys=True, default_flow_style=False).splitlines(
        keepends=True
    )


@dataclass(frozen=True)
class ResourceChange:
    """A single change needed to converge live state to the desired state."""

    resource_id: NamedResource
    change: ChangeKind
    desired: ResourceDescriptor | None = None
    """The desired resource, None for Remove."""

    live: dict[str, Any] | None = field(default=None, compare=False)
    """The normalized live object, None for Add."""

    field_diffs: tuple[str, ...] = ()
    """The differing fields of a Modify."""

    def text_diff(self, n: int = 3, limit_bytes: int = 0) -> str:
        """Return a unified diff of the live and desired content."""
        desired = self.desired.payload if self.desired else None
        live = self.live
        if live is not None and desired is not None:
            live = _project(live, desired)
        label = str(self.resource_id)
        lines = difflib.unified_diff(
            _dump(live), _dump(desired), fromfile=f"live {label}", tofile=f"desired {label}", n=n
        )
        result = "".join(lines)
        if limit_bytes and len(result) > limit_bytes:
            result = result[:limit_bytes] + "\n" + _TRUNCATE
        return result


@dataclass
class DiffRecord:
    """The changes computed for one Application in one cycle."""

    changes: list[ResourceChange] = field(default_factory=list)
    orphans: list[NamedResource] = field(default_factory=list)
    """Owned live resources no longer desired, left in place since prune is disabled."""

    collisions: list[NamedResource] = field(default_factory=list)
    """Desired resources whose live object is not owned by the Application."""

    @property
    def empty(self) -> bool:
        """True if there is nothing to apply or delete."""
        return not self.changes

    @property
    def in_sync(self) -> bool:
        """True if live state fully matches the desired state."""
        return not self.changes and not self.orphans and not self.collisions

    def by_kind(self, change: ChangeKind) -> list[ResourceChange]:
        return [c for c in self.changes if c.change == change]


class DiffEngine:
    """Computes the DiffRecord of an Application."""

    def __init__(self, registry: KindRegistry, ownership_label: str) -> None:
        """Initialize DiffEngine."""
        self._registry = registry
        self._ownership_label = ownership_label

    def _normalize(self, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        return normalize(payload, self._registry.ignore_fields(kind))

    def diff(
        self,
        app: Application,
        desired: list[ResourceDescriptor],
        observed: dict[NamedResource, dict[str, Any] | None],
        owned: dict[NamedResource, dict[str, Any]] | None = None,
    ) -> DiffRecord:
        """Compute the changes from observed live state to the desired resources.

        `observed` holds the live object (or None) for each desired resource,
        `owned` holds the live objects labeled as owned by the Application.
        """
        owned = owned or {}
        record = DiffRecord()
        desired_ids: set[NamedResource] = set()
        for resource in desired:
            rid = resource.resource_id
            desired_ids.add(rid)
            live = observed.get(rid)
            if live is None:
                live = owned.get(rid)
            if live is None:
                record.changes.append(ResourceChange(rid, ChangeKind.ADD, desired=resource))
                continue
            if not is_owned(live, self._ownership_label, app.name):
                _LOGGER.warning(
                    "Skipping %s for %s: live object is not owned by the application",
                    rid,
                    app.name,
                )
                record.collisions.append(rid)
                continue
            normalized_live = self._normalize(rid.kind, live)
            field_diffs = compare_fields(
                self._normalize(rid.kind, resource.payload), normalized_live
            )
            if field_diffs:
                record.changes.append(
                    ResourceChange(
                        rid,
                        ChangeKind.MODIFY,
                        desired=resource,
                        live=normalized_live,
                        field_diffs=tuple(field_diffs),
                    )
                )

        for rid in sorted(owned):
            if rid in desired_ids:
                continue
            live = owned[rid]
            if not is_owned(live, self._ownership_label, app.name):
                continue
            if app.sync_policy.prune:
                record.changes.append(
                    ResourceChange(
                        rid, ChangeKind.REMOVE, live=self._normalize(rid.kind, live)
                    )
                )
            else:
                record.orphans.append(rid)

        _LOGGER.debug(
            "Diff for %s: %d changes, %d orphans, %d collisions",
            app.name,
            len(record.changes),
            len(record.orphans),
            len(record.collisions),
        )
        return record


def perform_text_diff(
    record: DiffRecord, n: int = 3, limit_bytes: int = 0
) -> Generator[str, None, None]:
    """Generate a unified diff of every change in the record."""
    for change in record.changes:
        yield f"{change.change} {change.resource_id}\n"
        for line in change.field_diffs:
            yield f"  {line}\n"
        if diff_text := change.text_diff(n=n, limit_bytes=limit_bytes):
            yield diff_text if diff_text.endswith("\n") else diff_text + "\n"
    for rid in record.orphans:
        yield f"PruneSkipped {rid}\n"
    for rid in record.collisions:
        yield f"Skipped {rid} (not owned)\n"


def _diff_objects(record: DiffRecord, n: int, limit_bytes: int) -> list[dict[str, Any]]:
    diffs: list[dict[str, Any]] = []
    for change in record.changes:
        obj: dict[str, Any] = {
            "kind": change.resource_id.kind,
            "namespace": change.resource_id.namespace,
            "name": change.resource_id.name,
            "change": str(change.change),
        }
        if change.field_diffs:
            obj["fields"] = list(change.field_diffs)
        obj["diff"] = change.text_diff(n=n, limit_bytes=limit_bytes)
        diffs.append({k: v for k, v in obj.items() if v is not None})
    return diffs


def _perform_function_diff(
    record: DiffRecord,
    n: int,
    limit_bytes: int,
    diff_func: Callable[[list[dict[str, Any]]], str],
) -> Generator[str, None, None]:
    if diffs := _diff_objects(record, n, limit_bytes):
        yield diff_func(diffs)


def perform_yaml_diff(
    record: DiffRecord, n: int = 3, limit_bytes: int = 0
) -> Generator[str, None, None]:
    """Generate a YAML document describing every change."""

    def diff_func(diffs: list[dict[str, Any]]) -> str:
        return yaml.dump(diffs, sort_keys=False, explicit_start=True, default_style=None)

    yield from _perform_function_diff(record, n, limit_bytes, diff_func)


def perform_json_diff(
    record: DiffRecord, n: int = 3, limit_bytes: int = 0
) -> Generator[str, None, None]:
    """Generate a JSON document describing every change."""

    def diff_func(diffs: list[dict[str, Any]]) -> str:
        return json.dumps(diffs, sort_keys=False, indent=4)

    yield from _perform_function_diff(record, n, limit_bytes, diff_func)
