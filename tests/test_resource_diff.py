"""Tests for the diff engine."""

import json
from typing import Any

import yaml

from gitops_sync.kinds import KindRegistry
from gitops_sync.manifest import NamedResource, ResourceDescriptor
from gitops_sync.resource_diff import (
    ChangeKind,
    DiffEngine,
    compare_fields,
    is_owned,
    normalize,
    perform_json_diff,
    perform_text_diff,
    perform_yaml_diff,
)

from .helpers import deployment, make_app

LABEL = "app.kubernetes.io/instance"


def _desired(doc: dict[str, Any], app: str = "web") -> ResourceDescriptor:
    return (
        ResourceDescriptor.parse_doc(doc)
        .with_namespace("default")
        .with_label(LABEL, app)
    )


def _live(desired: ResourceDescriptor, **changes: Any) -> dict[str, Any]:
    """Return the desired object as the cluster would report it."""
    obj = yaml.safe_load(yaml.dump(desired.payload))
    obj["metadata"].update(
        {"uid": "1234", "resourceVersion": "7", "generation": 2, "creationTimestamp": "x"}
    )
    obj["status"] = {"readyReplicas": 1}
    for key, value in changes.items():
        obj["spec"][key] = value
    return obj


def _service() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "web"},
        "spec": {"selector": {"app": "web"}, "ports": [{"port": 80}]},
    }


def _engine() -> DiffEngine:
    return DiffEngine(KindRegistry(), LABEL)


def test_modify_and_add() -> None:
    """Test a changed Deployment and a missing Service."""
    app = make_app("web", "file:///unused")
    web = _desired(deployment("web", replicas=2))
    svc = _desired(_service())
    observed = {web.resource_id: _live(web, replicas=1), svc.resource_id: None}

    record = _engine().diff(app, [web, svc], observed)

    assert [(c.change, c.resource_id) for c in record.changes] == [
        (ChangeKind.MODIFY, NamedResource("Deployment", "default", "web")),
        (ChangeKind.ADD, NamedResource("Service", "default", "web")),
    ]
    assert record.changes[0].field_diffs == ("spec.replicas: 1 -> 2",)
    assert not record.orphans
    assert not record.collisions


def test_in_sync_ignores_server_fields() -> None:
    """Test server assigned fields and defaults are not drift."""
    app = make_app("web", "file:///unused")
    svc = _desired(_service())
    live = _live(svc, clusterIP="10.96.0.10", sessionAffinity="None")
    live["metadata"]["annotations"] = {
        "kubectl.kubernetes.io/last-applied-configuration": "{}"
    }

    record = _engine().diff(app, [svc], {svc.resource_id: live})
    assert record.in_sync
    assert record.empty


def test_ignored_field_declared_in_desired() -> None:
    app = make_app("web", "file:///unused")
    doc = _service()
    doc["spec"]["clusterIP"] = "10.96.0.99"
    svc = _desired(doc)
    live = _live(svc, clusterIP="10.96.0.10")
    assert _engine().diff(app, [svc], {svc.resource_id: live}).in_sync


def test_unowned_collision() -> None:
    """Test a live object without the ownership label is never modified."""
    app = make_app("web", "file:///unused")
    web = _desired(deployment("web", replicas=2))
    live = _live(web, replicas=1)
    del live["metadata"]["labels"][LABEL]

    record = _engine().diff(app, [web], {web.resource_id: live})
    assert record.empty
    assert record.collisions == [web.resource_id]
    assert not record.in_sync


def test_owned_by_other_application() -> None:
    app = make_app("web", "file:///unused")
    web = _desired(deployment("web"))
    live = _live(web)
    live["metadata"]["labels"][LABEL] = "api"
    assert _engine().diff(app, [web], {web.resource_id: live}).collisions == [
        web.resource_id
    ]


def test_prune() -> None:
    """Test owned resources no longer desired are removed only with prune."""
    old = _desired(deployment("old"))
    owned = {old.resource_id: _live(old)}

    record = _engine().diff(make_app("web", "file:///unused", prune=True), [], {}, owned)
    assert [(c.change, c.resource_id) for c in record.changes] == [
        (ChangeKind.REMOVE, old.resource_id)
    ]
    assert record.changes[0].desired is None

    record = _engine().diff(make_app("web", "file:///unused"), [], {}, owned)
    assert record.empty
    assert record.orphans == [old.resource_id]


def test_prune_skips_unowned() -> None:
    other = _desired(deployment("other"), app="api")
    owned = {other.resource_id: _live(other)}
    record = _engine().diff(make_app("web", "file:///unused", prune=True), [], {}, owned)
    assert record.in_sync


def test_compare_fields() -> None:
    assert compare_fields({"a": {"b": 1}}, {"a": {"b": 1, "c": 2}}) == []
    assert compare_fields({"a": {"b": 1}}, {"a": {}}) == ["a.b: <unset> -> 1"]
    assert compare_fields({"a": [1, 2]}, {"a": [1]}) == ["a: [1] -> [1, 2]"]
    assert compare_fields({"a": [{"x": "1"}]}, {"a": [{"x": "2", "y": 0}]}) == [
        'a[0].x: "2" -> "1"'
    ]
    assert compare_fields({"example.com/key": "v"}, {}) == [
        'example\\.com/key: <unset> -> "v"'
    ]


def test_compare_quantities() -> None:
    """Test numbers match the canonical strings the API server returns."""
    desired = {"resources": {"limits": {"cpu": 0.5, "memory": "1Gi"}, "requests": {"cpu": 1}}}
    live = {
        "resources": {"limits": {"cpu": "500m", "memory": "1024Mi"}, "requests": {"cpu": "1"}}
    }
    assert compare_fields(desired, live) == []

    assert compare_fields({"resources": {"limits": {"cpu": 2}}}, live) == [
        'resources.limits.cpu: "500m" -> 2'
    ]
    assert compare_fields({"spec": {"port": 8080}}, {"spec": {"port": "8080"}}) == []
    # Quantity forms are only equivalent for resource fields
    assert compare_fields({"data": {"size": "1Gi"}}, {"data": {"size": "1024Mi"}}) == [
        'data.size: "1024Mi" -> "1Gi"'
    ]
    assert compare_fields({"data": {"flag": True}}, {"data": {"flag": "true"}}) == [
        'data.flag: "true" -> true'
    ]


def test_quantities_in_sync() -> None:
    """Test a Deployment with numeric resources is in sync with its served form."""
    doc = deployment("web")
    doc["spec"]["template"]["spec"]["containers"][0]["resources"] = {
        "requests": {"cpu": 0.25, "memory": 128974848}
    }
    desired = _desired(doc)
    live = _live(desired)
    live["spec"]["template"]["spec"]["containers"][0]["resources"] = {
        "requests": {"cpu": "250m", "memory": "123Mi"}
    }
    app = make_app("web", "file:///unused")
    record = _engine().diff(app, [desired], {desired.resource_id: live})
    assert record.in_sync


def test_normalize() -> None:
    payload = {
        "metadata": {"name": "x", "uid": "1", "annotations": {"a.b/c": "d"}},
        "status": {},
    }
    result = normalize(payload, ["metadata.uid", "status", r"metadata.annotations.a\.b/c"])
    assert result == {"metadata": {"name": "x"}}
    assert payload["metadata"]["uid"] == "1"


def test_is_owned() -> None:
    assert is_owned({"metadata": {"labels": {LABEL: "web"}}}, LABEL, "web")
    assert not is_owned({"metadata": {}}, LABEL, "web")
    assert not is_owned(None, LABEL, "web")


def test_text_diff() -> None:
    app = make_app("web", "file:///unused")
    web = _desired(deployment("web", replicas=2))
    record = _engine().diff(app, [web], {web.resource_id: _live(web, replicas=1)})

    text = "".join(perform_text_diff(record))
    assert text.startswith("Modify Deployment/default/web\n  spec.replicas: 1 -> 2\n")
    assert "-  replicas: 1\n" in text
    assert "+  replicas: 2\n" in text
    # Fields only present on the live object are not shown
    assert "readyReplicas" not in text
    assert "uid" not in text

    truncated = record.changes[0].text_diff(limit_bytes=20)
    assert truncated.endswith("[Diff truncated by gitops-sync]")


def test_structured_diff() -> None:
    app = make_app("web", "file:///unused", prune=False)
    web = _desired(deployment("web", replicas=2))
    old = _desired(deployment("old"))
    record = _engine().diff(app, [web], {web.resource_id: None}, {old.resource_id: _live(old)})

    (obj,) = json.loads("".join(perform_json_diff(record)))
    assert obj["kind"] == "Deployment"
    assert obj["namespace"] == "default"
    assert obj["name"] == "web"
    assert obj["change"] == "Add"
    assert "+  replicas: 2" in obj["diff"]

    (doc,) = yaml.safe_load("".join(perform_yaml_diff(record)))
    assert doc["change"] == "Add"

    assert "PruneSkipped Deployment/default/old\n" in list(perform_text_diff(record))
