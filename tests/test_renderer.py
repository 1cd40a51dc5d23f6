"""Tests for the manifest renderer."""

from pathlib import Path

import pytest

from gitops_sync.exceptions import RenderError
from gitops_sync.manifest import (
    ManifestBundle,
    NamedResource,
    Revision,
    list_manifest_files,
)
from gitops_sync.renderer import ManifestRenderer, substitute

from .helpers import make_app

REVISION = Revision(sha="a" * 40, ref="main")


def _bundle(root: Path) -> ManifestBundle:
    return ManifestBundle(revision=REVISION, root=root, files=list_manifest_files(root))


def test_substitute() -> None:
    content = "a: ${A}\nb: ${B:=two}\nc: ${C:-three}\nd: $${D}\n"
    assert substitute(content, {"A": "one", "C": "x"}) == "a: one\nb: two\nc: x\nd: ${D}\n"


def test_substitute_missing() -> None:
    with pytest.raises(RenderError, match="Missing required parameters: A, B"):
        substitute("${B} ${A} ${A}", {})


async def test_render_directory(tmp_path: Path) -> None:
    """Test rendering places resources and expands parameters."""
    (tmp_path / "base").mkdir()
    (tmp_path / "base" / "ns.yaml").write_text(
        "apiVersion: v1\nkind: Namespace\nmetadata:\n  name: web\n  namespace: ignored\n"
    )
    (tmp_path / "config.yaml").write_text(
        """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: web-config
data:
  color: ${COLOR}
---
apiVersion: v1
kind: List
items:
- apiVersion: v1
  kind: Secret
  metadata:
    name: web-secret
    namespace: other
"""
    )
    app = make_app("web", "file:///unused", namespace="web", parameters={"COLOR": "blue"})
    resources = await ManifestRenderer().render(_bundle(tmp_path), app)

    assert [r.resource_id for r in resources] == [
        NamedResource("Namespace", None, "web"),
        NamedResource("ConfigMap", "web", "web-config"),
        NamedResource("Secret", "other", "web-secret"),
    ]
    assert resources[1].payload["data"] == {"color": "blue"}
    assert "namespace" not in resources[0].payload["metadata"]


async def test_render_overlay(tmp_path: Path) -> None:
    (tmp_path / "config.yaml").write_text(
        "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: c\ndata:\n  v: ${V}\n"
    )
    app = make_app("web", "file:///unused", parameters={"V": "base"})
    resources = await ManifestRenderer().render(_bundle(tmp_path), app, {"V": "overlay"})
    assert resources[0].payload["data"] == {"v": "overlay"}


async def test_render_is_deterministic(tmp_path: Path) -> None:
    for name in ["b", "a", "c"]:
        (tmp_path / f"{name}.yaml").write_text(
            f"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: {name}\n"
        )
    app = make_app("web", "file:///unused")
    first = await ManifestRenderer().render(_bundle(tmp_path), app)
    second = await ManifestRenderer().render(_bundle(tmp_path), app)
    assert first == second
    assert [r.resource_id.name for r in first] == ["a", "b", "c"]


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("a: [\n", "Invalid YAML"),
        ("- just\n- a list\n", "expected a mapping"),
        ("kind: ConfigMap\nmetadata:\n  name: x\n", "missing apiVersion"),
        ("apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n", "missing metadata.name"),
        (
            "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: x\n---\n"
            "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: x\n",
            "Duplicate resource ConfigMap/default/x",
        ),
        ("apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: ${NAME}\n", "NAME"),
    ],
)
async def test_render_errors(tmp_path: Path, content: str, match: str) -> None:
    (tmp_path / "bad.yaml").write_text(content)
    app = make_app("web", "file:///unused")
    with pytest.raises(RenderError, match=match):
        await ManifestRenderer().render(_bundle(tmp_path), app)


async def test_render_missing_path(tmp_path: Path) -> None:
    app = make_app("web", "file:///unused", path="missing")
    bundle = ManifestBundle(revision=REVISION, root=tmp_path / "missing")
    with pytest.raises(RenderError, match="path 'missing' not found"):
        await ManifestRenderer().render(bundle, app)


async def test_render_invalid_utf8(tmp_path: Path) -> None:
    (tmp_path / "binary.yaml").write_bytes(b"\xff\xfe kind: ConfigMap\n")
    app = make_app("web", "file:///unused")
    with pytest.raises(RenderError, match="Unable to read binary.yaml"):
        await ManifestRenderer().render(_bundle(tmp_path), app)


async def test_render_unknown_renderer(tmp_path: Path) -> None:
    app = make_app("web", "file:///unused", renderer="jsonnet")
    with pytest.raises(RenderError, match="Unknown renderer 'jsonnet'"):
        await ManifestRenderer().render(_bundle(tmp_path), app)


async def test_render_kustomize_not_installed(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test a missing renderer binary is reported as a render error."""
    monkeypatch.setattr("gitops_sync.renderer.KUSTOMIZE_BIN", "kustomize-does-not-exist")
    app = make_app("web", "file:///unused", renderer="kustomize")
    with pytest.raises(RenderError, match="not found"):
        await ManifestRenderer().render(_bundle(tmp_path), app)
