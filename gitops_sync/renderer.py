"""Manifest Renderer expanding a bundle into concrete resource descriptors.

Rendering is deterministic: the same bundle and overlay always produce the
same ordered sequence of ResourceDescriptor objects. Any failure raises
RenderError and no partial output is returned.

The `directory` renderer reads plain YAML and JSON documents and expands
placeholders from the overlay parameters:
  - `${NAME}` is replaced with the parameter value, and is an error when the
    parameter is not set.
  - `${NAME:=default}` and `${NAME:-default}` fall back to a default.
  - `$${NAME}` is left in the output as the literal `${NAME}`.

The `kustomize` and `helm` renderers run the respective command line tools.
"""

import logging
from pathlib import Path
import re
from typing import Any

import aiofiles
import yaml

from . import command
from .context import trace_context
from .exceptions import InputException, RenderError
from .kinds import KindRegistry
from .manifest import (
    LIST_KIND,
    RENDERER_DIRECTORY,
    RENDERER_HELM,
    RENDERER_KUSTOMIZE,
    Application,
    ManifestBundle,
    NamedResource,
    ResourceDescriptor,
)

__all__ = ["ManifestRenderer", "substitute"]

_LOGGER = logging.getLogger(__name__)

KUSTOMIZE_BIN = "kustomize"
HELM_BIN = "helm"

_PLACEHOLDER = re.compile(
    r"\$(?P<escape>\$)?\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::[=-](?P<default>[^}]*))?\}"
)


def substitute(content: str, parameters: dict[str, str]) -> str:
    """Expand placeholders in content, raising RenderError for missing parameters."""
    missing: set[str] = set()

    def replace(match: re.Match[str]) -> str:
        if match.group("escape"):
            return match.group(0)[1:]
        name = match.group("name")
        if name in parameters:
            return parameters[name]
        if (default := match.group("default")) is not None:
            return default
        missing.add(name)
        return match.group(0)

    result = _PLACEHOLDER.sub(replace, content)
    if missing:
        raise RenderError(f"Missing required parameters: {', '.join(sorted(missing))}")
    return result


def _parse_documents(content: str, origin: str) -> list[dict[str, Any]]:
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise RenderError(f"Invalid YAML in {origin}: {err}") from err
    result: list[dict[str, Any]] = []
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise RenderError(f"Invalid document in {origin}, expected a mapping: {doc}")
        if doc.get("kind") == LIST_KIND:
            items = doc.get("items") or []
            if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
                raise RenderError(f"Invalid List items in {origin}")
            result.extend(items)
            continue
        result.append(doc)
    return result


async def _read_file(path: Path) -> str:
    async with aiofiles.open(str(path), encoding="utf-8") as manifest_file:
        return await manifest_file.read()


class ManifestRenderer:
    """Expands the bundle of an Application into resource descriptors."""

    def __init__(self, registry: KindRegistry | None = None) -> None:
        """Initialize ManifestRenderer."""
        self._registry = registry or KindRegistry()

    async def render(
        self,
        bundle: ManifestBundle,
        app: Application,
        overlay: dict[str, str] | None = None,
    ) -> list[ResourceDescriptor]:
        """Render the bundle with the Application parameters and an extra overlay."""
        parameters = {**app.source.parameters, **(overlay or {})}
        if not bundle.root.is_dir():
            raise RenderError(
                f"Application {app.name} path '{app.source.path}' not found at {bundle.revision}"
            )
        renderer = app.source.renderer
        with trace_context(f"render {app.name} ({renderer})"):
            if renderer == RENDERER_DIRECTORY:
                docs = await self._render_directory(bundle, parameters)
            elif renderer == RENDERER_KUSTOMIZE:
                docs = await self._render_kustomize(bundle)
            elif renderer == RENDERER_HELM:
                docs = await self._render_helm(bundle, app, parameters)
            else:
                raise RenderError(f"Unknown renderer '{renderer}' for {app.name}")
            resources = self._finalize(docs, app)
        _LOGGER.debug(
            "Rendered %d resources for %s at %s", len(resources), app.name, bundle.revision
        )
        return resources

    async def _render_directory(
        self, bundle: ManifestBundle, parameters: dict[str, str]
    ) -> list[dict[str, Any]]:
        docs: list[dict[str, Any]] = []
        for name in bundle.files:
            try:
                content = await _read_file(bundle.root / name)
            except (OSError, UnicodeDecodeError) as err:
                raise RenderError(f"Unable to read {name}: {err}") from err
            docs.extend(_parse_documents(substitute(content, parameters), name))
        return docs

    async def _render_kustomize(self, bundle: ManifestBundle) -> list[dict[str, Any]]:
        cmd = command.Command(
            [KUSTOMIZE_BIN, "build", "."], cwd=bundle.root, exc=RenderError
        )
        return _parse_documents(await command.run(cmd), "kustomize build")

    async def _render_helm(
        self, bundle: ManifestBundle, app: Application, parameters: dict[str, str]
    ) -> list[dict[str, Any]]:
        args = [
            HELM_BIN,
            "template",
            app.source.release_name or app.name,
            str(bundle.root),
            "--namespace",
            app.destination.namespace,
            "--include-crds",
            "--skip-tests",
        ]
        for key in sorted(parameters):
            args.extend(["--set", f"{key}={parameters[key]}"])
        cmd = command.Command(args, exc=RenderError)
        return _parse_documents(await command.run(cmd), "helm template")

    def _finalize(
        self, docs: list[dict[str, Any]], app: Application
    ) -> list[ResourceDescriptor]:
        """Parse documents and assign namespaces, rejecting duplicate identities."""
        resources: list[ResourceDescriptor] = []
        seen: set[NamedResource] = set()
        for doc in docs:
            try:
                resource = ResourceDescriptor.parse_doc(doc)
            except InputException as err:
                raise RenderError(str(err)) from err
            if self._registry.namespaced(resource.kind):
                if not resource.resource_id.namespace:
                    resource = resource.with_namespace(app.destination.namespace)
            elif resource.resource_id.namespace is not None:
                resource = resource.with_namespace(None)
            if resource.resource_id in seen:
                raise RenderError(
                    f"Duplicate resource {resource.resource_id} rendered for {app.name}"
                )
            seen.add(resource.resource_id)
            resources.append(resource)
        return resources
