"""gitops-sync render action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import json
import logging
import sys
from typing import Any, cast

from gitops_sync.manifest import ResourceDescriptor

from . import selector

_LOGGER = logging.getLogger(__name__)


def _write(resources: list[ResourceDescriptor], output: str) -> None:
    if output == "name":
        for resource in resources:
            print(resource.resource_id)
    elif output == "json":
        json.dump([r.payload for r in resources], sys.stdout, indent=4)
        print()
    else:
        for resource in resources:
            print("---")
            print(resource.canonical_yaml(), end="")


class RenderAction:
    """Render the desired resources of Applications."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render the desired resources of Applications",
                description=(
                    "Fetch the source of each Application and print the resources "
                    "that a sync would apply, without contacting the cluster."
                ),
            ),
        )
        selector.add_selector_flags(args)
        selector.add_cluster_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["yaml", "json", "name"],
            default="yaml",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        output: str,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        orchestrator = await selector.build_orchestrator(**kwargs)
        resources: list[ResourceDescriptor] = []
        try:
            for app in orchestrator.store.list_applications():
                revision, rendered = await orchestrator.reconciler.render(app)
                _LOGGER.info(
                    "Rendered %d resources for %s at %s", len(rendered), app.name, revision
                )
                resources.extend(rendered)
        finally:
            await orchestrator.stop()
        _write(resources, output)
