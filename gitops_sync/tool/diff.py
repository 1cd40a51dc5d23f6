"""gitops-sync diff action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import Any, cast

from gitops_sync.resource_diff import (
    perform_json_diff,
    perform_text_diff,
    perform_yaml_diff,
)

from . import selector

_LOGGER = logging.getLogger(__name__)

_DIFF_FUNCS = {
    "diff": perform_text_diff,
    "yaml": perform_yaml_diff,
    "json": perform_json_diff,
}


class DiffAction:
    """Show the changes a sync would make."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "diff",
                help="Diff desired resources against the cluster",
                description=(
                    "The diff command renders each Application and prints the "
                    "changes a sync would make to the live cluster."
                ),
            ),
        )
        selector.add_selector_flags(args)
        selector.add_cluster_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=list(_DIFF_FUNCS),
            default="diff",
            help="Output format of the command",
        )
        args.add_argument(
            "--unified",
            "-u",
            type=int,
            default=3,
            help="output NUM (default 3) lines of unified context",
        )
        args.add_argument(
            "--limit-bytes",
            help="Maximum bytes for each diff output (0=unlimited)",
            type=int,
            default=0,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        output: str,
        unified: int,
        limit_bytes: int,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        orchestrator = await selector.build_orchestrator(**kwargs)
        diff_func = _DIFF_FUNCS[output]
        try:
            for app in orchestrator.store.list_applications():
                revision, record = await orchestrator.plan(app.name)
                if record.in_sync:
                    _LOGGER.info("Application %s is in sync at %s", app.name, revision)
                    continue
                if output == "diff":
                    print(f"# Application {app.name} at {revision}")
                for line in diff_func(record, n=unified, limit_bytes=limit_bytes):
                    if output == "diff":
                        print(line, end="")
                    else:
                        print(line.rstrip("\n"))
        finally:
            await orchestrator.stop()
