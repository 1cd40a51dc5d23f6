"""gitops-sync sync action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from dataclasses import replace
import logging
from typing import Any, cast

from gitops_sync.exceptions import GitOpsException
from gitops_sync.store import Operation, SyncStatus, status_report

from . import selector
from .format import get_formatter

_LOGGER = logging.getLogger(__name__)

REPORT_KEYS = ["name", "status", "revision", "errors"]
RESOURCE_KEYS = ["app", "resource", "action", "message"]


class SyncAction:
    """Run one reconciliation pass for Applications."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "sync",
                help="Sync Applications to the cluster once",
                description=(
                    "Run a single sync of every selected Application, regardless "
                    "of its sync policy, and print the resulting status. Exits "
                    "non-zero when any Application ends in Error."
                ),
            ),
        )
        selector.add_selector_flags(args)
        selector.add_cluster_flags(args)
        args.add_argument(
            "--prune",
            help="Delete owned resources no longer in the source, for every Application",
            action="store_true",
            default=False,
        )
        args.add_argument(
            "--refresh",
            help="Only diff against the cluster without applying changes",
            action="store_true",
            default=False,
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["table", "wide", "yaml", "json"],
            default="table",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        refresh: bool,
        prune: bool,
        output: str,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        orchestrator = await selector.build_orchestrator(**kwargs)
        if prune:
            for app in orchestrator.store.list_applications():
                orchestrator.scheduler.update_application(
                    replace(app, sync_policy=replace(app.sync_policy, prune=True))
                )
        operation = Operation.REFRESH if refresh else Operation.SYNC
        try:
            results = await orchestrator.run_once(operation)
        finally:
            await orchestrator.stop()

        if output in ("yaml", "json"):
            data = [
                {"name": name, **result.to_dict()}
                for name, result in sorted(results.items())
            ]
            get_formatter(output).print(data)
        elif output == "wide":
            rows = [
                {
                    "app": name,
                    "resource": str(r.resource_id),
                    "action": str(r.action),
                    "message": r.message,
                }
                for name, result in sorted(results.items())
                for r in result.resources
            ]
            get_formatter(output, RESOURCE_KEYS).print(rows)
        else:
            get_formatter(output, REPORT_KEYS).print(status_report(orchestrator.store))

        failed = sorted(
            name for name, result in results.items() if result.status == SyncStatus.ERROR
        )
        if failed:
            raise GitOpsException(f"Applications ended in Error: {', '.join(failed)}")
