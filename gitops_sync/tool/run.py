"""gitops-sync run action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import asyncio
import logging
import signal
from typing import Any, cast

from gitops_sync.exceptions import GitOpsException
from gitops_sync.store import status_report

from . import selector
from .format import PrintFormatter

_LOGGER = logging.getLogger(__name__)


class RunAction:
    """Run the reconciliation controller."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Run the reconciliation controller",
                description=(
                    "Continuously reconcile automated Applications, polling their "
                    "sources and re-syncing on drift when self-heal is enabled. "
                    "Runs until interrupted or until --duration elapses."
                ),
            ),
        )
        selector.add_selector_flags(args)
        selector.add_cluster_flags(args)
        args.add_argument(
            "--duration",
            help="Stop after this many seconds",
            type=float,
            default=None,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        duration: float | None,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        orchestrator = await selector.build_orchestrator(**kwargs)
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            ok = await orchestrator.run(duration=duration, stop_event=stop_event)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        PrintFormatter(["name", "status", "phase", "revision", "errors"]).print(
            status_report(orchestrator.store)
        )
        if not ok:
            raise GitOpsException("One or more Applications ended in Error")
