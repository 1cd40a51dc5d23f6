"""Command line tool for rendering, diffing and syncing GitOps Applications."""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from gitops_sync.exceptions import GitOpsException

from . import diff, render, run, sync

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reconcile Kubernetes clusters with Applications defined in git.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    render.RenderAction.register(subparsers)
    diff.DiffAction.register(subparsers)
    sync.SyncAction.register(subparsers)
    run.RunAction.register(subparsers)
    return parser


def _str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
    """Represent multi-line yaml strings as block literals."""
    return dumper.represent_scalar(
        "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
    )


def main(argv: list[str] | None = None) -> None:
    """gitops-sync command line tool main entry point."""
    yaml.add_representer(str, _str_presenter)

    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except GitOpsException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("gitops-sync error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
