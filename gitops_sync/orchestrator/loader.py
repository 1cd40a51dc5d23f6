"""Application loader for the gitops-sync bootstrap process.

Application definitions are read from a file or directory of YAML documents
once at startup. After bootstrap, the scheduler owns the Applications and
they are only changed through its add, update and remove operations.
"""

from dataclasses import dataclass
import logging
from pathlib import Path

from gitops_sync.exceptions import InputException
from gitops_sync.manifest import Application, read_applications

__all__ = ["ApplicationLoader", "LoadOptions"]

_LOGGER = logging.getLogger(__name__)


@dataclass
class LoadOptions:
    """Options for loading Application definitions.

    Attributes:
        path: File or directory holding the Application documents.
        names: When set, only load the Applications with these names.
    """

    path: Path
    names: list[str] | None = None

    def __post_init__(self) -> None:
        """Resolve the path after initialization."""
        self.path = Path(self.path).expanduser().resolve()


class ApplicationLoader:
    """Loads Application definitions from the filesystem."""

    async def load(self, options: LoadOptions) -> list[Application]:
        """Return the Applications selected by the options, sorted by name."""
        _LOGGER.info("Loading applications from %s", options.path)
        apps = sorted(await read_applications(options.path), key=lambda a: a.name)
        if options.names:
            known = {app.name for app in apps}
            if missing := sorted(set(options.names) - known):
                raise InputException(
                    f"Applications not found in {options.path}: {missing}"
                )
            apps = [app for app in apps if app.name in options.names]
        _LOGGER.debug("Loaded applications: %s", [app.name for app in apps])
        return apps
