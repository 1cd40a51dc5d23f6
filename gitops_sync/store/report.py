"""Read-only projection of the store used for status reporting."""

from typing import Any

from .status import SyncStatus
from .store import Store

__all__ = ["status_report"]


def status_report(store: Store) -> list[dict[str, Any]]:
    """Return one row per Application with its status, phase, revision and errors."""
    rows: list[dict[str, Any]] = []
    for app in store.list_applications():
        status = store.get_status(app.name)
        current = status.current if status else None
        errors: list[str] = []
        if current is not None:
            if current.message:
                errors.append(current.message)
            errors.extend(str(result) for result in current.errors)
        rows.append(
            {
                "name": app.name,
                "status": str(status.status if status else SyncStatus.UNKNOWN),
                "phase": str(status.phase) if status else "",
                "revision": str(current.revision) if current and current.revision else "",
                "errors": errors,
            }
        )
    return rows
