"""Lookup of the TaskService for the running controller."""

from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar

from .service import TaskService, TaskServiceImpl

__all__: list[str] = []

_current: ContextVar[TaskService | None] = ContextVar(
    "gitops_sync_task_service", default=None
)


def get_task_service() -> TaskService:
    """Return the TaskService of the current context, installing one on first use."""
    if (service := _current.get()) is None:
        service = TaskServiceImpl()
        _current.set(service)
    return service


@contextmanager
def task_service_context(
    service: TaskService | None = None,
) -> Generator[TaskService, None, None]:
    """Use service, or a new TaskService, for code run inside the block."""
    installed = service or TaskServiceImpl()
    token = _current.set(installed)
    try:
        yield installed
    finally:
        _current.reset(token)
