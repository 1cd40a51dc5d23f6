"""Ownership of the asyncio tasks started by the controller.

Two kinds of task are tracked. Cycle tasks run a bounded amount of work, such
as one reconciliation of an Application, and are awaited by `block_till_done`.
Loop tasks run until cancelled, such as the trigger dispatcher, poll loops and
cluster watches, and are only stopped by `shutdown`.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import StrEnum
import logging
from typing import Any, Coroutine

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskKind(StrEnum):
    """How a tracked task ends."""

    CYCLE = "cycle"
    LOOP = "loop"


class TaskService(ABC):
    """Tracks the tasks of the controller so they can be awaited or cancelled."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Start a cycle task.

        Args:
            coro: The coroutine to run
            name: Optional task name, e.g. `reconcile-web`, used in logs

        Returns:
            The started task
        """

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Start a loop task that runs until cancelled."""

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait until no cycle task is running, including ones started meanwhile."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Cancel every tracked task and wait for them to exit."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Return the number of running cycle tasks."""


class TaskServiceImpl(TaskService):
    """TaskService keeping one set of running tasks per TaskKind."""

    def __init__(self) -> None:
        """Initialize TaskServiceImpl."""
        self._tasks: dict[TaskKind, set[asyncio.Task[Any]]] = {
            kind: set() for kind in TaskKind
        }

    def _start(
        self, kind: TaskKind, coro: Coroutine[None, None, Any], name: str | None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks[kind].add(task)
        task.add_done_callback(self._finished)
        _LOGGER.debug("Started %s task %s", kind, task.get_name())
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        for tasks in self._tasks.values():
            tasks.discard(task)
        if task.cancelled():
            return
        if (err := task.exception()) is not None:
            _LOGGER.error("Task %s failed: %s", task.get_name(), err, exc_info=err)

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        return self._start(TaskKind.CYCLE, coro, name)

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        return self._start(TaskKind.LOOP, coro, name)

    async def block_till_done(self) -> None:
        while running := list(self._tasks[TaskKind.CYCLE]):
            _LOGGER.debug("Waiting for %d cycle tasks", len(running))
            await asyncio.wait(running)

    async def shutdown(self) -> None:
        running = [task for tasks in self._tasks.values() for task in tasks]
        if not running:
            return
        _LOGGER.debug("Cancelling %d tasks", len(running))
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)

    def get_num_active_tasks(self) -> int:
        return len(self._tasks[TaskKind.CYCLE])
