"""Tests for the TaskServiceImpl."""

import asyncio
import logging
from typing import Any

import pytest

from gitops_sync.task import get_task_service, task_service_context
from gitops_sync.task.service import TaskServiceImpl


@pytest.fixture
def task_service() -> TaskServiceImpl:
    """Fixture for creating a TaskServiceImpl instance."""
    return TaskServiceImpl()


async def _work(delay: float = 0.01) -> Any:
    await asyncio.sleep(delay)
    return "done"


async def test_create_and_complete_task(task_service: TaskServiceImpl) -> None:
    task = task_service.create_task(_work(), name="reconcile-web")
    assert task.get_name() == "reconcile-web"
    assert task_service.get_num_active_tasks() == 1

    assert await task == "done"
    assert task_service.get_num_active_tasks() == 0


async def test_block_till_done(task_service: TaskServiceImpl) -> None:
    """Test blocking until all tasks, including ones created meanwhile, are done."""

    async def spawn() -> None:
        await asyncio.sleep(0.01)
        task_service.create_task(_work(0.05))

    tasks = [task_service.create_task(_work()) for _ in range(3)]
    task_service.create_task(spawn())

    await task_service.block_till_done()

    assert task_service.get_num_active_tasks() == 0
    assert all(task.result() == "done" for task in tasks)


async def test_block_till_done_ignores_background(task_service: TaskServiceImpl) -> None:
    loop = task_service.create_background_task(_work(10), name="poll-web")
    task_service.create_task(_work())

    await task_service.block_till_done()

    assert not loop.done()
    await task_service.shutdown()
    assert loop.cancelled()


async def test_task_failure_logged(
    task_service: TaskServiceImpl, caplog: pytest.LogCaptureFixture
) -> None:
    async def failing() -> None:
        raise ValueError("Test error")

    task = task_service.create_task(failing(), name="failing")
    with pytest.raises(ValueError, match="Test error"):
        await task
    await asyncio.sleep(0)

    assert task_service.get_num_active_tasks() == 0
    assert any(
        record.levelno == logging.ERROR and "Task failing failed" in record.getMessage()
        for record in caplog.records
    )


async def test_shutdown(task_service: TaskServiceImpl) -> None:
    tasks = [
        task_service.create_task(_work(10)),
        task_service.create_background_task(_work(10)),
    ]
    await task_service.shutdown()
    assert all(task.cancelled() for task in tasks)
    assert task_service.get_num_active_tasks() == 0

    await task_service.shutdown()


def test_task_service_context() -> None:
    with task_service_context() as task_service:
        service1 = get_task_service()
        assert isinstance(service1, TaskServiceImpl)
        assert service1 is task_service
        assert get_task_service() is service1

    with task_service_context() as task_service:
        assert get_task_service() is not service1
        assert get_task_service() is task_service
