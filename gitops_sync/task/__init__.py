"""Task tracking module for gitops-sync.

This module provides a task tracking service used by the scheduler to own
reconciliation cycles and long running poll and watch loops, so that they
can be awaited or cancelled together on shutdown.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
