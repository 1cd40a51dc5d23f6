"""Debug timing of the fetch, render and sync stages of a cycle."""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
import logging
import time

_LOGGER = logging.getLogger(__name__)

__all__ = ["trace_context"]

# Stage names entered by the current asyncio task, outermost first.
_stages: ContextVar[tuple[str, ...]] = ContextVar("gitops_sync_stages", default=())


@contextmanager
def trace_context(name: str) -> Iterator[None]:
    """Log entering and leaving the named stage, with its duration.

    Stages nest, so a render inside `sync web` is logged as `sync web > render`.
    """
    stages = (*_stages.get(), name)
    label = " > ".join(stages)
    token = _stages.set(stages)
    started = time.monotonic()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        _stages.reset(token)
        _LOGGER.debug(
            "[Trace] < %s (%0.2fs)", label, time.monotonic() - started
        )
