"""Small helpers shared by the analyzer modules."""

from __future__ import annotations

import asyncio
import inspect
import sys
from collections.abc import Coroutine
from typing import TypeVar

import numpy as np

_T = TypeVar("_T")

# eager_start only exists on Python 3.12+
_SUPPORTS_EAGER_START = sys.version_info >= (3, 12) and "eager_start" in inspect.signature(
    asyncio.create_task
).parameters


def create_task(
    coro: Coroutine[None, None, _T],
    *,
    loop: asyncio.AbstractEventLoop | None = None,
    name: str | None = None,
    eager_start: bool = True,
) -> asyncio.Task[_T]:
    """Create an asyncio task, starting it eagerly where supported.

    Args:
        coro: The coroutine to run as a task.
        loop: Optional event loop to use. If None, uses the running loop.
        name: Optional name for the task (for debugging).
        eager_start: Whether to start the task eagerly. Ignored before 3.12.

    Returns:
        The created asyncio Task.
    """
    kwargs = {"name": name} if name is not None else {}

    if _SUPPORTS_EAGER_START:
        kwargs["eager_start"] = eager_start

    if loop is not None:
        return loop.create_task(coro, **kwargs)
    return asyncio.create_task(coro, **kwargs)


def as_mono_float32(samples: np.ndarray) -> np.ndarray:
    """Return a 1-D float32 view of *samples*, keeping only the first channel.

    Device callbacks deliver ``(frames, channels)`` arrays and sound files
    may be multi-channel; the analyzer works on a single channel.
    """
    arr = np.asarray(samples)
    if arr.ndim > 1:
        arr = arr[:, 0]
    return np.ascontiguousarray(arr, dtype=np.float32).reshape(-1)
