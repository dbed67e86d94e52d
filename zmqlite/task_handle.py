"""Handle to a background task that can be asked to stop."""

from __future__ import annotations

import asyncio
from typing import Any

from zmqlite.util import ZmqError


class TaskError(ZmqError):
    """A background task ended abnormally."""


class TaskPanicError(TaskError):
    """The task raised an unexpected exception."""

    def __init__(self, message: str = "Task panicked") -> None:
        super().__init__(message)


class TaskCancelledError(TaskError):
    """The task was cancelled before it finished."""

    def __init__(self, message: str = "Task cancelled") -> None:
        super().__init__(message)


class TaskHandle:
    """Pairs a running task with the event that tells it to stop."""

    def __init__(self, stop_event: asyncio.Event, task: asyncio.Task) -> None:
        self._stop_event = stop_event
        self._task = task

    async def shutdown(self) -> Any:
        """Signal the task to stop and return its result.

        Errors of the package raised by the task propagate unchanged; a
        cancelled task raises TaskCancelledError and any other failure
        raises TaskPanicError.
        """
        self._stop_event.set()
        try:
            return await self._task
        except ZmqError:
            raise
        except asyncio.CancelledError as exc:
            if self._task.cancelled():
                raise TaskCancelledError() from exc
            raise
        except Exception as exc:
            raise TaskPanicError() from exc