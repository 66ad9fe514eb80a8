import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


class PhaseScheduler:
    """Named, cancellable delayed and periodic tasks.

    Scheduling a name that is already pending cancels the old task first,
    so at most one task per name is ever live.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def call_later(self, name: str, delay: float, callback: Callback) -> asyncio.Task:
        return self._start(name, self._run_later(name, delay, callback))

    def call_every(self, name: str, interval: float, callback: Callback) -> asyncio.Task:
        return self._start(name, self._run_every(name, interval, callback))

    def cancel(self, name: str):
        task = self._tasks.pop(name, None)
        if task and not task.done() and task is not _current_task():
            task.cancel()

    def cancel_all(self):
        for name in list(self._tasks):
            self.cancel(name)

    def is_pending(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    @property
    def pending(self) -> list:
        return [name for name in self._tasks if self.is_pending(name)]

    def _start(self, name: str, coro) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.create_task(coro)
        self._tasks[name] = task
        return task

    def _forget(self, name: str):
        if self._tasks.get(name) is _current_task():
            del self._tasks[name]

    async def _run_later(self, name: str, delay: float, callback: Callback):
        try:
            await asyncio.sleep(delay)
            self._forget(name)
            await _invoke(callback)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Scheduled task %s failed", name)

    async def _run_every(self, name: str, interval: float, callback: Callback):
        try:
            while True:
                await asyncio.sleep(interval)
                await _invoke(callback)
                # The callback cancelled or replaced this task
                if self._tasks.get(name) is not _current_task():
                    return
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Periodic task %s failed", name)
            self._forget(name)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


async def _invoke(callback: Callback):
    result = callback()
    if inspect.isawaitable(result):
        await result
