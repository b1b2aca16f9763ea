"""
Change notification and background task tracking for the providers.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set, Union

logger = logging.getLogger(__name__)

Listener = Callable[[], None]
CoroutineFactory = Callable[[], Awaitable[object]]


class ChangeNotifier:
    """Minimal observer base: listeners are called with no arguments."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def has_listeners(self) -> bool:
        return bool(self._listeners)

    def notify_listeners(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                # A broken view must not stop the remaining listeners
                logger.exception(f"Listener {listener!r} raised during notification")


class BackgroundTasks:
    """
    Fire-and-forget work that still keeps a reference to every task.

    Failures are logged when the task finishes. ``wait()`` lets callers (and
    tests) drain pending work; ``cancel()`` stops it.
    """

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: Set["asyncio.Task[object]"] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def schedule(
        self,
        work: Union[CoroutineFactory, Awaitable[object]],
        delay: float = 0.0,
        label: Optional[str] = None,
    ) -> "asyncio.Task[object]":
        """
        Run ``work`` in the background after ``delay`` seconds.

        ``work`` may be a coroutine or a zero-argument callable returning one.
        A callable is only invoked once the delay has elapsed.
        """
        loop = asyncio.get_running_loop()
        label = label or getattr(work, "__name__", "task")

        async def runner() -> object:
            if delay > 0:
                await asyncio.sleep(delay)
            coro = work() if callable(work) else work
            return await coro

        task = loop.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, label))
        return task

    def _finished(self, task: "asyncio.Task[object]", label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"{self.name}: {label} cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                f"{self.name}: {label} failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    async def wait(self) -> None:
        """Wait until no tasks are pending, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()
