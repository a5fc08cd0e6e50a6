import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional

from sellable.assist.cache import ProductCache
from sellable.assist.threads import ThreadLifecycleManager

LOGGER = logging.getLogger(__name__)


class PeriodicTask:
    """
    Calls ``func`` every ``interval`` seconds on the running event loop.

    The next sleep starts only after the current invocation has finished, so
    a slow invocation delays the schedule instead of overlapping itself.
    Exceptions are logged and the task keeps running.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Any], sleep=asyncio.sleep):
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        self.name = name
        self.interval = interval
        self.func = func
        self.sleep = sleep
        self.runs = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        try:
            result = self.func()
            if inspect.isawaitable(result):
                result = await result
            self.runs += 1
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            LOGGER.error(f"Periodic task {self.name} failed: {e}", exc_info=True)
            return None

    async def _loop(self) -> None:
        while True:
            await self.sleep(self.interval)
            await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        LOGGER.info(f"Started periodic task {self.name} every {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        LOGGER.info(f"Stopped periodic task {self.name}")


class MaintenanceScheduler:
    """
    Background upkeep of the thread maps: TTL cleanup, the consistency
    self-check and, when a product cache is given, purging its expired entries.
    """

    def __init__(self, thread_manager: ThreadLifecycleManager, cleanup_interval: float,
                 consistency_interval: float, product_cache: Optional[ProductCache] = None, sleep=asyncio.sleep):
        self.thread_manager = thread_manager
        self.product_cache = product_cache
        self.tasks: List[PeriodicTask] = [
            PeriodicTask("thread-cleanup", cleanup_interval, self.cleanup, sleep=sleep),
            PeriodicTask("thread-consistency", consistency_interval, thread_manager.check_consistency, sleep=sleep),
        ]

    def cleanup(self):
        result = self.thread_manager.cleanup_expired()
        if self.product_cache is not None:
            result["products"] = self.product_cache.purge_expired()
        return result

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()
