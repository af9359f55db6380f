"""Per-instance background timers (credential refresh, heartbeats)."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

TimerCallback = Callable[[], Awaitable[Any]]
SleepFunc = Callable[[float], Awaitable[Any]]


class InstanceTimers:
    """
    Named asyncio timers keyed by ``(instance_id, purpose)``.

    Scheduling a key that is already armed replaces the old timer. A timer
    cancelling its own key from inside its callback is a no-op for the
    running task, so a callback can safely tear its instance down.
    """

    def __init__(self, sleep: SleepFunc = asyncio.sleep, logger: Any = None) -> None:
        self._sleep = sleep
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}
        self.logger = (logger or structlog.get_logger()).bind(component="instance_timers")

    def schedule(self, instance_id: str, purpose: str, delay: float, callback: TimerCallback) -> None:
        """Run ``callback`` once after ``delay`` seconds."""
        key = (instance_id, purpose)
        self.cancel(instance_id, purpose)
        self._tasks[key] = asyncio.create_task(
            self._run_once(key, max(0.0, delay), callback),
            name=f"{purpose}:{instance_id}",
        )

    def schedule_periodic(self, instance_id: str, purpose: str, interval: float, callback: TimerCallback) -> None:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        key = (instance_id, purpose)
        self.cancel(instance_id, purpose)
        self._tasks[key] = asyncio.create_task(
            self._run_periodic(key, interval, callback),
            name=f"{purpose}:{instance_id}",
        )

    def cancel(self, instance_id: str, purpose: Optional[str] = None) -> None:
        """Cancel one timer, or every timer of the instance when ``purpose`` is None."""
        keys = [key for key in self._tasks if key[0] == instance_id and (purpose is None or key[1] == purpose)]
        current = asyncio.current_task()
        for key in keys:
            task = self._tasks.pop(key)
            if task is not current:
                task.cancel()

    def cancel_all(self) -> None:
        for instance_id, _ in list(self._tasks):
            self.cancel(instance_id)

    def is_scheduled(self, instance_id: str, purpose: str) -> bool:
        task = self._tasks.get((instance_id, purpose))
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def _run_once(self, key: Tuple[str, str], delay: float, callback: TimerCallback) -> None:
        await self._sleep(delay)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        await self._invoke(key, callback)

    async def _run_periodic(self, key: Tuple[str, str], interval: float, callback: TimerCallback) -> None:
        while self._tasks.get(key) is asyncio.current_task():
            await self._sleep(interval)
            await self._invoke(key, callback)

    async def _invoke(self, key: Tuple[str, str], callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(
                "Timer callback failed",
                instance_id=key[0],
                purpose=key[1],
                error=str(e),
            )
