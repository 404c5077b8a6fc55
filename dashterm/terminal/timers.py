"""
Per-session timers.

Reconnect backoff, resize debounce and health probes are asyncio tasks keyed
by (session_id, name). Scheduling a key that is already pending replaces the
old task; destroying a session cancels every key it owns in one call, so no
timer fires against a dead id.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Tuple

from dashterm.core.logger import get_logger

logger = get_logger("timers")

TimerCallback = Callable[[], Awaitable[None]]


class SessionTimers:
    """Registry of cancellable background tasks, keyed per session."""

    def __init__(self):
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}

    def schedule(self, session_id: str, name: str, delay: float, callback: TimerCallback) -> asyncio.Task:
        """Run ``callback`` once after ``delay`` seconds, replacing any pending timer with the same key."""
        async def fire():
            await asyncio.sleep(delay)
            await callback()

        return self.start(session_id, name, fire)

    def start(self, session_id: str, name: str, runner: TimerCallback) -> asyncio.Task:
        """Start a long-running task (e.g. a probe loop) under a key."""
        key = (session_id, name)
        self.cancel(session_id, name)

        async def guarded():
            try:
                await runner()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[TIMERS] ❌ {name} timer for {session_id} failed: {e}")
            finally:
                if self._tasks.get(key) is asyncio.current_task():
                    del self._tasks[key]

        task = asyncio.create_task(guarded(), name=f"{name}:{session_id}")
        self._tasks[key] = task
        return task

    def cancel(self, session_id: str, name: str) -> bool:
        task = self._tasks.pop((session_id, name), None)
        return self._cancel_task(task)

    def cancel_session(self, session_id: str) -> int:
        """Cancel every timer owned by a session. Returns how many were pending."""
        keys = [k for k in self._tasks if k[0] == session_id]
        cancelled = 0
        for key in keys:
            if self._cancel_task(self._tasks.pop(key, None)):
                cancelled += 1
        if cancelled:
            logger.debug(f"[TIMERS] ⏹️ Cancelled {cancelled} timer(s) for {session_id}")
        return cancelled

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)

    def is_pending(self, session_id: str, name: str) -> bool:
        task = self._tasks.get((session_id, name))
        return task is not None and not task.done()

    def pending(self, session_id: str) -> List[str]:
        return [name for (sid, name), task in self._tasks.items() if sid == session_id and not task.done()]

    @staticmethod
    def _cancel_task(task) -> bool:
        if task is None or task.done():
            return False
        # A timer tearing down its own session keeps running to completion
        if task is not asyncio.current_task():
            task.cancel()
        return True
