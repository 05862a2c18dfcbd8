"""
Timer Supervisor - Cancelable Timers per Timer Class

At most one live timer per class: starting a class cancels its previous
instance. Fires that race with a cancel are discarded by generation.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)


class TimerClass(Enum):
    """Supervised timer classes"""
    DEBOUNCE = "debounce"
    SESSION_INACTIVITY = "session_inactivity"
    SESSION_MAX_DURATION = "session_max_duration"
    CYCLE_WATCHDOG = "cycle_watchdog"


class TimerSupervisor:
    """
    One-shot timers on the agent's event loop.

    Callbacks may be plain functions or coroutine functions; coroutines
    run as tracked tasks. Callback errors are logged, never propagated.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handles: Dict[TimerClass, asyncio.TimerHandle] = {}
        self._generation: Dict[TimerClass, int] = {}
        self._tasks: Set[asyncio.Task] = set()

        # Statistics
        self._started = 0
        self._cancelled = 0
        self._fired = 0
        self._errors = 0

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def start(self, timer_class: TimerClass, delay: float, callback: Callable, *args) -> None:
        """
        Start (or restart) a timer.

        Args:
            timer_class: Timer class; a live instance is cancelled first
            delay: Seconds until expiry
            callback: Function or coroutine function called on expiry
        """
        self.cancel(timer_class)
        generation = self._generation.get(timer_class, 0) + 1
        self._generation[timer_class] = generation

        self._handles[timer_class] = self._get_loop().call_later(
            max(delay, 0), self._fire, timer_class, generation, callback, args
        )
        self._started += 1
        logger.debug("Timer %s started (%.1fs)", timer_class.value, delay)

    def _fire(self, timer_class: TimerClass, generation: int, callback: Callable, args) -> None:
        if self._generation.get(timer_class) != generation:
            logger.debug("Stale %s timer fire discarded", timer_class.value)
            return

        self._handles.pop(timer_class, None)
        self._fired += 1
        logger.debug("Timer %s expired", timer_class.value)

        try:
            result = callback(*args)
        except Exception:
            self._errors += 1
            logger.exception("Timer %s callback failed", timer_class.value)
            return

        if asyncio.iscoroutine(result):
            task = self._get_loop().create_task(result, name=f"timer-{timer_class.value}")
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._errors += 1
            logger.error("Timer task %s failed: %r", task.get_name(), exc, exc_info=exc)

    def cancel(self, timer_class: TimerClass) -> bool:
        """
        Cancel a timer.

        Returns:
            True if a live timer was cancelled
        """
        # Bumping the generation invalidates a fire already queued on the loop
        self._generation[timer_class] = self._generation.get(timer_class, 0) + 1
        handle = self._handles.pop(timer_class, None)
        if handle is None:
            return False

        handle.cancel()
        self._cancelled += 1
        logger.debug("Timer %s cancelled", timer_class.value)
        return True

    def cancel_all(self, *timer_classes: TimerClass) -> None:
        """Cancel the given timer classes (all classes when none given)."""
        for timer_class in timer_classes or tuple(TimerClass):
            self.cancel(timer_class)

    def is_active(self, timer_class: TimerClass) -> bool:
        """Check if a timer of this class is pending."""
        return timer_class in self._handles

    async def join(self) -> None:
        """Wait for running timer tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every timer and running timer task."""
        self.cancel_all()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Timer supervisor stopped")

    def get_stats(self) -> dict:
        """Get timer statistics."""
        return {
            'active': sorted(tc.value for tc in self._handles),
            'running_tasks': len(self._tasks),
            'started': self._started,
            'cancelled': self._cancelled,
            'fired': self._fired,
            'errors': self._errors,
        }
