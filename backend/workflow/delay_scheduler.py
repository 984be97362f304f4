"""In-process timers for DELAY steps.

The durable record is ``WorkflowExecution.resume_at``; timers here are
only the fast path. If the process restarts, DelayRecoveryService finds
the pending executions and reschedules or resumes them.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

import structlog

from core.utils import as_utc, utc_now

logger = structlog.get_logger(__name__)

ResumeCallback = Callable[[str], Awaitable[None]]


class DelayScheduler:
    """Schedules ``resume(execution_id)`` calls at wake-up times.

    The resume callback is injected so the scheduler does not depend on
    how a database session or engine is built.
    """

    def __init__(self, resume: Optional[ResumeCallback] = None):
        self._resume = resume
        self._timers: Dict[str, asyncio.Task] = {}

    def set_resume_callback(self, resume: ResumeCallback) -> None:
        self._resume = resume

    def schedule(self, execution_id: str, resume_at: datetime) -> None:
        """Arm (or re-arm) the timer for ``execution_id``."""
        self.cancel(execution_id)
        delay = max(0.0, (as_utc(resume_at) - utc_now()).total_seconds())
        self._timers[execution_id] = asyncio.get_running_loop().create_task(
            self._fire(execution_id, delay),
            name=f"delay:{execution_id}",
        )
        logger.debug("Delay scheduled", execution_id=execution_id, delay_seconds=round(delay, 3))

    def cancel(self, execution_id: str) -> bool:
        timer = self._timers.pop(execution_id, None)
        if timer is None:
            return False
        if not timer.done():
            timer.cancel()
        return True

    @property
    def pending(self) -> list[str]:
        return [eid for eid, timer in self._timers.items() if not timer.done()]

    async def _fire(self, execution_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(execution_id, None)
        if self._resume is None:
            logger.warning("Delay elapsed but no resume callback is set", execution_id=execution_id)
            return
        try:
            await self._resume(execution_id)
        except Exception as e:
            # Nobody awaits this task; the durable resume_at lets recovery retry
            logger.error("Delay resume failed", execution_id=execution_id, error=str(e), exc_info=True)

    async def shutdown(self) -> None:
        """Cancel all timers (application shutdown)."""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)


# Singleton
_scheduler: Optional[DelayScheduler] = None


def get_delay_scheduler() -> DelayScheduler:
    """Get or create the process-wide delay scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = DelayScheduler()
    return _scheduler
