"""
Delay Recovery Service.

DELAY steps persist their wake-up time in ``WorkflowExecution.resume_at``.
In-process timers are lost when the server restarts, so on startup this
service scans for waiting delays of RUNNING instances and:

1. resumes the ones already due
2. re-arms a timer for the ones still in the future

Resuming goes through WorkflowEngine.resume_delay, which is a no-op if
the instance was cancelled or the execution already finished.
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ExecutionStatus, InstanceStatus
from core.utils import as_utc, utc_now
from db.models.workflow_execution import WorkflowExecution
from db.models.workflow_instance import WorkflowInstance
from workflow.delay_scheduler import DelayScheduler

logger = structlog.get_logger(__name__)


class RecoveryResult:
    """Outcome of recovering a single waiting delay."""

    def __init__(self, execution_id: str, resume_at: Optional[datetime] = None):
        self.execution_id = execution_id
        self.resume_at = resume_at
        self.action: str = "none"  # resumed | scheduled | failed
        self.error: Optional[str] = None
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "resume_at": self.resume_at.isoformat() if self.resume_at else None,
            "action": self.action,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


def build_resume_callback(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[str], Awaitable[None]]:
    """Resume callback for the delay scheduler: one fresh session per resume."""

    async def resume(execution_id: str) -> None:
        from workflow.engine import WorkflowEngine

        async with session_factory() as session:
            await WorkflowEngine(session).resume_delay(execution_id)

    return resume


class DelayRecoveryService:
    """Finds waiting DELAY executions and resumes or reschedules them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: DelayScheduler,
        resume: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.resume = resume or build_resume_callback(session_factory)
        self._recovery_log: List[RecoveryResult] = []

    async def scan_pending_delays(self) -> List[tuple[str, datetime]]:
        """(execution_id, resume_at) of waiting delays, earliest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(WorkflowExecution.id, WorkflowExecution.resume_at)
                .join(WorkflowInstance, WorkflowInstance.id == WorkflowExecution.instance_id)
                .where(
                    WorkflowExecution.status == ExecutionStatus.RUNNING.value,
                    WorkflowExecution.resume_at.is_not(None),
                    WorkflowInstance.status == InstanceStatus.RUNNING.value,
                )
                .order_by(WorkflowExecution.resume_at)
            )
            pending = [(execution_id, as_utc(resume_at)) for execution_id, resume_at in result.all()]

        if pending:
            logger.info("Found waiting delays", count=len(pending))
        return pending

    async def recover_all(self) -> List[RecoveryResult]:
        """Resume due delays and reschedule future ones."""
        now = utc_now()
        results = []

        for execution_id, resume_at in await self.scan_pending_delays():
            result = RecoveryResult(execution_id, resume_at)
            try:
                if resume_at <= now:
                    await self.resume(execution_id)
                    result.action = "resumed"
                else:
                    self.scheduler.schedule(execution_id, resume_at)
                    result.action = "scheduled"
            except Exception as e:
                # One broken instance must not block recovery of the rest
                result.action = "failed"
                result.error = str(e)
                logger.error("Delay recovery failed", execution_id=execution_id, error=str(e), exc_info=True)
            results.append(result)

        self._recovery_log.extend(results)
        logger.info(
            "Delay recovery complete",
            resumed=sum(1 for r in results if r.action == "resumed"),
            scheduled=sum(1 for r in results if r.action == "scheduled"),
            failed=sum(1 for r in results if r.action == "failed"),
        )
        return results

    def get_recovery_log(self, limit: int = 50) -> List[dict]:
        """Most recent recovery results."""
        return [r.to_dict() for r in self._recovery_log[-limit:]]
