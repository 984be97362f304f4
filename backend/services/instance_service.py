"""Read side of workflow instances: listing with execution summaries."""

from typing import NamedTuple, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionStatus
from core.exceptions import NotFoundError
from core.utils import calculate_offset
from db.models.workflow_execution import WorkflowExecution
from db.models.workflow_instance import WorkflowInstance
from services.base import BaseService


class ExecutionSummary(NamedTuple):
    total: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0


class InstanceService(BaseService[WorkflowInstance]):
    """Tenant-scoped queries over workflow instances."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowInstance, db)

    async def get_instance(self, instance_id: str, organization_id: str) -> WorkflowInstance:
        query = self._scoped(select(WorkflowInstance).where(WorkflowInstance.id == instance_id), organization_id)
        instance = (
            await self.db.execute(query.execution_options(populate_existing=True))
        ).scalar_one_or_none()
        if instance is None:
            raise NotFoundError(f"Workflow instance not found: {instance_id}")
        return instance

    async def get_executions(self, instance_id: str) -> Sequence[WorkflowExecution]:
        """Executions of an instance in creation order."""
        result = await self.db.execute(
            select(WorkflowExecution)
            .where(WorkflowExecution.instance_id == instance_id)
            .order_by(WorkflowExecution.created_at, WorkflowExecution.id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def list_instances(
        self,
        organization_id: str,
        status: Optional[str] = None,
        template_id: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[tuple[WorkflowInstance, ExecutionSummary]], int]:
        """Instances newest first, each paired with its execution counts."""
        instances, total = await self.list(
            organization_id=organization_id,
            offset=calculate_offset(page, per_page),
            limit=per_page,
            order_by=(WorkflowInstance.created_at.desc(), WorkflowInstance.id),
            filters={"status": status.upper() if status else None, "template_id": template_id},
        )
        summaries = await self.execution_summaries([i.id for i in instances])
        return [(i, summaries.get(i.id, ExecutionSummary())) for i in instances], total

    async def execution_summaries(self, instance_ids: list[str]) -> dict[str, ExecutionSummary]:
        if not instance_ids:
            return {}
        rows = await self.db.execute(
            select(WorkflowExecution.instance_id, WorkflowExecution.status, func.count())
            .where(WorkflowExecution.instance_id.in_(instance_ids))
            .group_by(WorkflowExecution.instance_id, WorkflowExecution.status)
        )
        counts: dict[str, dict[str, int]] = {}
        for instance_id, status, count in rows.all():
            counts.setdefault(instance_id, {})[status] = count

        return {
            instance_id: ExecutionSummary(
                total=sum(by_status.values()),
                running=by_status.get(ExecutionStatus.RUNNING.value, 0),
                completed=by_status.get(ExecutionStatus.COMPLETED.value, 0),
                failed=by_status.get(ExecutionStatus.FAILED.value, 0),
            )
            for instance_id, by_status in counts.items()
        }
