"""
Steps that create, assign and update directory records.

TASK_CREATION: create a Task from step configuration
ASSIGNMENT:    resolve an assignee through the assignment rules
DATA_UPDATE:   update allow-listed columns of tasks or users
"""

from typing import Any, Dict

import structlog
from sqlalchemy import select, update

from core.constants import DATA_UPDATE_ALLOWED_FIELDS, AssignmentMethod, Priority, StepType, TaskStatus
from core.exceptions import AssignmentNotFoundError, StepHandlerError
from core.utils import parse_datetime
from db.models.task import Task
from db.models.user import User
from steps.base_step import BaseStepHandler, StepContext, StepResult

logger = structlog.get_logger(__name__)

DATA_UPDATE_MODELS = {"task": Task, "user": User}


def _priority(value: Any) -> str:
    if not value:
        return Priority.MEDIUM.value
    value = str(value).upper()
    if value not in {p.value for p in Priority}:
        raise StepHandlerError(f"Invalid priority: {value}")
    return value


class TaskCreationHandler(BaseStepHandler):
    """Create a task; title and description support {{var}} substitution."""

    step_type = StepType.TASK_CREATION.value
    display_name = "Create Task"
    description = "Create a task in the directory"
    config_keys = ("title", "description", "department_id", "priority", "due_date", "assignee_id")

    async def execute(self, ctx: StepContext) -> StepResult:
        config = ctx.configuration
        assignee_id = config.get("assignee_id") or None
        task = Task(
            organization_id=ctx.organization_id,
            department_id=config.get("department_id") or ctx.context_data.get("department_id"),
            title=config.get("title") or ctx.step.name,
            description=config.get("description") or "",
            priority=_priority(config.get("priority")),
            status=TaskStatus.TODO.value,
            assignee_id=assignee_id,
            assignment_method=AssignmentMethod.MANUAL.value if assignee_id else None,
            due_date=parse_datetime(config.get("due_date")),
            created_by=ctx.triggered_by,
        )
        ctx.db.add(task)
        await ctx.db.flush()
        return StepResult.done(task_id=task.id, task_title=task.title)


class AssignmentHandler(BaseStepHandler):
    """Pick an assignee via the assignment rules and set it on the task."""

    step_type = StepType.ASSIGNMENT.value
    display_name = "Assign"
    description = "Resolve an assignee using the tenant's assignment rules"
    config_keys = ("task_id", "required")

    async def execute(self, ctx: StepContext) -> StepResult:
        config = ctx.configuration
        assignee_id = await ctx.assignment_service.find_best_assignee(config, ctx.context_data)

        if assignee_id is None and config.get("required"):
            raise AssignmentNotFoundError()

        task_id = config.get("task_id") or ctx.context_data.get("task_id")
        if task_id and assignee_id:
            task = (await ctx.db.execute(
                select(Task).where(Task.id == task_id, Task.organization_id == ctx.organization_id)
            )).scalar_one_or_none()
            if task is not None:
                task.assignee_id = assignee_id
                task.assignment_method = AssignmentMethod.AUTO.value
                await ctx.db.flush()
            else:
                logger.warning("Assignment target task not found", task_id=task_id)

        return StepResult.done(assignee_id=assignee_id, task_id=task_id)


class DataUpdateHandler(BaseStepHandler):
    """Update records matching a filter.

    Config:
        entity: "task" or "user"
        filter: column -> value map (at least one entry)
        values: column -> value map; only allow-listed columns are writable
    """

    step_type = StepType.DATA_UPDATE.value
    display_name = "Update Data"
    description = "Update fields on tasks or users"
    config_keys = ("entity", "filter", "values")

    async def execute(self, ctx: StepContext) -> StepResult:
        config = ctx.configuration
        entity = str(config.get("entity", "")).lower()
        model = DATA_UPDATE_MODELS.get(entity)
        if model is None:
            raise StepHandlerError(f"Unsupported entity for data update: {entity or None}")

        filters: Dict[str, Any] = config.get("filter") or {}
        values: Dict[str, Any] = dict(config.get("values") or {})
        if not filters:
            raise StepHandlerError("Data update requires a non-empty filter")
        if not values:
            raise StepHandlerError("Data update requires values")

        allowed = DATA_UPDATE_ALLOWED_FIELDS[entity]
        rejected = sorted(set(values) - allowed)
        if rejected:
            raise StepHandlerError(f"Fields not writable on {entity}: {', '.join(rejected)}")
        unknown = sorted(key for key in filters if key != "id" and key not in allowed)
        if unknown:
            raise StepHandlerError(f"Cannot filter {entity} by: {', '.join(unknown)}")

        if "due_date" in values:
            values["due_date"] = parse_datetime(values["due_date"])

        clauses = [model.organization_id == ctx.organization_id, model.is_deleted == False]  # noqa: E712
        clauses.extend(getattr(model, key) == value for key, value in filters.items())

        result = await ctx.db.execute(
            update(model).where(*clauses).values(**values)
        )
        logger.info("Data updated", entity=entity, updated=result.rowcount)
        return StepResult.done(entity=entity, updated=result.rowcount)


TASK_STEP_TYPES = {
    TaskCreationHandler.step_type: TaskCreationHandler,
    AssignmentHandler.step_type: AssignmentHandler,
    DataUpdateHandler.step_type: DataUpdateHandler,
}
