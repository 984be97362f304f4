"""
Steps that control the flow of an instance.

APPROVAL:  open an approval request and wait for a decision
CONDITION: gate downstream steps on a predicate over the context
DELAY:     wait a number of minutes (zero completes immediately)
"""

from datetime import timedelta

from core.constants import ApprovalDecision, NotificationType, Priority, StepType
from core.exceptions import ConditionNotMetError, StepHandlerError
from core.utils import parse_datetime, utc_now
from db.models.approval_request import ApprovalRequest
from steps.base_step import BaseStepHandler, StepContext, StepResult
from workflow.conditions import evaluate_condition


class ApprovalHandler(BaseStepHandler):
    """Create a PENDING approval request; the execution waits on it."""

    step_type = StepType.APPROVAL.value
    display_name = "Approval"
    description = "Pause until an approver approves or rejects"
    config_keys = ("approver_ids", "title", "description", "priority", "due_date")

    async def execute(self, ctx: StepContext) -> StepResult:
        config = ctx.configuration
        approver_ids = config.get("approver_ids") or []
        if isinstance(approver_ids, str):
            approver_ids = [approver_ids]
        approver_ids = list(dict.fromkeys(a for a in approver_ids if a))
        if not approver_ids:
            raise StepHandlerError("Approval step requires approver_ids")

        priority = str(config.get("priority") or Priority.MEDIUM.value).upper()
        if priority not in {p.value for p in Priority}:
            raise StepHandlerError(f"Invalid priority: {priority}")

        approval = ApprovalRequest(
            organization_id=ctx.organization_id,
            execution_id=ctx.execution.id,
            requested_by=ctx.triggered_by,
            approver_ids=approver_ids,
            title=config.get("title") or ctx.step.name,
            description=config.get("description") or "",
            priority=priority,
            due_date=parse_datetime(config.get("due_date")),
            decision=ApprovalDecision.PENDING.value,
            delegations=[],
        )
        ctx.db.add(approval)
        await ctx.db.flush()

        await ctx.notification_service.notify_many(
            organization_id=ctx.organization_id,
            user_ids=approver_ids,
            title=f"Approval required: {approval.title}",
            message=approval.description,
            notification_type=NotificationType.APPROVAL_REQUEST.value,
            details={"approval_id": approval.id, "instance_id": ctx.instance.id},
        )
        return StepResult.waiting(approval_id=approval.id)


class ConditionHandler(BaseStepHandler):
    """Evaluate ``condition`` against the instance context.

    The condition is read from the stored configuration, not the
    substituted one: ``{{name}}`` tokens are variable references here.
    """

    step_type = StepType.CONDITION.value
    display_name = "Condition"
    description = "Continue only when a predicate holds"
    config_keys = ("condition",)

    async def execute(self, ctx: StepContext) -> StepResult:
        condition = ctx.raw_configuration.get("condition")
        if condition is None or condition == "":
            raise StepHandlerError("Condition step requires a condition")
        if not evaluate_condition(condition, ctx.context_data):
            raise ConditionNotMetError(condition)
        return StepResult.done(condition_result=True)


class DelayHandler(BaseStepHandler):
    """Wait ``delay_minutes``.

    Zero completes synchronously. Otherwise the wake-up time is stored on
    the execution and a timer is scheduled; the execution stays RUNNING
    until the engine resumes it.
    """

    step_type = StepType.DELAY.value
    display_name = "Delay"
    description = "Pause for a number of minutes"
    config_keys = ("delay_minutes",)

    async def execute(self, ctx: StepContext) -> StepResult:
        raw = ctx.configuration.get("delay_minutes") or 0
        try:
            minutes = float(raw)
        except (TypeError, ValueError):
            raise StepHandlerError(f"Invalid delay_minutes: {raw!r}")
        if minutes < 0:
            raise StepHandlerError("delay_minutes must not be negative")

        if minutes == 0:
            return StepResult.done(delay_minutes=0)

        resume_at = utc_now() + timedelta(minutes=minutes)
        ctx.execution.resume_at = resume_at
        if ctx.delay_scheduler is not None:
            ctx.delay_scheduler.schedule(ctx.execution.id, resume_at)
        return StepResult.waiting(delay_minutes=minutes, resume_at=resume_at.isoformat())


FLOW_STEP_TYPES = {
    ApprovalHandler.step_type: ApprovalHandler,
    ConditionHandler.step_type: ConditionHandler,
    DelayHandler.step_type: DelayHandler,
}
