"""Workflow Execution Engine: DAG-based instance runner.

A template is a DAG of steps: each step lists the steps it depends on.
Starting an instance runs every step whose dependencies are complete,
and keeps going until nothing else is eligible:

- Advancement is an iterative loop (no recursion); each pass runs the
  eligible steps in ``step_order`` then id order
- Each step executes at most once per instance unless explicitly retried
- Handler failures are recorded on the execution and never raised to the
  caller, so independent branches keep going
- APPROVAL and non-zero DELAY steps leave their execution RUNNING; the
  approval gate and the delay scheduler re-enter through
  complete_execution / fail_execution / resume_delay
- Completed step output is merged into the instance context so later
  steps can reference it as ``{{key}}``
- A per-instance asyncio.Lock serializes advancement of one instance

Failure policy: once an instance is quiescent (nothing RUNNING, nothing
eligible) and incomplete, it FAILS if a required step's latest execution
failed for any reason other than a condition not being met. Otherwise
it stays RUNNING until a step is retried or the instance is cancelled.
"""

import asyncio
import weakref
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import (
    RESERVED_CONTEXT_KEYS,
    ApprovalDecision,
    ExecutionStatus,
    InstanceStatus,
)
from core.exceptions import (
    ConditionNotMetError,
    ConflictError,
    DependencyNotSatisfiedError,
    HandlerFailureError,
    InvalidRetryConfigError,
    NotFoundError,
    StepTimeoutError,
    TemplateInactiveError,
    TemplateNotFoundError,
    UnknownStepTypeError,
)
from core.logging_config import workflow_log_context
from core.utils import utc_now
from db.models.approval_request import ApprovalRequest
from db.models.workflow_execution import WorkflowExecution
from db.models.workflow_instance import WorkflowInstance
from db.models.workflow_step import WorkflowStep, workflow_step_dependencies
from db.models.workflow_template import WorkflowTemplate
from notifications.email import EmailTransport, get_email_transport
from services.assignment_service import AssignmentService
from services.notification_service import NotificationService
from steps.base_step import StepContext, StepResult
from steps.registry import StepHandlerRegistry, get_step_registry
from workflow.delay_scheduler import DelayScheduler, get_delay_scheduler
from workflow.retry_strategies import RetryStrategy, run_with_retry
from workflow.variables import resolve_config

logger = structlog.get_logger(__name__)

# Entries disappear once no coroutine holds or waits on the lock
_instance_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

CANCELLED_ERROR_TYPE = "InstanceCancelled"


def instance_lock(instance_id: str) -> asyncio.Lock:
    """Process-wide lock guarding advancement of one instance."""
    lock = _instance_locks.get(instance_id)
    if lock is None:
        lock = asyncio.Lock()
        _instance_locks[instance_id] = lock
    return lock


# ─── Graph State ──────────────────────────────────────────────

@dataclass
class GraphState:
    """Snapshot of an instance's steps and executions."""

    steps: list[WorkflowStep]
    dependencies: dict[str, set[str]]
    latest: dict[str, WorkflowExecution] = field(default_factory=dict)
    completed: set[str] = field(default_factory=set)

    @property
    def has_running(self) -> bool:
        return any(e.status == ExecutionStatus.RUNNING.value for e in self.latest.values())

    @property
    def is_complete(self) -> bool:
        return len(self.completed) == len(self.steps)

    def dependencies_met(self, step: WorkflowStep) -> bool:
        return self.dependencies.get(step.id, set()) <= self.completed

    def eligible(self) -> list[WorkflowStep]:
        """Steps without an execution whose dependencies all completed."""
        return [s for s in self.steps if s.id not in self.latest and self.dependencies_met(s)]

    def blocking_failures(self) -> list[tuple[WorkflowStep, WorkflowExecution]]:
        """Required steps whose latest execution failed for a reason that fails the instance."""
        failures = []
        for step in self.steps:
            execution = self.latest.get(step.id)
            if (
                step.is_required
                and execution is not None
                and execution.status == ExecutionStatus.FAILED.value
                and execution.error_type != ConditionNotMetError.__name__
            ):
                failures.append((step, execution))
        return failures


# ─── Engine ───────────────────────────────────────────────────

class WorkflowEngine:
    """Executes workflow instances against one database session.

    Collaborators default to the process-wide singletons and can be
    injected for tests.
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[StepHandlerRegistry] = None,
        assignment_service: Optional[AssignmentService] = None,
        notification_service: Optional[NotificationService] = None,
        email_transport: Optional[EmailTransport] = None,
        delay_scheduler: Optional[DelayScheduler] = None,
    ):
        self.db = db
        self.registry = registry or get_step_registry()
        self.assignment_service = assignment_service or AssignmentService(db)
        self.notification_service = notification_service or NotificationService(db)
        self.email_transport = email_transport or get_email_transport()
        self.delay_scheduler = delay_scheduler or get_delay_scheduler()
        self.settings = get_settings()

    # ─── Loading ─────────────────────────────────────────

    async def _get_template(self, template_id: str, organization_id: Optional[str]) -> WorkflowTemplate:
        query = select(WorkflowTemplate).where(
            WorkflowTemplate.id == template_id,
            WorkflowTemplate.is_deleted == False,  # noqa: E712
        )
        if organization_id:
            query = query.where(WorkflowTemplate.organization_id == organization_id)
        template = (await self.db.execute(query)).scalar_one_or_none()
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def _get_instance(self, instance_id: str, organization_id: Optional[str] = None) -> WorkflowInstance:
        query = select(WorkflowInstance).where(WorkflowInstance.id == instance_id)
        if organization_id:
            query = query.where(WorkflowInstance.organization_id == organization_id)
        instance = (
            await self.db.execute(query.execution_options(populate_existing=True))
        ).scalar_one_or_none()
        if instance is None:
            raise NotFoundError(f"Workflow instance not found: {instance_id}")
        return instance

    async def _get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        query = select(WorkflowExecution).where(WorkflowExecution.id == execution_id)
        return (
            await self.db.execute(query.execution_options(populate_existing=True))
        ).scalar_one_or_none()

    async def _graph_state(self, instance: WorkflowInstance) -> GraphState:
        steps = list((await self.db.execute(
            select(WorkflowStep)
            .where(WorkflowStep.template_id == instance.template_id, WorkflowStep.is_deleted == False)  # noqa: E712
            .order_by(WorkflowStep.step_order, WorkflowStep.id)
        )).scalars().all())

        dependencies: dict[str, set[str]] = {step.id: set() for step in steps}
        if steps:
            edges = await self.db.execute(
                select(workflow_step_dependencies.c.step_id, workflow_step_dependencies.c.depends_on_step_id)
                .where(workflow_step_dependencies.c.step_id.in_(list(dependencies)))
            )
            for step_id, depends_on in edges.all():
                dependencies[step_id].add(depends_on)

        executions = (await self.db.execute(
            select(WorkflowExecution)
            .where(WorkflowExecution.instance_id == instance.id)
            .order_by(WorkflowExecution.created_at, WorkflowExecution.id)
        )).scalars().all()

        state = GraphState(steps=steps, dependencies=dependencies)
        for execution in executions:
            state.latest[execution.step_id] = execution
            if execution.status == ExecutionStatus.COMPLETED.value:
                state.completed.add(execution.step_id)
        return state

    # ─── Public API ──────────────────────────────────────

    async def start_instance(
        self,
        template_id: str,
        context_data: Optional[dict] = None,
        triggered_by: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create a RUNNING instance and run every step that can run.

        Raises:
            TemplateNotFoundError: unknown, deleted or foreign template
            TemplateInactiveError: the template is deactivated
        """
        template = await self._get_template(template_id, organization_id)
        if not template.is_active:
            raise TemplateInactiveError(template_id)

        context = dict(context_data or {})
        context["organization_id"] = template.organization_id
        context["triggered_by"] = triggered_by

        instance = WorkflowInstance(
            organization_id=template.organization_id,
            template_id=template.id,
            template_version=template.version,
            context_data=context,
            status=InstanceStatus.RUNNING.value,
            triggered_by=triggered_by,
            started_at=utc_now(),
        )
        self.db.add(instance)
        await self.db.commit()
        logger.info("Instance started", instance_id=instance.id, template_id=template.id, triggered_by=triggered_by)

        async with instance_lock(instance.id):
            await self._advance(instance)
        return instance

    async def execute_step(
        self,
        instance_id: str,
        step_id: str,
        assigned_to: Optional[str] = None,
    ) -> WorkflowExecution:
        """Run one step of a RUNNING instance, then advance.

        Raises:
            DependencyNotSatisfiedError: a dependency has no COMPLETED execution
            ConflictError: the instance is not running or the step already ran
        """
        async with instance_lock(instance_id):
            instance = await self._get_instance(instance_id)
            if instance.status != InstanceStatus.RUNNING.value:
                raise ConflictError(f"Workflow instance is {instance.status}")

            state = await self._graph_state(instance)
            step = next((s for s in state.steps if s.id == step_id), None)
            if step is None:
                raise NotFoundError(f"Step not found in instance template: {step_id}")

            steps_by_id = {s.id: s for s in state.steps}
            for dependency_id in sorted(state.dependencies.get(step.id, ())):
                if dependency_id not in state.completed:
                    raise DependencyNotSatisfiedError(step.name, steps_by_id[dependency_id].name)

            existing = state.latest.get(step.id)
            if existing is not None and existing.status != ExecutionStatus.FAILED.value:
                raise ConflictError(f"Step '{step.name}' already has a {existing.status} execution")

            execution = await self._run_step(instance, step, assigned_to)
            await self._advance(instance)
            return execution

    async def advance(self, instance_id: str) -> WorkflowInstance:
        """Run every eligible step until none is left, then check completion."""
        async with instance_lock(instance_id):
            instance = await self._get_instance(instance_id)
            await self._advance(instance)
            return instance

    async def check_completion(self, instance_id: str) -> WorkflowInstance:
        async with instance_lock(instance_id):
            instance = await self._get_instance(instance_id)
            await self._check_completion(instance)
            return instance

    async def complete_execution(self, execution: WorkflowExecution, output: Optional[dict] = None) -> WorkflowInstance:
        """Complete a waiting execution (approval granted) and advance its instance."""
        async with instance_lock(execution.instance_id):
            instance = await self._get_instance(execution.instance_id)
            self._ensure_waiting(instance, execution)
            await self._mark_completed(instance, execution, output or {})
            await self._advance(instance)
            return instance

    async def fail_execution(
        self,
        execution: WorkflowExecution,
        message: str,
        error_type: str = "StepHandlerError",
    ) -> WorkflowInstance:
        """Fail a waiting execution (approval rejected) and apply the failure policy."""
        async with instance_lock(execution.instance_id):
            instance = await self._get_instance(execution.instance_id)
            self._ensure_waiting(instance, execution)
            await self._mark_failed(execution, message, error_type)
            await self._check_completion(instance)
            return instance

    async def resume_delay(self, execution_id: str) -> Optional[WorkflowInstance]:
        """Complete a due DELAY execution and advance.

        A no-op (returns None) when the execution is gone, no longer
        RUNNING, or its instance is no longer RUNNING.
        """
        execution = await self._get_execution(execution_id)
        if execution is None:
            logger.warning("Delay resume for unknown execution", execution_id=execution_id)
            return None

        async with instance_lock(execution.instance_id):
            execution = await self._get_execution(execution_id)
            instance = await self._get_instance(execution.instance_id)
            if (
                execution.status != ExecutionStatus.RUNNING.value
                or execution.resume_at is None
                or instance.status != InstanceStatus.RUNNING.value
            ):
                logger.info(
                    "Delay resume skipped",
                    execution_id=execution_id,
                    execution_status=execution.status,
                    instance_status=instance.status,
                )
                return None

            self.delay_scheduler.cancel(execution_id)
            output = {**(execution.output or {}), "resumed_at": utc_now().isoformat()}
            await self._mark_completed(instance, execution, output)
            logger.info("Delay resumed", instance_id=instance.id, execution_id=execution_id)
            await self._advance(instance)
            return instance

    async def cancel_instance(
        self,
        instance_id: str,
        organization_id: Optional[str] = None,
        cancelled_by: Optional[str] = None,
    ) -> WorkflowInstance:
        """Cancel a RUNNING or PAUSED instance.

        Waiting executions fail, their approval requests are cancelled and
        delay timers are disarmed, so later responses or resumes do nothing.
        """
        async with instance_lock(instance_id):
            instance = await self._get_instance(instance_id, organization_id)
            if instance.status not in (InstanceStatus.RUNNING.value, InstanceStatus.PAUSED.value):
                raise ConflictError(f"Cannot cancel a {instance.status} instance")

            now = utc_now()
            waiting = (await self.db.execute(
                select(WorkflowExecution).where(
                    WorkflowExecution.instance_id == instance.id,
                    WorkflowExecution.status == ExecutionStatus.RUNNING.value,
                )
            )).scalars().all()
            for execution in waiting:
                execution.status = ExecutionStatus.FAILED.value
                execution.error_message = "Instance cancelled"
                execution.error_type = CANCELLED_ERROR_TYPE
                execution.failed_at = now
                execution.resume_at = None
                self.delay_scheduler.cancel(execution.id)

            if waiting:
                await self.db.execute(
                    update(ApprovalRequest)
                    .where(
                        ApprovalRequest.execution_id.in_([e.id for e in waiting]),
                        ApprovalRequest.decision == ApprovalDecision.PENDING.value,
                    )
                    .values(decision=ApprovalDecision.CANCELLED.value, responded_at=now)
                )

            instance.status = InstanceStatus.CANCELLED.value
            instance.error_message = f"Cancelled by {cancelled_by}" if cancelled_by else "Cancelled"
            await self.db.commit()
            logger.info("Instance cancelled", instance_id=instance.id, cancelled_by=cancelled_by)
            return instance

    async def retry_step(
        self,
        instance_id: str,
        step_id: str,
        organization_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Re-execute a step whose latest execution FAILED.

        The instance (RUNNING or FAILED) returns to RUNNING and advances.
        """
        async with instance_lock(instance_id):
            instance = await self._get_instance(instance_id, organization_id)
            if instance.status not in (InstanceStatus.RUNNING.value, InstanceStatus.FAILED.value):
                raise ConflictError(f"Cannot retry a step of a {instance.status} instance")

            state = await self._graph_state(instance)
            step = next((s for s in state.steps if s.id == step_id), None)
            if step is None:
                raise NotFoundError(f"Step not found in instance template: {step_id}")
            latest = state.latest.get(step.id)
            if latest is None or latest.status != ExecutionStatus.FAILED.value:
                raise ConflictError(f"Step '{step.name}' has no failed execution to retry")

            instance.status = InstanceStatus.RUNNING.value
            instance.failed_at = None
            instance.error_message = None
            await self.db.commit()
            logger.info("Retrying step", instance_id=instance.id, step_id=step.id)

            await self._run_step(instance, step)
            await self._advance(instance)
            return instance

    # ─── Internals (caller holds the instance lock) ──────

    @staticmethod
    def _ensure_waiting(instance: WorkflowInstance, execution: WorkflowExecution) -> None:
        if execution.status != ExecutionStatus.RUNNING.value:
            raise ConflictError(f"Execution {execution.id} is {execution.status}")
        if instance.status != InstanceStatus.RUNNING.value:
            raise ConflictError(f"Workflow instance is {instance.status}")

    async def _advance(self, instance: WorkflowInstance) -> None:
        with workflow_log_context(instance.id, instance.organization_id):
            while instance.status == InstanceStatus.RUNNING.value:
                eligible = (await self._graph_state(instance)).eligible()
                if not eligible:
                    break
                for step in eligible:
                    await self._run_step(instance, step)
            await self._check_completion(instance)

    async def _check_completion(self, instance: WorkflowInstance) -> None:
        if instance.status != InstanceStatus.RUNNING.value:
            return

        state = await self._graph_state(instance)
        if state.is_complete:
            instance.status = InstanceStatus.COMPLETED.value
            instance.completed_at = utc_now()
            await self.db.commit()
            logger.info("Instance completed", instance_id=instance.id, steps=len(state.steps))
            return

        if state.has_running or state.eligible():
            return

        failures = state.blocking_failures()
        if failures:
            instance.status = InstanceStatus.FAILED.value
            instance.failed_at = utc_now()
            instance.error_message = "Required step failed: " + "; ".join(
                f"{step.name} ({execution.error_message})" for step, execution in failures
            )
            await self.db.commit()
            logger.warning(
                "Instance failed",
                instance_id=instance.id,
                failed_steps=[step.name for step, _ in failures],
            )

    def _timeout_for(self, step: WorkflowStep) -> float:
        if step.timeout_minutes:
            return float(step.timeout_minutes) * 60
        return self.settings.STEP_DEFAULT_TIMEOUT_SECONDS

    async def _run_step(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        assigned_to: Optional[str] = None,
    ) -> WorkflowExecution:
        """Create an execution for ``step`` and run its handler."""
        execution = WorkflowExecution(
            instance_id=instance.id,
            step_id=step.id,
            assigned_to=assigned_to,
            status=ExecutionStatus.RUNNING.value,
            started_at=utc_now(),
            attempts=0,
        )
        self.db.add(execution)
        await self.db.commit()

        log = logger.bind(instance_id=instance.id, execution_id=execution.id, step_type=step.step_type)

        try:
            handler = self.registry.create_handler(step.step_type)
        except UnknownStepTypeError as e:
            await self._mark_failed(execution, e.message, type(e).__name__)
            log.warning("No handler for step type")
            return execution

        raw_config: dict[str, Any] = dict(step.configuration or {})
        try:
            retry = RetryStrategy.from_dict(raw_config.pop("retry", None))
        except (TypeError, ValueError) as e:
            error = InvalidRetryConfigError(str(e))
            await self._mark_failed(execution, error.message, type(error).__name__)
            log.warning("Invalid retry configuration", error=str(e))
            return execution

        ctx = StepContext(
            db=self.db,
            instance=instance,
            step=step,
            execution=execution,
            configuration=resolve_config(raw_config, instance.context_data or {}),
            raw_configuration=raw_config,
            context_data=dict(instance.context_data or {}),
            assignment_service=self.assignment_service,
            notification_service=self.notification_service,
            email_transport=self.email_transport,
            delay_scheduler=self.delay_scheduler,
        )
        timeout = self._timeout_for(step)

        async def attempt() -> StepResult:
            # Handler writes live in a savepoint so a failed flush only discards them
            savepoint = await self.db.begin_nested()
            try:
                result = await asyncio.wait_for(handler.run(ctx), timeout=timeout)
            except asyncio.TimeoutError:
                result = StepResult(success=False, error=StepTimeoutError(timeout))

            if result.success:
                try:
                    await savepoint.commit()
                    return result
                except SQLAlchemyError as e:
                    result = StepResult(success=False, error=HandlerFailureError(step.step_type, e))

            await savepoint.rollback()
            await self.db.refresh(execution)
            return result

        with workflow_log_context(instance.id, instance.organization_id):
            result, attempts = await run_with_retry(attempt, retry)
        execution.attempts = attempts

        if not result.success:
            await self._mark_failed(execution, result.error_message, result.error_type)
        elif result.completed:
            await self._mark_completed(instance, execution, result.output)
        else:
            execution.output = result.output
            await self.db.commit()
            log.info("Step waiting", step_name=step.name)
        return execution

    async def _mark_completed(self, instance: WorkflowInstance, execution: WorkflowExecution, output: dict) -> None:
        execution.status = ExecutionStatus.COMPLETED.value
        execution.output = output
        execution.completed_at = utc_now()
        execution.resume_at = None

        merged = dict(instance.context_data or {})
        merged.update({k: v for k, v in output.items() if k not in RESERVED_CONTEXT_KEYS})
        instance.context_data = merged
        await self.db.commit()

    async def _mark_failed(self, execution: WorkflowExecution, message: Optional[str], error_type: Optional[str]) -> None:
        execution.status = ExecutionStatus.FAILED.value
        execution.error_message = message
        execution.error_type = error_type
        execution.failed_at = utc_now()
        execution.resume_at = None
        await self.db.commit()
        logger.warning(
            "Step execution failed",
            instance_id=execution.instance_id,
            execution_id=execution.id,
            error_type=error_type,
            error=message,
        )
