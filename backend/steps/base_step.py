"""
Base handler interface for workflow step types.

Every step type (task creation, approval, delay, ...) is implemented by a
BaseStepHandler subclass registered in the StepHandlerRegistry. The
engine builds a StepContext for each execution and calls run().
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import HandlerFailureError, StepHandlerError
from db.models.workflow_execution import WorkflowExecution
from db.models.workflow_instance import WorkflowInstance
from db.models.workflow_step import WorkflowStep

logger = structlog.get_logger(__name__)


@dataclass
class StepContext:
    """Everything a handler may touch while executing one step.

    ``configuration`` has ``{{var}}`` tokens already substituted from
    ``context_data``; ``raw_configuration`` is the step's stored map.
    Collaborators are injected by the engine.
    """

    db: AsyncSession
    instance: WorkflowInstance
    step: WorkflowStep
    execution: WorkflowExecution
    configuration: Dict[str, Any]
    raw_configuration: Dict[str, Any]
    context_data: Dict[str, Any]
    assignment_service: Any = None
    notification_service: Any = None
    email_transport: Any = None
    delay_scheduler: Any = None

    @property
    def organization_id(self) -> str:
        return self.instance.organization_id

    @property
    def triggered_by(self) -> Optional[str]:
        return self.instance.triggered_by


class StepResult:
    """Standardized result from a step handler.

    ``completed=False`` means the handler succeeded but the execution
    stays RUNNING until an external event (approval response, delay
    timer) completes it.
    """

    def __init__(
        self,
        success: bool,
        output: Optional[Dict[str, Any]] = None,
        completed: bool = True,
        error: Optional[Exception] = None,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output or {}
        self.completed = completed
        self.error = error
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(timezone.utc)

    @classmethod
    def done(cls, **output) -> "StepResult":
        return cls(success=True, output=output)

    @classmethod
    def waiting(cls, **output) -> "StepResult":
        return cls(success=True, output=output, completed=False)

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "message", None) or str(self.error)

    @property
    def error_type(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "completed": self.completed,
            "error": self.error_message,
            "error_type": self.error_type,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseStepHandler(ABC):
    """
    Abstract base class for all step handlers.

    Subclasses must implement:
    - execute(ctx) -> StepResult
    - step_type (class property)
    - display_name (class property)
    """

    step_type: str = "base"
    display_name: str = "Base Step"
    description: str = "Abstract base step"
    config_keys: tuple = ()

    @abstractmethod
    async def execute(self, ctx: StepContext) -> StepResult:
        """
        Execute the step.

        Raise a StepHandlerError subclass for domain failures; any other
        exception is wrapped in HandlerFailureError by run().
        """
        pass

    async def run(self, ctx: StepContext) -> StepResult:
        """
        Run the handler with timing and error handling.

        This is the entry point called by the workflow engine. Exceptions
        never escape; they are returned as a failed StepResult.
        """
        start = time.monotonic()
        log = logger.bind(
            step_type=self.step_type,
            instance_id=ctx.instance.id,
            execution_id=ctx.execution.id,
        )
        try:
            log.info("Step starting", step_name=ctx.step.name)
            result = await self.execute(ctx)
            result.duration_ms = (time.monotonic() - start) * 1000

            log.info(
                "Step finished",
                success=result.success,
                completed=result.completed,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            error = e if isinstance(e, StepHandlerError) else HandlerFailureError(self.step_type, e)
            log.warning(
                "Step failed",
                error=str(e),
                error_type=type(error).__name__,
                duration_ms=round(duration_ms, 2),
            )
            return StepResult(success=False, error=error, duration_ms=duration_ms)

    @classmethod
    def describe(cls) -> Dict[str, Any]:
        return {
            "step_type": cls.step_type,
            "display_name": cls.display_name,
            "description": cls.description,
            "config_keys": list(cls.config_keys),
        }
