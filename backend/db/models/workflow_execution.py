"""WorkflowExecution model: one attempt at running one step of an instance."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus
from db.base import BaseModel


class WorkflowExecution(BaseModel):
    """Step execution record.

    Attributes:
        id: Unique identifier (UUID string)
        instance_id: Foreign key to WorkflowInstance
        step_id: Foreign key to WorkflowStep
        assigned_to: Optional user the step was run for
        status: RUNNING, COMPLETED or FAILED
        output: Handler output, merged into the instance context on completion
        error_message: Failure message
        error_type: Exception class name of the failure
        started_at: When the handler was invoked
        completed_at: When the execution completed
        failed_at: When the execution failed
        attempts: Handler invocations, including transient retries
        resume_at: Wake-up time of a pending DELAY step
    """

    __tablename__ = "workflow_executions"

    instance_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_steps.id"),
        nullable=False,
        index=True,
    )
    assigned_to: Mapped[Optional[str]] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(default=ExecutionStatus.RUNNING.value, index=True)
    output: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(default=0)
    resume_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    instance: Mapped["WorkflowInstance"] = relationship(
        "WorkflowInstance", back_populates="executions", lazy="noload"
    )
