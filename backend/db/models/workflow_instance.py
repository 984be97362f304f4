"""WorkflowInstance model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import InstanceStatus
from db.base import BaseModel


class WorkflowInstance(BaseModel):
    """One run of a workflow template.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Tenant the instance runs for
        template_id: Foreign key to WorkflowTemplate
        template_version: Template version at start time
        context_data: Shared variables; completed step output is merged in
        status: RUNNING, COMPLETED, FAILED, CANCELLED or PAUSED
        triggered_by: User id that started the instance
        started_at: Start timestamp
        completed_at: Set when the instance completes
        failed_at: Set when the instance fails
        error_message: Reason for failure or cancellation
    """

    __tablename__ = "workflow_instances"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    template_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_templates.id"),
        nullable=False,
        index=True,
    )
    template_version: Mapped[int] = mapped_column(default=1)
    context_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(default=InstanceStatus.RUNNING.value, index=True)
    triggered_by: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    executions: Mapped[list["WorkflowExecution"]] = relationship(
        "WorkflowExecution",
        back_populates="instance",
        order_by="WorkflowExecution.created_at",
        lazy="noload",
    )
