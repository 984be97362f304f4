"""ApprovalRequest model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ApprovalDecision, Priority
from db.base import BaseModel


class ApprovalRequest(BaseModel):
    """Human approval gate created by an APPROVAL step.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Tenant
        execution_id: The RUNNING execution waiting on this request
        requested_by: User who started the instance
        approver_ids: Users allowed to decide
        title / description: Shown to approvers
        priority: LOW, MEDIUM, HIGH or URGENT
        due_date: Optional deadline
        decision: PENDING, APPROVED, REJECTED or CANCELLED
        responded_by / responded_at / response: Set on decision
        delegations: Records of {from, to, reason, delegated_at}
    """

    __tablename__ = "approval_requests"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    requested_by: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    approver_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    title: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[str] = mapped_column(default=Priority.MEDIUM.value, index=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decision: Mapped[str] = mapped_column(default=ApprovalDecision.PENDING.value, index=True)
    responded_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delegations: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
