"""Task model (directory record created and updated by workflow steps)."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import Priority, TaskStatus
from db.base import BaseModel


class Task(BaseModel):
    """A unit of work owned by a user.

    Attributes:
        organization_id: Tenant
        department_id: Owning department
        title / description: Task text
        priority: LOW, MEDIUM, HIGH or URGENT
        status: TODO, IN_PROGRESS or DONE
        assignee_id: User the task is assigned to
        assignment_method: AUTO (assignment rules) or MANUAL, None while unassigned
        due_date: Optional deadline
        created_by: User who created the task
    """

    __tablename__ = "tasks"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    department_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    title: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[str] = mapped_column(default=Priority.MEDIUM.value)
    status: Mapped[str] = mapped_column(default=TaskStatus.TODO.value, index=True)
    assignee_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    assignment_method: Mapped[Optional[str]] = mapped_column(nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(nullable=True)
