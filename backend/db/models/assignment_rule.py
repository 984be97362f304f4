"""AssignmentRule model."""

from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class AssignmentRule(BaseModel):
    """Rule that picks an assignee for a task or workflow step.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Tenant
        name / description: Display fields
        conditions: {field: {operator, value}}; all must hold
        assignment_logic: {"type": <AssignmentStrategy>, ...strategy options and state}
        priority: Rules are evaluated in descending priority
        is_active: Inactive rules are skipped
        created_by: Author user id
        logic_version: Bumped on every write of assignment_logic; used as a
            compare-and-swap guard for the round-robin cursor
    """

    __tablename__ = "assignment_rules"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    assignment_logic: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(default=100, index=True)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    logic_version: Mapped[int] = mapped_column(default=0)
