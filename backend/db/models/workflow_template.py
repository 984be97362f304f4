"""WorkflowTemplate model for the workflow orchestration engine."""

from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class WorkflowTemplate(BaseModel):
    """A reusable workflow definition: a DAG of steps plus its triggers.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning tenant
        name: Template name
        description: Template description
        category: Free-form grouping used for filtering
        created_by: User id of the author
        details: Free-form metadata map
        version: Starts at 1, incremented by every metadata edit
        is_active: Inactive templates cannot start new instances
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "workflow_templates"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(default=1)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)

    # Relationships
    steps: Mapped[list["WorkflowStep"]] = relationship(
        "WorkflowStep",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.step_order",
        lazy="selectin",
    )
    triggers: Mapped[list["WorkflowTrigger"]] = relationship(
        "WorkflowTrigger",
        back_populates="template",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
