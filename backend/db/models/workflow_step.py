"""WorkflowStep model and the step dependency edge table."""

from typing import Optional

from sqlalchemy import JSON, Column, ForeignKey, Table, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, BaseModel

# Edge (step_id -> depends_on_step_id): step_id may only run once
# depends_on_step_id has a COMPLETED execution in the same instance.
workflow_step_dependencies = Table(
    "workflow_step_dependencies",
    Base.metadata,
    Column("step_id", ForeignKey("workflow_steps.id", ondelete="CASCADE"), primary_key=True),
    Column("depends_on_step_id", ForeignKey("workflow_steps.id", ondelete="CASCADE"), primary_key=True),
)


class WorkflowStep(BaseModel):
    """WorkflowStep model representing a single node of a template's DAG.

    Attributes:
        id: Unique identifier (UUID string)
        template_id: Foreign key to WorkflowTemplate
        key: Author-supplied handle, unique within the template
        name: Step name
        description: Step description
        step_type: One of StepType
        step_order: Display order and tie-break among eligible steps
        configuration: Handler-specific configuration map
        is_required: Whether a failure of this step fails the instance
        timeout_minutes: Handler time budget; settings default when unset
        dependencies: Steps that must complete before this one runs
    """

    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("template_id", "key", name="uq_workflow_steps_template_key"),)

    template_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    key: Mapped[str] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    step_type: Mapped[str] = mapped_column(nullable=False, index=True)
    step_order: Mapped[int] = mapped_column(nullable=False, default=0)
    configuration: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_required: Mapped[bool] = mapped_column(default=True)
    timeout_minutes: Mapped[Optional[float]] = mapped_column(nullable=True)

    # Relationships
    template: Mapped["WorkflowTemplate"] = relationship(
        "WorkflowTemplate", back_populates="steps", lazy="noload"
    )
    dependencies: Mapped[list["WorkflowStep"]] = relationship(
        "WorkflowStep",
        secondary=workflow_step_dependencies,
        primaryjoin=lambda: WorkflowStep.id == workflow_step_dependencies.c.step_id,
        secondaryjoin=lambda: WorkflowStep.id == workflow_step_dependencies.c.depends_on_step_id,
        lazy="selectin",
    )

    @property
    def depends_on(self) -> list[str]:
        """Keys of the steps this step depends on."""
        return [dep.key for dep in self.dependencies]
