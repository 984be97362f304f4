"""WorkflowTrigger model.

Triggers are stored with their template and returned by the API. The
engine never fires them; instances are started explicitly.
"""

from typing import Optional

from sqlalchemy import JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import TriggerType
from db.base import BaseModel


class WorkflowTrigger(BaseModel):
    """Trigger definition attached to a workflow template.

    Attributes:
        id: UUID primary key
        template_id: FK → WorkflowTemplate
        name: Human-readable trigger name
        trigger_type: One of the TriggerType enum values
        configuration: Trigger-type specific configuration
        is_active: Whether this trigger is enabled
    """

    __tablename__ = "workflow_triggers"

    template_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False)
    trigger_type: Mapped[str] = mapped_column(default=TriggerType.MANUAL.value, index=True)
    configuration: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)

    template: Mapped["WorkflowTemplate"] = relationship(
        "WorkflowTemplate", back_populates="triggers", lazy="noload"
    )
