"""Notification model (in-app notification record)."""

from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import NotificationType
from db.base import BaseModel


class Notification(BaseModel):
    """In-app notification addressed to one user."""

    __tablename__ = "notifications"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(nullable=False, index=True)
    title: Mapped[str] = mapped_column(nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    notification_type: Mapped[str] = mapped_column(default=NotificationType.WORKFLOW.value)
    is_read: Mapped[bool] = mapped_column(default=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
