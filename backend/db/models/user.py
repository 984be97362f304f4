"""User model (directory record).

Users are managed by the identity service; the engine reads them to
build assignment pools and to address notifications.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import UserRole
from db.base import BaseModel


class User(BaseModel):
    """User model representing a member of an organization.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Tenant
        department_id: Department the user belongs to
        email: User email address
        name: Display name
        role: USER, DEPARTMENT_HEAD, ADMIN or SUPER_ADMIN
        skills: Free-form skill tags used by SKILLS_BASED assignment
        is_active: Whether the user can receive work
        last_seen_at: Last activity, used by AVAILABILITY_BASED assignment
    """

    __tablename__ = "users"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    department_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    email: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False, default="")
    role: Mapped[str] = mapped_column(default=UserRole.USER.value, index=True)
    skills: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
