"""
User model with ULID primary keys.
"""
from datetime import datetime
from typing import TYPE_CHECKING
from sqlalchemy import String, Boolean, ForeignKey, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid

if TYPE_CHECKING:
    from app.features.permissions.models import UserGroup


class User(Base, TimestampMixin):
    """
    Back-office user (staff account).

    Belongs to one UserGroup and may carry per-user permission overrides.
    Users are never cascade-deleted with their group: the group FK is
    RESTRICT and group deletion is guarded in the store.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # User information
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Status flags
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Nullable only while a user is being moved between groups
    group_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("user_groups.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )

    # Track last login
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    group: Mapped["UserGroup | None"] = relationship(
        "UserGroup",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username!r})>"
