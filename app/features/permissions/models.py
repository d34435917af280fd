"""
Permission, UserGroup and the two grant tables.

Authorization is two-tier:
- A user belongs to one UserGroup; GroupPermission rows grant (or deny)
  permissions to every member.
- UserPermission rows override the group's value for a single user.

Join rows cascade with either parent. Users and groups themselves are
never cascade-deleted; those deletions are guarded in the store.
"""
from sqlalchemy import String, ForeignKey, Text, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class Permission(Base, TimestampMixin):
    """
    A grantable capability identified by (module, action).

    Examples:
    - module="hotels", action="create"
    - module="bookings", action="manage"
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("module", "action", name="uq_permissions_module_action"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    module: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def key(self) -> str:
        return f"{self.module}:{self.action}"

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, module={self.module}, action={self.action})>"


class UserGroup(Base, TimestampMixin):
    """
    Named bundle of permissions assignable to many users.

    Examples: Administrator, Manager, Receptionist
    """
    __tablename__ = "user_groups"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<UserGroup(id={self.id}, name={self.name!r}, active={self.is_active})>"


class GroupPermission(Base, TimestampMixin):
    """Grants a Permission to a UserGroup."""
    __tablename__ = "group_permissions"
    __table_args__ = (
        UniqueConstraint("group_id", "permission_id", name="uq_group_permissions_group_permission"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("user_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    is_allowed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<GroupPermission(group_id={self.group_id}, permission_id={self.permission_id}, "
            f"allowed={self.is_allowed})>"
        )


class UserPermission(Base, TimestampMixin):
    """Per-user override of a Permission, independent of the user's group."""
    __tablename__ = "user_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", name="uq_user_permissions_user_permission"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    is_allowed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<UserPermission(user_id={self.user_id}, permission_id={self.permission_id}, "
            f"allowed={self.is_allowed})>"
        )
