"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from typing import Literal
from pydantic import BaseModel, EmailStr, Field, field_validator

from app.features.permissions.schemas import GroupCount, PermissionCount


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    full_name: str = Field(..., min_length=1, max_length=255)


class UserCreate(UserBase):
    """Schema for creating a new user."""
    group_id: str | None = Field(None, description="Group the user belongs to")
    is_active: bool = True


class UserUpdate(BaseModel):
    """Schema for updating user information."""
    email: EmailStr | None = None
    username: str | None = Field(None, min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    full_name: str | None = Field(None, min_length=1, max_length=255)
    group_id: str | None = None
    is_active: bool | None = None

    @field_validator("email", "username", "full_name", "is_active")
    @classmethod
    def not_null(cls, v):
        # group_id may be set to null to leave the group
        if v is None:
            raise ValueError("may be omitted but not null")
        return v


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    is_active: bool
    group_id: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BulkUserStatusRequest(BaseModel):
    user_ids: list[str] = Field(..., min_length=1)
    is_active: bool


class UserDeleteResponse(BaseModel):
    """Outcome of a delete request; ``deactivated`` when owned records block removal."""
    user_id: str
    result: Literal["deleted", "deactivated"]
    message: str


class UserStatsOverview(BaseModel):
    total_users: int
    active_users: int
    inactive_users: int
    users_with_group: int
    users_without_group: int
    users_with_overrides: int


class UserOverrideCount(BaseModel):
    id: str
    username: str
    full_name: str
    override_count: int


class UserStatsResponse(BaseModel):
    """Dashboard figures for staff accounts and their per-user overrides."""
    overview: UserStatsOverview
    group_distribution: list[GroupCount]
    top_users_by_overrides: list[UserOverrideCount]
    top_override_permissions: list[PermissionCount]
    new_users: int
    logged_in_last_week: int
    logged_in_recently: int
    never_logged_in: int
    since: datetime
