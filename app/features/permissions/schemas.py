"""
Pydantic schemas for permission management.

Request and response models for permissions, groups, grant links,
effective-permission queries and import/export.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


# Letter first, then letters, digits or underscores
PERMISSION_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def check_permission_name(value: str, field: str = "name") -> str:
    """Raise ValueError unless ``value`` is a valid module/action name."""
    if not PERMISSION_NAME_PATTERN.match(value):
        raise ValueError(
            f"{field} must start with a letter and contain only letters, digits and underscores"
        )
    return value


class LinkMode(str, Enum):
    """How a list of permission ids is applied to a group or user."""
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionKey(BaseModel):
    """A (module, action) pair."""
    module: str = Field(..., min_length=1, max_length=100, description="Module (e.g., 'hotels', 'bookings')")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g., 'read', 'manage')")

    @field_validator("module")
    @classmethod
    def module_format(cls, v: str) -> str:
        return check_permission_name(v, "module")

    @field_validator("action")
    @classmethod
    def action_format(cls, v: str) -> str:
        return check_permission_name(v, "action")

    @property
    def key(self) -> str:
        return f"{self.module}:{self.action}"


class PermissionCreate(PermissionKey):
    """Schema for creating a new permission."""
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")


class PermissionUpdate(BaseModel):
    """Only the description of a permission is mutable."""
    description: Optional[str] = Field(None, max_length=1000)


class PermissionRef(BaseModel):
    """Permission as embedded in grants and effective sets."""
    id: str
    module: str
    action: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PermissionResponse(PermissionRef):
    """Schema for permission response."""
    created_at: datetime
    updated_at: datetime


class PermissionUsageResponse(PermissionResponse):
    """Permission with the number of grant rows that reference it."""
    group_count: int = 0
    user_count: int = 0


# ============================================================================
# Group Schemas
# ============================================================================

class GroupBase(BaseModel):
    """Base group schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique group name")
    description: Optional[str] = Field(None, max_length=1000, description="Group description")
    is_active: bool = True


class GroupCreate(GroupBase):
    """Schema for creating a new group, optionally with its initial grants."""
    permission_ids: List[str] = Field(default_factory=list)


class GroupUpdate(BaseModel):
    """Schema for updating a group."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None

    @field_validator("name", "is_active")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may be omitted but not null")
        return v


class GroupResponse(GroupBase):
    """Schema for group response."""
    id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupWithCounts(GroupResponse):
    """Group with its member and grant counts."""
    user_count: int = 0
    permission_count: int = 0


# ============================================================================
# Grant Schemas
# ============================================================================

class GrantResponse(BaseModel):
    """A GroupPermission or UserPermission row."""
    permission: PermissionRef
    is_allowed: bool

    model_config = ConfigDict(from_attributes=True)


class PermissionLinkRequest(BaseModel):
    """Apply a list of permission ids to one group or user."""
    permission_ids: List[str] = Field(..., min_length=1, description="Permission IDs")
    mode: LinkMode = Field(..., description="add, remove or replace")
    is_allowed: bool = Field(True, description="Value stored on inserted links")


class PermissionOverrideRequest(BaseModel):
    """Set the allow/deny value of a single link."""
    permission_id: str
    is_allowed: bool


class LinkResult(BaseModel):
    """Outcome of an add/remove/replace call."""
    mode: LinkMode
    added: int = 0
    removed: int = 0
    grants: List[GrantResponse] = []


# ============================================================================
# Bulk Schemas
# ============================================================================

class BulkPermissionCreate(BaseModel):
    permissions: List[PermissionCreate] = Field(..., min_length=1)


class BulkIdsRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class BulkGroupStatusRequest(BaseModel):
    group_ids: List[str] = Field(..., min_length=1)
    is_active: bool


class BulkGroupPermissionsRequest(BaseModel):
    group_ids: List[str] = Field(..., min_length=1)
    permission_ids: List[str] = Field(..., min_length=1)
    mode: LinkMode


class BulkOperationResponse(BaseModel):
    """Response for bulk operations."""
    message: str
    affected_count: int


# ============================================================================
# Effective Permission Schemas
# ============================================================================

class EffectivePermission(BaseModel):
    """One row of a user's merged allow/deny table."""
    permission: PermissionRef
    is_allowed: bool
    source: Literal["group", "user"]

    @property
    def key(self) -> str:
        return f"{self.permission.module}:{self.permission.action}"


class PermissionCheckRequest(PermissionKey):
    """Schema for checking if the current user has a permission."""


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    reason: Optional[str] = None


class UserPermissionsResponse(BaseModel):
    """Everything that contributes to a user's access."""
    user_id: str
    group_id: Optional[str] = None
    group_active: bool = False
    group_permissions: List[GrantResponse] = []
    user_permissions: List[GrantResponse] = []
    effective: List[EffectivePermission] = []
    by_module: Dict[str, List[EffectivePermission]] = {}


# ============================================================================
# Import / Export Schemas
# ============================================================================

class ImportOptions(BaseModel):
    skip_duplicates: bool = True
    update_existing: bool = False
    validate_only: bool = False


class GroupImportOptions(ImportOptions):
    create_missing_permissions: bool = False


class PermissionImportRequest(BaseModel):
    permissions: List[PermissionCreate] = Field(..., min_length=1)
    options: ImportOptions = Field(default_factory=ImportOptions)


class GroupImportItem(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: bool = True
    permissions: List[PermissionKey] = Field(default_factory=list)


class GroupImportRequest(BaseModel):
    groups: List[GroupImportItem] = Field(..., min_length=1)
    options: GroupImportOptions = Field(default_factory=GroupImportOptions)


class ImportReport(BaseModel):
    """
    Result of an import call.

    With ``validate_only`` only the partition counts and ``preview`` are
    filled; otherwise the created/updated/skipped counters and the per-item
    ``errors`` collected without aborting the batch.
    """
    validate_only: bool = False
    valid: bool = True
    total: int
    new: int = 0
    duplicates: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    created_permissions: int = 0
    missing_permissions: List[str] = []
    errors: List[str] = []
    preview: Optional[Dict[str, List[str]]] = None


class PermissionExport(BaseModel):
    module: str
    action: str
    description: Optional[str] = None
    group_count: Optional[int] = None
    user_count: Optional[int] = None


class GroupExport(BaseModel):
    name: str
    description: Optional[str] = None
    is_active: bool = True
    permissions: List[PermissionKey] = []


# ============================================================================
# Statistics Schemas
# ============================================================================

class GroupStatsOverview(BaseModel):
    total_groups: int
    active_groups: int
    inactive_groups: int
    total_users: int
    users_with_group: int
    users_without_group: int
    total_permissions: int
    used_permissions: int = Field(..., description="Permissions granted by at least one group")
    unused_permissions: int


class GroupCount(BaseModel):
    id: str
    name: str
    is_active: bool
    count: int


class PermissionCount(BaseModel):
    permission: PermissionRef
    usage_count: int


class GroupStatsResponse(BaseModel):
    """Dashboard figures for groups and the permissions they grant."""
    overview: GroupStatsOverview
    top_groups_by_users: List[GroupCount]
    top_groups_by_permissions: List[GroupCount]
    user_distribution: List[GroupCount] = Field(..., description="Every group with its member count, by name")
    top_permissions: List[PermissionCount]
    new_groups: int = Field(..., description="Groups created within the recent window")
    new_users: int
    since: datetime
