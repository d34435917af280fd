"""
Permission management API routes.

Provides endpoints for managing permissions, groups, group grants,
import/export, and checking the caller's own permissions. Store errors
propagate to the application's PermissionSystemError handler.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, Query, status

from app.features.permissions.constants import ACTIONS, MODULES
from app.features.permissions.dependencies import (
    get_permission_store,
    get_resolver,
    require_permission,
)
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.schemas import (
    BulkGroupPermissionsRequest,
    BulkGroupStatusRequest,
    BulkIdsRequest,
    BulkOperationResponse,
    BulkPermissionCreate,
    GrantResponse,
    GroupCreate,
    GroupExport,
    GroupImportRequest,
    GroupResponse,
    GroupStatsResponse,
    GroupUpdate,
    GroupWithCounts,
    ImportReport,
    LinkResult,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionCreate,
    PermissionExport,
    PermissionImportRequest,
    PermissionLinkRequest,
    PermissionOverrideRequest,
    PermissionResponse,
    PermissionUpdate,
    PermissionUsageResponse,
)
from app.features.permissions.store import PermissionStore
from app.features.permissions.transfer import (
    export_groups,
    export_permissions,
    import_groups,
    import_permissions,
)
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

Store = Annotated[PermissionStore, Depends(get_permission_store)]


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
):
    """Check if the current user has a specific permission."""
    has_perm = await resolver.has_permission(current_user.id, check_request.module, check_request.action)
    return PermissionCheckResponse(
        has_permission=has_perm,
        reason=None if has_perm else "Permission denied",
    )


# ============================================================================
# Bulk, Import and Export Routes
# ============================================================================

@router.post("/bulk", response_model=List[PermissionResponse], status_code=status.HTTP_201_CREATED)
async def bulk_create_permissions(
    payload: BulkPermissionCreate,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.CREATE)),
):
    """Create several permissions at once; nothing is created if any key is taken."""
    return await store.bulk_create_permissions(payload.permissions)


@router.delete("/bulk", response_model=BulkOperationResponse)
async def bulk_delete_permissions(
    payload: BulkIdsRequest,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.DELETE)),
):
    """Delete several permissions; refused while any is still granted."""
    deleted = await store.bulk_delete_permissions(payload.ids)
    return BulkOperationResponse(message=f"Deleted {deleted} permissions", affected_count=deleted)


@router.post("/import", response_model=ImportReport)
async def import_permission_list(
    payload: PermissionImportRequest,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.IMPORT)),
):
    """Import permissions, reconciling against stored keys."""
    log.info("User %s importing %d permissions", current_user.id, len(payload.permissions))
    return await import_permissions(store, payload)


@router.get("/export", response_model=List[PermissionExport], response_model_exclude_none=True)
async def export_permission_list(
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.EXPORT)),
    modules: Annotated[Optional[List[str]], Query()] = None,
    include_usage: bool = False,
):
    """Export permissions, optionally restricted to some modules."""
    return await export_permissions(store, modules, include_usage)


# ============================================================================
# Group Routes
# ============================================================================

@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    group: GroupCreate,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.CREATE)),
):
    """Create a new group, optionally with its initial permissions."""
    return await store.create_group(group)


@router.get("/groups", response_model=List[GroupWithCounts])
async def list_groups(
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.READ)),
    include_inactive: bool = True,
    skip: int = 0,
    limit: int = 100,
):
    """List groups with their member and permission counts."""
    rows = await store.list_groups(include_inactive=include_inactive, skip=skip, limit=limit)
    return [
        GroupWithCounts(
            **GroupResponse.model_validate(group).model_dump(),
            user_count=user_count,
            permission_count=permission_count,
        )
        for group, user_count, permission_count in rows
    ]


@router.delete("/groups/bulk", response_model=BulkOperationResponse)
async def bulk_delete_groups(
    payload: BulkIdsRequest,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.DELETE)),
):
    """Delete several groups; refused while any still has users."""
    deleted = await store.bulk_delete_groups(payload.ids)
    return BulkOperationResponse(message=f"Deleted {deleted} groups", affected_count=deleted)


@router.patch("/groups/bulk/status", response_model=BulkOperationResponse)
async def bulk_update_group_status(
    payload: BulkGroupStatusRequest,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.UPDATE)),
):
    """Activate or deactivate several groups."""
    updated = await store.set_groups_active(payload.group_ids, payload.is_active)
    state = "activated" if payload.is_active else "deactivated"
    return BulkOperationResponse(message=f"{updated} groups {state}", affected_count=updated)


@router.patch("/groups/bulk/permissions", response_model=BulkOperationResponse)
async def bulk_update_group_permissions(
    payload: BulkGroupPermissionsRequest,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.UPDATE)),
):
    """Add, remove or replace the same permissions on several groups."""
    updated = await store.link_groups_permissions(payload.group_ids, payload.permission_ids, payload.mode)
    return BulkOperationResponse(
        message=f"Applied {payload.mode.value} to {updated} groups",
        affected_count=updated,
    )


@router.post("/groups/import", response_model=ImportReport)
async def import_group_list(
    payload: GroupImportRequest,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.IMPORT)),
):
    """Import groups and their permissions by (module, action)."""
    log.info("User %s importing %d groups", current_user.id, len(payload.groups))
    return await import_groups(store, payload)


@router.get("/groups/export", response_model=List[GroupExport])
async def export_group_list(
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.EXPORT)),
    include_permissions: bool = True,
):
    """Export groups in the shape accepted by the group import."""
    return await export_groups(store, include_permissions)


@router.get("/groups/stats", response_model=GroupStatsResponse)
async def get_group_stats(
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.READ)),
    top: int = Query(5, ge=1, le=50),
    recent_days: int = Query(30, ge=1, le=365),
):
    """Group, membership and grant counts for the admin dashboard."""
    return await store.stats(top=top, recent_days=recent_days)


@router.get("/groups/{group_id}", response_model=GroupWithCounts)
async def get_group(
    group_id: str,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.READ)),
):
    """Get a specific group by ID."""
    group = await store.get_group(group_id)
    user_counts = await store.group_user_counts([group_id])
    grants = await store.find_group_permissions(group_id)
    return GroupWithCounts(
        **GroupResponse.model_validate(group).model_dump(),
        user_count=user_counts.get(group_id, 0),
        permission_count=len(grants),
    )


@router.put("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.UPDATE)),
):
    """Update a group."""
    return await store.update_group(group_id, group_update)


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.DELETE)),
):
    """Delete a group that no user belongs to."""
    await store.delete_group(group_id)


@router.get("/groups/{group_id}/permissions", response_model=List[GrantResponse])
async def get_group_permissions(
    group_id: str,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.READ)),
):
    """List the grants of a group."""
    return await store.group_grants(group_id)


@router.post("/groups/{group_id}/permissions", response_model=LinkResult)
async def link_group_permissions(
    group_id: str,
    payload: PermissionLinkRequest,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.UPDATE)),
):
    """Add, remove or replace permissions of a group."""
    return await store.link_group_permissions(group_id, payload.permission_ids, payload.mode, payload.is_allowed)


@router.put("/groups/{group_id}/permissions", response_model=GrantResponse)
async def set_group_permission(
    group_id: str,
    payload: PermissionOverrideRequest,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.GROUPS, ACTIONS.UPDATE)),
):
    """Allow or deny one permission for a group."""
    return await store.upsert_group_permission(group_id, payload.permission_id, payload.is_allowed)


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.CREATE)),
):
    """Create a new permission."""
    return await store.create_permission(permission)


@router.get("", response_model=List[PermissionResponse])
async def list_permissions(
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.READ)),
    module: Optional[str] = None,
    action: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List all permissions with optional filtering."""
    return await store.list_permissions(module=module, action=action, search=search, skip=skip, limit=limit)


@router.get("/{permission_id}", response_model=PermissionUsageResponse)
async def get_permission(
    permission_id: str,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.READ)),
):
    """Get a specific permission by ID with its usage counts."""
    permission = await store.get_permission(permission_id)
    group_count, user_count = (await store.permission_usage([permission_id])).get(permission_id, (0, 0))
    return PermissionUsageResponse(
        **PermissionResponse.model_validate(permission).model_dump(),
        group_count=group_count,
        user_count=user_count,
    )


@router.put("/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.UPDATE)),
):
    """Update a permission's description."""
    return await store.update_permission(permission_id, permission_update)


@router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    store: Store,
    current_user: User = Depends(require_permission(MODULES.PERMISSIONS, ACTIONS.DELETE)),
):
    """Delete a permission that is not granted anywhere."""
    await store.delete_permission(permission_id)
