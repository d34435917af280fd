"""
User feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Query, status

from app.features.permissions.constants import ACTIONS, MODULES
from app.features.permissions.dependencies import get_permission_store, get_resolver, require_permission
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.schemas import (
    BulkOperationResponse,
    GrantResponse,
    LinkResult,
    PermissionLinkRequest,
    PermissionOverrideRequest,
    UserPermissionsResponse,
)
from app.features.permissions.store import PermissionStore
from app.features.users.dependencies import get_current_user, get_user_store
from app.features.users.models import User
from app.features.users.schemas import (
    BulkUserStatusRequest,
    UserCreate,
    UserDeleteResponse,
    UserResponse,
    UserStatsResponse,
    UserUpdate,
)
from app.features.users.store import UserStore


router = APIRouter(tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user's profile."""
    return user


@router.get("/me/permissions", response_model=UserPermissionsResponse)
async def get_current_user_permissions(
    user: Annotated[User, Depends(get_current_user)],
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
):
    """Effective permissions of the current user."""
    return await resolver.breakdown(user.id)


@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    data: UserCreate,
    store: Annotated[UserStore, Depends(get_user_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.CREATE)),
):
    """Create a user, optionally placing them in a group."""
    return await store.create_user(data)


@router.get("/", response_model=list[UserResponse])
async def list_users(
    store: Annotated[UserStore, Depends(get_user_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.READ)),
    group_id: str | None = None,
    is_active: bool | None = None,
    search: str | None = None,
    skip: int = 0,
    limit: int = 50,
):
    """List users with optional filtering."""
    return await store.list_users(group_id=group_id, is_active=is_active, search=search, skip=skip, limit=limit)


@router.patch("/bulk/status", response_model=BulkOperationResponse)
async def bulk_update_user_status(
    payload: BulkUserStatusRequest,
    store: Annotated[UserStore, Depends(get_user_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.UPDATE)),
):
    """Activate or deactivate several users."""
    updated = await store.set_users_active(payload.user_ids, payload.is_active)
    state = "activated" if payload.is_active else "deactivated"
    return BulkOperationResponse(message=f"{updated} users {state}", affected_count=updated)


@router.get("/stats", response_model=UserStatsResponse)
async def get_user_stats(
    store: Annotated[UserStore, Depends(get_user_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.READ)),
    limit: int = Query(10, ge=1, le=100),
    recent_days: int = Query(30, ge=1, le=365),
):
    """Account, login and override counts for the admin dashboard."""
    return await store.stats(limit=limit, recent_days=recent_days)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_by_id(
    user_id: str,
    store: Annotated[UserStore, Depends(get_user_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.READ)),
):
    """Get a user by ID."""
    return await store.get_user(user_id)


@router.patch("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    data: UserUpdate,
    store: Annotated[UserStore, Depends(get_user_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.UPDATE)),
):
    """Update a user; moving them to another group requires that group to exist."""
    return await store.update_user(user_id, data)


@router.delete("/{user_id}", response_model=UserDeleteResponse)
async def delete_user(
    user_id: str,
    store: Annotated[UserStore, Depends(get_user_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.DELETE)),
):
    """
    Delete a user.

    A user who owns hotels, rooms or bookings is deactivated instead and
    the response says so.
    """
    result, counts = await store.delete_user(user_id, actor_id=admin.id)
    if result == "deleted":
        message = "User deleted"
    else:
        owned = ", ".join(f"{n} {kind}" for kind, n in counts.items() if n)
        message = f"User owns records ({owned}) and was deactivated instead"
    return UserDeleteResponse(user_id=user_id, result=result, message=message)


# ============================================================================
# Permission overrides
# ============================================================================

@router.get("/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.READ)),
):
    """Effective permissions of a user with the group and override layers."""
    return await resolver.breakdown(user_id)


@router.post("/{user_id}/permissions", response_model=LinkResult)
async def link_user_permissions(
    user_id: str,
    payload: PermissionLinkRequest,
    store: Annotated[PermissionStore, Depends(get_permission_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.UPDATE)),
):
    """Add, remove or replace a user's permission overrides."""
    return await store.link_user_permissions(user_id, payload.permission_ids, payload.mode, payload.is_allowed)


@router.put("/{user_id}/permissions", response_model=GrantResponse)
async def set_user_permission(
    user_id: str,
    payload: PermissionOverrideRequest,
    store: Annotated[PermissionStore, Depends(get_permission_store)],
    admin: User = Depends(require_permission(MODULES.USERS, ACTIONS.UPDATE)),
):
    """Allow or deny one permission for a user, regardless of their group."""
    return await store.upsert_user_permission(user_id, payload.permission_id, payload.is_allowed)
