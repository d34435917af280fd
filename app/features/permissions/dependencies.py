"""
Permission checking dependencies for route protection.

Implements:
- Per-request PermissionStore and PermissionResolver
- Guards requiring one, any or all (module, action) pairs

Guards fail closed: when the store cannot answer, the request is refused
with 403 rather than let through.
"""
from typing import Annotated, Awaitable, Callable, List
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.exceptions import StoreError
from app.features.permissions.resolver import PermissionResolver, build_permission_key
from app.features.permissions.store import PermissionStore
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


def get_permission_store(db: Annotated[AsyncSession, Depends(get_db)]) -> PermissionStore:
    return PermissionStore(db)


def get_resolver(store: Annotated[PermissionStore, Depends(get_permission_store)]) -> PermissionResolver:
    """One resolver per request; FastAPI caches it across the request's dependencies."""
    return PermissionResolver(store)


async def _guard(
    user: User,
    check: Callable[[], Awaitable[bool]],
    denied_detail: str,
) -> User:
    try:
        allowed = await check()
    except StoreError as e:
        log.warning("Permission check for user %s failed closed: %s", user.id, e.detail)
        allowed = False

    if not allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=denied_detail)
    return user


def require_permission(module: str, action: str):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/hotels")
        async def create_hotel(
            user: User = Depends(require_permission("hotels", "create"))
        ):
            # User is allowed to create hotels
            pass

    Returns:
        Dependency function that returns the current user if they have permission

    Raises:
        HTTPException: 403 if user doesn't have permission
    """
    async def permission_dependency(
        current_user: Annotated[User, Depends(get_current_user)],
        resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    ) -> User:
        return await _guard(
            current_user,
            lambda: resolver.has_permission(current_user.id, module, action),
            f"Permission denied: {build_permission_key(module, action)}",
        )

    return permission_dependency


def require_any_permission(permissions: List[tuple[str, str]]):
    """
    FastAPI dependency to require ANY of the specified permissions.

    Usage:
        @router.get("/reports")
        async def get_reports(
            user: User = Depends(require_any_permission([("reports", "read"), ("reports", "manage")]))
        ):
            pass
    """
    keys = ", ".join(build_permission_key(m, a) for m, a in permissions)

    async def permission_dependency(
        current_user: Annotated[User, Depends(get_current_user)],
        resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    ) -> User:
        return await _guard(
            current_user,
            lambda: resolver.has_any(current_user.id, permissions),
            f"Permission denied: requires one of {keys}",
        )

    return permission_dependency


def require_all_permissions(permissions: List[tuple[str, str]]):
    """FastAPI dependency to require EVERY one of the specified permissions."""
    keys = ", ".join(build_permission_key(m, a) for m, a in permissions)

    async def permission_dependency(
        current_user: Annotated[User, Depends(get_current_user)],
        resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    ) -> User:
        return await _guard(
            current_user,
            lambda: resolver.has_all(current_user.id, permissions),
            f"Permission denied: requires all of {keys}",
        )

    return permission_dependency
