"""
Effective permission resolution.

A user's effective set is built in two passes over a map keyed by
(module, action): the group's grants first, then the user's overrides.
The second pass overwrites unconditionally, so an override with
``is_allowed=False`` revokes a group grant and one with ``is_allowed=True``
grants something the group denies or never mentions. Anything absent from
the map is denied.
"""
from collections.abc import Iterable
from typing import Any, Dict, List, Sequence, Tuple

from app.core.exceptions import ValidationError
from app.features.permissions.constants import ACTIONS
from app.features.permissions.schemas import (
    EffectivePermission,
    GrantResponse,
    PermissionRef,
    UserPermissionsResponse,
    PERMISSION_NAME_PATTERN,
)
from app.features.permissions.store import PermissionStore
from app.utils import get_logger


log = get_logger(__name__)

PermissionKeyTuple = Tuple[str, str]
EffectiveMap = Dict[PermissionKeyTuple, EffectivePermission]


def build_permission_key(module: str, action: str) -> str:
    return f"{module}:{action}"


def parse_permission_key(permission_key: str) -> PermissionKeyTuple:
    """Split ``"module:action"``; raises ValidationError if malformed."""
    module, sep, action = permission_key.partition(":")
    if not sep or not PERMISSION_NAME_PATTERN.match(module) or not PERMISSION_NAME_PATTERN.match(action):
        raise ValidationError("Malformed permission key", {"key": permission_key})
    return module, action


def merge_permission_layers(
    group_grants: Iterable[Tuple[Any, bool]],
    user_grants: Iterable[Tuple[Any, bool]],
) -> EffectiveMap:
    """
    Merge group grants and user overrides into one effective map.

    Args:
        group_grants: (permission, is_allowed) pairs from the user's group
        user_grants: (permission, is_allowed) overrides of the user

    ``permission`` may be an ORM Permission or anything with id, module,
    action and description attributes.
    """
    effective: EffectiveMap = {}
    for source, grants in (("group", group_grants), ("user", user_grants)):
        for permission, is_allowed in grants:
            ref = PermissionRef.model_validate(permission)
            effective[(ref.module, ref.action)] = EffectivePermission(
                permission=ref,
                is_allowed=is_allowed,
                source=source,
            )
    return effective


class PermissionResolver:
    """
    Answers permission queries for users.

    One instance serves one request: the effective map of each user is
    memoized and dropped whenever a store transaction on the same session
    ends, so a mutation is never followed by a stale answer.
    """

    def __init__(self, store: PermissionStore):
        self.store = store
        self._cache: Dict[str, EffectiveMap] = {}
        store.add_invalidation_hook(self.invalidate)

    def invalidate(self) -> None:
        self._cache.clear()

    async def _effective_map(self, user_id: str) -> EffectiveMap:
        if user_id in self._cache:
            return self._cache[user_id]

        user = await self.store.get_user(user_id)
        group_grants: List[Tuple[Any, bool]] = []
        if user.group_id:
            group = await self.store.get_group(user.group_id)
            if group.is_active:
                group_grants = await self.store.find_group_permissions(group.id)
            else:
                log.debug("Group %s of user %s is inactive; contributing no permissions", group.id, user_id)
        user_grants = await self.store.find_user_permissions(user_id)

        effective = merge_permission_layers(group_grants, user_grants)
        self._cache[user_id] = effective
        return effective

    async def get_effective_permissions(self, user_id: str) -> List[EffectivePermission]:
        """Merged allow/deny table for a user; NotFound if the user does not exist."""
        return list((await self._effective_map(user_id)).values())

    async def has_permission(self, user_id: str, module: str, action: str) -> bool:
        entry = (await self._effective_map(user_id)).get((module, action))
        allowed = entry.is_allowed if entry is not None else False
        log.debug(
            "User %s %s %s:%s (%s)",
            user_id,
            "granted" if allowed else "denied",
            module,
            action,
            entry.source if entry is not None else "no entry",
        )
        return allowed

    async def has_permission_by_key(self, user_id: str, permission_key: str) -> bool:
        module, action = parse_permission_key(permission_key)
        return await self.has_permission(user_id, module, action)

    async def has_any(self, user_id: str, permissions: Sequence[PermissionKeyTuple]) -> bool:
        """True if at least one (module, action) is allowed; False for an empty list."""
        await self._effective_map(user_id)
        for module, action in permissions:
            if await self.has_permission(user_id, module, action):
                return True
        return False

    async def has_all(self, user_id: str, permissions: Sequence[PermissionKeyTuple]) -> bool:
        """True if every (module, action) is allowed; True for an empty list."""
        await self._effective_map(user_id)
        for module, action in permissions:
            if not await self.has_permission(user_id, module, action):
                return False
        return True

    async def can_manage(self, user_id: str, module: str) -> bool:
        return await self.has_permission(user_id, module, ACTIONS.MANAGE)

    async def breakdown(self, user_id: str) -> UserPermissionsResponse:
        """Effective set together with the group and user layers it was merged from."""
        effective = await self.get_effective_permissions(user_id)
        user = await self.store.get_user(user_id)
        group_active = False
        group_permissions: List[GrantResponse] = []
        if user.group_id:
            group = await self.store.get_group(user.group_id)
            group_active = group.is_active
            group_permissions = await self.store.group_grants(group.id)

        by_module: Dict[str, List[EffectivePermission]] = {}
        for entry in effective:
            by_module.setdefault(entry.permission.module, []).append(entry)

        return UserPermissionsResponse(
            user_id=user_id,
            group_id=user.group_id,
            group_active=group_active,
            group_permissions=group_permissions,
            user_permissions=await self.store.user_grants(user_id),
            effective=effective,
            by_module=by_module,
        )
