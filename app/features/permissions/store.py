"""
Persistence for permissions, groups and the two grant tables.

Every mutation validates first and then mutates inside one transaction, so
a NotFound/Conflict never leaves partial changes behind. Bulk link edits
follow the add/remove/replace semantics:

- add: insert missing links, existing ones are skipped
- remove: delete matching links, absent ones are ignored
- replace: delete every link of the target, then insert the given set

Two concurrent ``replace`` calls on the same target are ordered by the
database (last commit wins); no extra locking is attempted.
"""
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Type

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from app.core.database.store import SessionStore
from app.core.exceptions import Conflict, NotFound, ValidationError
from app.features.permissions.models import (
    GroupPermission,
    Permission,
    UserGroup,
    UserPermission,
)
from app.features.permissions.schemas import (
    GrantResponse,
    GroupCount,
    GroupCreate,
    GroupStatsOverview,
    GroupStatsResponse,
    GroupUpdate,
    LinkMode,
    LinkResult,
    PermissionCount,
    PermissionCreate,
    PermissionRef,
    PermissionUpdate,
)
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

PermissionKeyTuple = Tuple[str, str]
GrantModel = Type[GroupPermission] | Type[UserPermission]


def find_duplicate_keys(keys: Iterable[str]) -> List[str]:
    """Keys that appear more than once, in first-repeat order."""
    seen = set()
    duplicates: List[str] = []
    for key in keys:
        if key in seen and key not in duplicates:
            duplicates.append(key)
        seen.add(key)
    return duplicates


class PermissionStore(SessionStore):
    """SQLAlchemy-backed permission store."""

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_user(self, user_id: str) -> User:
        result = await self._execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound("User not found", {"user_id": user_id})
        return user

    async def get_group(self, group_id: str) -> UserGroup:
        result = await self._execute(select(UserGroup).where(UserGroup.id == group_id))
        group = result.scalar_one_or_none()
        if group is None:
            raise NotFound("Group not found", {"group_id": group_id})
        return group

    async def get_permission(self, permission_id: str) -> Permission:
        result = await self._execute(select(Permission).where(Permission.id == permission_id))
        permission = result.scalar_one_or_none()
        if permission is None:
            raise NotFound("Permission not found", {"permission_id": permission_id})
        return permission

    async def _find_grants(self, model: GrantModel, owner_column, owner_id: str) -> List[Tuple[Permission, bool]]:
        stmt = (
            select(Permission, model.is_allowed)
            .join(model, model.permission_id == Permission.id)
            .where(owner_column == owner_id)
            .order_by(Permission.module, Permission.action)
        )
        result = await self._execute(stmt)
        return [(permission, is_allowed) for permission, is_allowed in result.all()]

    async def find_group_permissions(self, group_id: str) -> List[Tuple[Permission, bool]]:
        """(Permission, is_allowed) pairs granted to a group."""
        return await self._find_grants(GroupPermission, GroupPermission.group_id, group_id)

    async def find_user_permissions(self, user_id: str) -> List[Tuple[Permission, bool]]:
        """(Permission, is_allowed) overrides recorded for a user."""
        return await self._find_grants(UserPermission, UserPermission.user_id, user_id)

    async def find_permissions_by_ids(self, ids: Sequence[str]) -> List[Permission]:
        if not ids:
            return []
        result = await self._execute(select(Permission).where(Permission.id.in_(list(ids))))
        return list(result.scalars().all())

    async def find_permissions_by_keys(
        self, keys: Iterable[PermissionKeyTuple]
    ) -> Dict[PermissionKeyTuple, Permission]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        stmt = select(Permission).where(
            or_(*[and_(Permission.module == module, Permission.action == action) for module, action in keys])
        )
        result = await self._execute(stmt)
        return {(p.module, p.action): p for p in result.scalars().all()}

    async def _require_permissions(self, permission_ids: Sequence[str]) -> List[Permission]:
        """Fetch every id or fail with NotFound listing the missing ones."""
        permission_ids = list(dict.fromkeys(permission_ids))
        found = await self.find_permissions_by_ids(permission_ids)
        found_ids = {p.id for p in found}
        missing = [pid for pid in permission_ids if pid not in found_ids]
        if missing:
            raise NotFound("Some permissions do not exist", {"missing_ids": missing})
        return found

    async def _require_groups(self, group_ids: Sequence[str]) -> List[UserGroup]:
        group_ids = list(dict.fromkeys(group_ids))
        result = await self._execute(select(UserGroup).where(UserGroup.id.in_(group_ids)))
        found = list(result.scalars().all())
        found_ids = {g.id for g in found}
        missing = [gid for gid in group_ids if gid not in found_ids]
        if missing:
            raise NotFound("Some groups do not exist", {"missing_ids": missing})
        return found

    # ========================================================================
    # Permissions
    # ========================================================================

    async def list_permissions(
        self,
        module: Optional[str] = None,
        action: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: Optional[int] = 100,
    ) -> List[Permission]:
        stmt = select(Permission)
        if module:
            stmt = stmt.where(Permission.module == module)
        if action:
            stmt = stmt.where(Permission.action == action)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(
                or_(
                    Permission.module.ilike(pattern),
                    Permission.action.ilike(pattern),
                    Permission.description.ilike(pattern),
                )
            )
        stmt = stmt.order_by(Permission.module, Permission.action).offset(skip).limit(limit)
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def permission_usage(self, permission_ids: Optional[Sequence[str]] = None) -> Dict[str, Tuple[int, int]]:
        """Map permission id to (group link count, user link count)."""
        group_stmt = select(GroupPermission.permission_id, func.count(GroupPermission.id)).group_by(
            GroupPermission.permission_id
        )
        user_stmt = select(UserPermission.permission_id, func.count(UserPermission.id)).group_by(
            UserPermission.permission_id
        )
        if permission_ids is not None:
            group_stmt = group_stmt.where(GroupPermission.permission_id.in_(list(permission_ids)))
            user_stmt = user_stmt.where(UserPermission.permission_id.in_(list(permission_ids)))

        group_counts = dict((await self._execute(group_stmt)).all())
        user_counts = dict((await self._execute(user_stmt)).all())
        ids = set(group_counts) | set(user_counts)
        return {pid: (group_counts.get(pid, 0), user_counts.get(pid, 0)) for pid in ids}

    async def create_permission(self, data: PermissionCreate) -> Permission:
        existing = await self.find_permissions_by_keys([(data.module, data.action)])
        if existing:
            raise Conflict("Permission already exists", {"duplicates": [data.key]})

        permission = Permission(**data.model_dump())
        async with self.transaction():
            self.db.add(permission)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise Conflict("Permission already exists", {"duplicates": [data.key]}) from e
        await self.db.refresh(permission)
        log.info("Created permission %s (%s)", permission.key, permission.id)
        return permission

    async def update_permission(self, permission_id: str, data: PermissionUpdate) -> Permission:
        permission = await self.get_permission(permission_id)
        async with self.transaction():
            for key, value in data.model_dump(exclude_unset=True).items():
                setattr(permission, key, value)
        await self.db.refresh(permission)
        log.info("Updated permission %s", permission.key)
        return permission

    async def delete_permission(self, permission_id: str) -> None:
        await self.get_permission(permission_id)
        await self.bulk_delete_permissions([permission_id])

    async def bulk_create_permissions(self, items: Sequence[PermissionCreate]) -> List[Permission]:
        duplicates = find_duplicate_keys(item.key for item in items)
        if duplicates:
            raise ValidationError("Duplicate permissions in request", {"duplicates": duplicates})

        existing = await self.find_permissions_by_keys((item.module, item.action) for item in items)
        if existing:
            raise Conflict(
                "Some permissions already exist",
                {"duplicates": [f"{m}:{a}" for m, a in existing]},
            )

        permissions = [Permission(**item.model_dump()) for item in items]
        async with self.transaction():
            self.db.add_all(permissions)
            await self.db.flush()
        for permission in permissions:
            await self.db.refresh(permission)
        log.info("Created %d permissions", len(permissions))
        return sorted(permissions, key=lambda p: (p.module, p.action))

    async def bulk_delete_permissions(self, permission_ids: Sequence[str]) -> int:
        """Delete permissions no grant references; otherwise Conflict."""
        permissions = await self._require_permissions(permission_ids)
        usage = await self.permission_usage([p.id for p in permissions])
        blocking = [
            {
                "id": p.id,
                "key": p.key,
                "group_count": usage[p.id][0],
                "user_count": usage[p.id][1],
            }
            for p in permissions
            if sum(usage.get(p.id, (0, 0))) > 0
        ]
        if blocking:
            raise Conflict("Permissions in use cannot be deleted", {"blocking": blocking})

        async with self.transaction():
            result = await self.db.execute(
                delete(Permission).where(Permission.id.in_([p.id for p in permissions]))
            )
        log.info("Deleted %d permissions", result.rowcount)
        return result.rowcount

    # ========================================================================
    # Groups
    # ========================================================================

    async def list_groups(
        self, include_inactive: bool = True, skip: int = 0, limit: Optional[int] = 100
    ) -> List[Tuple[UserGroup, int, int]]:
        """Groups with (user count, permission count)."""
        user_counts = (
            select(User.group_id.label("group_id"), func.count(User.id).label("n"))
            .group_by(User.group_id)
            .subquery()
        )
        grant_counts = (
            select(GroupPermission.group_id.label("group_id"), func.count(GroupPermission.id).label("n"))
            .group_by(GroupPermission.group_id)
            .subquery()
        )
        stmt = (
            select(
                UserGroup,
                func.coalesce(user_counts.c.n, 0),
                func.coalesce(grant_counts.c.n, 0),
            )
            .outerjoin(user_counts, user_counts.c.group_id == UserGroup.id)
            .outerjoin(grant_counts, grant_counts.c.group_id == UserGroup.id)
        )
        if not include_inactive:
            stmt = stmt.where(UserGroup.is_active.is_(True))
        stmt = stmt.order_by(UserGroup.name).offset(skip).limit(limit)
        result = await self._execute(stmt)
        return [(group, users, grants) for group, users, grants in result.all()]

    async def group_user_counts(self, group_ids: Sequence[str]) -> Dict[str, int]:
        stmt = (
            select(User.group_id, func.count(User.id))
            .where(User.group_id.in_(list(group_ids)))
            .group_by(User.group_id)
        )
        return dict((await self._execute(stmt)).all())

    async def _ensure_group_name_free(self, name: str, exclude_id: Optional[str] = None) -> None:
        stmt = select(UserGroup.id).where(UserGroup.name == name)
        if exclude_id:
            stmt = stmt.where(UserGroup.id != exclude_id)
        if (await self._execute(stmt)).first():
            raise Conflict("Group with this name already exists", {"duplicates": [name]})

    async def create_group(self, data: GroupCreate) -> UserGroup:
        await self._ensure_group_name_free(data.name)
        permission_ids = list(dict.fromkeys(data.permission_ids))
        await self._require_permissions(permission_ids)

        group = UserGroup(**data.model_dump(exclude={"permission_ids"}))
        async with self.transaction():
            self.db.add(group)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise Conflict("Group with this name already exists", {"duplicates": [data.name]}) from e
            if permission_ids:
                await self._insert_links(GroupPermission, "group_id", group.id, permission_ids, True)
        await self.db.refresh(group)
        log.info("Created group %r (%s) with %d permissions", group.name, group.id, len(permission_ids))
        return group

    async def update_group(self, group_id: str, data: GroupUpdate) -> UserGroup:
        group = await self.get_group(group_id)
        update_data = data.model_dump(exclude_unset=True)
        if update_data.get("name") and update_data["name"] != group.name:
            await self._ensure_group_name_free(update_data["name"], exclude_id=group_id)

        async with self.transaction():
            for key, value in update_data.items():
                setattr(group, key, value)
        await self.db.refresh(group)
        log.info("Updated group %s: %s", group_id, update_data)
        return group

    async def delete_group(self, group_id: str) -> None:
        await self.get_group(group_id)
        await self.bulk_delete_groups([group_id])

    async def bulk_delete_groups(self, group_ids: Sequence[str]) -> int:
        """Delete groups no user belongs to; otherwise Conflict."""
        groups = await self._require_groups(group_ids)
        counts = await self.group_user_counts([g.id for g in groups])
        blocking = [
            {"id": g.id, "name": g.name, "user_count": counts[g.id]}
            for g in groups
            if counts.get(g.id, 0) > 0
        ]
        if blocking:
            raise Conflict("Groups with users cannot be deleted", {"blocking": blocking})

        ids = [g.id for g in groups]
        async with self.transaction():
            await self.db.execute(delete(GroupPermission).where(GroupPermission.group_id.in_(ids)))
            result = await self.db.execute(delete(UserGroup).where(UserGroup.id.in_(ids)))
        log.info("Deleted %d groups", result.rowcount)
        return result.rowcount

    async def set_groups_active(self, group_ids: Sequence[str], is_active: bool) -> int:
        groups = await self._require_groups(group_ids)
        async with self.transaction():
            result = await self.db.execute(
                update(UserGroup)
                .where(UserGroup.id.in_([g.id for g in groups]))
                .values(is_active=is_active)
            )
        log.info("Set is_active=%s on %d groups", is_active, result.rowcount)
        return result.rowcount

    # ========================================================================
    # Grant links
    # ========================================================================

    async def _insert_links(
        self,
        model: GrantModel,
        owner_field: str,
        owner_id: str,
        permission_ids: Sequence[str],
        is_allowed: bool,
    ) -> int:
        """Insert links not already present; returns the number inserted."""
        owner_column = getattr(model, owner_field)
        result = await self.db.execute(
            select(model.permission_id).where(
                owner_column == owner_id,
                model.permission_id.in_(list(permission_ids)),
            )
        )
        existing = set(result.scalars().all())
        links = [
            model(**{owner_field: owner_id}, permission_id=pid, is_allowed=is_allowed)
            for pid in dict.fromkeys(permission_ids)
            if pid not in existing
        ]
        self.db.add_all(links)
        await self.db.flush()
        return len(links)

    async def _apply_links(
        self,
        model: GrantModel,
        owner_field: str,
        owner_id: str,
        permission_ids: List[str],
        mode: LinkMode,
        is_allowed: bool,
    ) -> Tuple[int, int]:
        """Must run inside a transaction. Returns (added, removed)."""
        owner_column = getattr(model, owner_field)
        if mode is LinkMode.REMOVE:
            result = await self.db.execute(
                delete(model).where(owner_column == owner_id, model.permission_id.in_(permission_ids))
            )
            return 0, result.rowcount

        removed = 0
        if mode is LinkMode.REPLACE:
            result = await self.db.execute(delete(model).where(owner_column == owner_id))
            removed = result.rowcount
        added = await self._insert_links(model, owner_field, owner_id, permission_ids, is_allowed)
        return added, removed

    async def _grants(self, model: GrantModel, owner_column, owner_id: str) -> List[GrantResponse]:
        return [
            GrantResponse(permission=PermissionRef.model_validate(p), is_allowed=allowed)
            for p, allowed in await self._find_grants(model, owner_column, owner_id)
        ]

    async def link_group_permissions(
        self,
        group_id: str,
        permission_ids: Sequence[str],
        mode: LinkMode,
        is_allowed: bool = True,
    ) -> LinkResult:
        await self.get_group(group_id)
        permission_ids = list(dict.fromkeys(permission_ids))
        await self._require_permissions(permission_ids)

        async with self.transaction():
            added, removed = await self._apply_links(
                GroupPermission, "group_id", group_id, permission_ids, mode, is_allowed
            )
        log.info("Group %s permissions %s: +%d -%d", group_id, mode.value, added, removed)
        return LinkResult(
            mode=mode,
            added=added,
            removed=removed,
            grants=await self._grants(GroupPermission, GroupPermission.group_id, group_id),
        )

    async def link_groups_permissions(
        self,
        group_ids: Sequence[str],
        permission_ids: Sequence[str],
        mode: LinkMode,
    ) -> int:
        """Apply one link edit to several groups atomically; returns groups touched."""
        groups = await self._require_groups(group_ids)
        permission_ids = list(dict.fromkeys(permission_ids))
        await self._require_permissions(permission_ids)

        async with self.transaction():
            for group in groups:
                await self.apply_group_links(group.id, permission_ids, mode)
        log.info("Applied %s of %d permissions to %d groups", mode.value, len(permission_ids), len(groups))
        return len(groups)

    async def link_user_permissions(
        self,
        user_id: str,
        permission_ids: Sequence[str],
        mode: LinkMode,
        is_allowed: bool = True,
    ) -> LinkResult:
        await self.get_user(user_id)
        permission_ids = list(dict.fromkeys(permission_ids))
        await self._require_permissions(permission_ids)

        async with self.transaction():
            added, removed = await self._apply_links(
                UserPermission, "user_id", user_id, permission_ids, mode, is_allowed
            )
        log.info("User %s permissions %s: +%d -%d", user_id, mode.value, added, removed)
        return LinkResult(
            mode=mode,
            added=added,
            removed=removed,
            grants=await self._grants(UserPermission, UserPermission.user_id, user_id),
        )

    async def _upsert_link(
        self,
        model: GrantModel,
        owner_field: str,
        owner_id: str,
        permission_id: str,
        is_allowed: bool,
    ) -> GrantResponse:
        (permission,) = await self._require_permissions([permission_id])
        owner_column = getattr(model, owner_field)

        async with self.transaction():
            result = await self.db.execute(
                select(model).where(owner_column == owner_id, model.permission_id == permission_id)
            )
            link = result.scalar_one_or_none()
            if link is None:
                self.db.add(model(**{owner_field: owner_id}, permission_id=permission_id, is_allowed=is_allowed))
            else:
                link.is_allowed = is_allowed
            await self.db.flush()
        return GrantResponse(permission=PermissionRef.model_validate(permission), is_allowed=is_allowed)

    async def upsert_group_permission(self, group_id: str, permission_id: str, is_allowed: bool) -> GrantResponse:
        await self.get_group(group_id)
        grant = await self._upsert_link(GroupPermission, "group_id", group_id, permission_id, is_allowed)
        log.info("Group %s: %s allowed=%s", group_id, grant.permission.id, is_allowed)
        return grant

    async def upsert_user_permission(self, user_id: str, permission_id: str, is_allowed: bool) -> GrantResponse:
        await self.get_user(user_id)
        grant = await self._upsert_link(UserPermission, "user_id", user_id, permission_id, is_allowed)
        log.info("User %s override: %s allowed=%s", user_id, grant.permission.id, is_allowed)
        return grant

    async def group_grants(self, group_id: str) -> List[GrantResponse]:
        await self.get_group(group_id)
        return await self._grants(GroupPermission, GroupPermission.group_id, group_id)

    async def user_grants(self, user_id: str) -> List[GrantResponse]:
        await self.get_user(user_id)
        return await self._grants(UserPermission, UserPermission.user_id, user_id)

    async def find_groups_by_names(self, names: Iterable[str]) -> Dict[str, UserGroup]:
        names = list(dict.fromkeys(names))
        if not names:
            return {}
        result = await self._execute(select(UserGroup).where(UserGroup.name.in_(names)))
        return {g.name: g for g in result.scalars().all()}

    async def apply_group_links(self, group_id: str, permission_ids: Sequence[str], mode: LinkMode) -> Tuple[int, int]:
        """Link edit for callers that already hold an open transaction."""
        return await self._apply_links(
            GroupPermission, "group_id", group_id, list(dict.fromkeys(permission_ids)), mode, True
        )

    # ========================================================================
    # Statistics
    # ========================================================================

    async def _count(self, stmt) -> int:
        return (await self._execute(stmt)).scalar_one()

    async def top_permissions(self, model: GrantModel, limit: int = 10) -> List[PermissionCount]:
        """Permissions with the most links in ``model``, most used first."""
        usage = func.count(model.id).label("usage")
        stmt = (
            select(Permission, usage)
            .join(model, model.permission_id == Permission.id)
            .group_by(Permission.id)
            .order_by(usage.desc(), Permission.module, Permission.action)
            .limit(limit)
        )
        result = await self._execute(stmt)
        return [
            PermissionCount(permission=PermissionRef.model_validate(p), usage_count=n)
            for p, n in result.all()
        ]

    async def stats(self, top: int = 5, permission_limit: int = 10, recent_days: int = 30) -> GroupStatsResponse:
        """
        Counts for the group dashboard.

        Top lists are ordered by count, ties by group name. ``used_permissions``
        only considers group grants, per-user overrides are not counted.
        """
        groups = await self.list_groups(limit=None)
        since = datetime.now(timezone.utc) - timedelta(days=recent_days)

        total_users = await self._count(select(func.count(User.id)))
        users_with_group = await self._count(select(func.count(User.id)).where(User.group_id.is_not(None)))
        total_permissions = await self._count(select(func.count(Permission.id)))
        used_permissions = await self._count(select(func.count(func.distinct(GroupPermission.permission_id))))
        active_groups = sum(1 for group, _, _ in groups if group.is_active)

        by_users = [
            GroupCount(id=g.id, name=g.name, is_active=g.is_active, count=users) for g, users, _ in groups
        ]
        by_grants = [
            GroupCount(id=g.id, name=g.name, is_active=g.is_active, count=grants) for g, _, grants in groups
        ]

        return GroupStatsResponse(
            overview=GroupStatsOverview(
                total_groups=len(groups),
                active_groups=active_groups,
                inactive_groups=len(groups) - active_groups,
                total_users=total_users,
                users_with_group=users_with_group,
                users_without_group=total_users - users_with_group,
                total_permissions=total_permissions,
                used_permissions=used_permissions,
                unused_permissions=total_permissions - used_permissions,
            ),
            top_groups_by_users=sorted(by_users, key=lambda g: -g.count)[:top],
            top_groups_by_permissions=sorted(by_grants, key=lambda g: -g.count)[:top],
            user_distribution=by_users,
            top_permissions=await self.top_permissions(GroupPermission, permission_limit),
            new_groups=await self._count(select(func.count(UserGroup.id)).where(UserGroup.created_at >= since)),
            new_users=await self._count(select(func.count(User.id)).where(User.created_at >= since)),
            since=since,
        )
