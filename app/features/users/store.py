"""
Persistence for back-office users.

Users are never removed while they own historical records (hotels, rooms
or bookings they created or last updated). Such a delete request is turned
into a deactivation and reported as ``"deactivated"``.
"""
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Literal, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update

from app.core.database.store import SessionStore
from app.core.exceptions import Conflict, NotFound, ValidationError
from app.features.hotels.models import Booking, Hotel, Room
from app.features.permissions.models import UserGroup, UserPermission
from app.features.permissions.schemas import GroupCount
from app.features.permissions.store import PermissionStore
from app.features.users.models import User
from app.features.users.schemas import (
    UserCreate,
    UserOverrideCount,
    UserStatsOverview,
    UserStatsResponse,
    UserUpdate,
)
from app.utils import get_logger


log = get_logger(__name__)

DeleteOutcome = Literal["deleted", "deactivated"]


class UserStore(SessionStore):
    async def get_user(self, user_id: str) -> User:
        result = await self._execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound("User not found", {"user_id": user_id})
        return user

    async def list_users(
        self,
        group_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[User]:
        stmt = select(User)
        if group_id:
            stmt = stmt.where(User.group_id == group_id)
        if is_active is not None:
            stmt = stmt.where(User.is_active.is_(is_active))
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(
                or_(
                    User.username.ilike(pattern),
                    User.email.ilike(pattern),
                    User.full_name.ilike(pattern),
                )
            )
        stmt = stmt.order_by(User.username).offset(skip).limit(limit)
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def _ensure_group_exists(self, group_id: str) -> None:
        result = await self._execute(select(UserGroup.id).where(UserGroup.id == group_id))
        if result.first() is None:
            raise NotFound("Group not found", {"group_id": group_id})

    async def _ensure_unique(self, email: Optional[str], username: Optional[str], exclude_id: Optional[str] = None) -> None:
        clauses = []
        if email:
            clauses.append(User.email == email)
        if username:
            clauses.append(User.username == username)
        if not clauses:
            return
        stmt = select(User.email, User.username).where(or_(*clauses))
        if exclude_id:
            stmt = stmt.where(User.id != exclude_id)
        taken = (await self._execute(stmt)).all()
        if taken:
            duplicates = []
            for taken_email, taken_username in taken:
                if taken_email == email:
                    duplicates.append(email)
                if taken_username == username:
                    duplicates.append(username)
            raise Conflict("Email or username already in use", {"duplicates": duplicates})

    async def create_user(self, data: UserCreate) -> User:
        await self._ensure_unique(data.email, data.username)
        if data.group_id:
            await self._ensure_group_exists(data.group_id)

        user = User(**data.model_dump())
        async with self.transaction():
            self.db.add(user)
        await self.db.refresh(user)
        log.info("Created user %s (%s) in group %s", user.username, user.id, user.group_id)
        return user

    async def update_user(self, user_id: str, data: UserUpdate) -> User:
        user = await self.get_user(user_id)
        update_data = data.model_dump(exclude_unset=True)
        await self._ensure_unique(update_data.get("email"), update_data.get("username"), exclude_id=user_id)
        if update_data.get("group_id"):
            await self._ensure_group_exists(update_data["group_id"])

        async with self.transaction():
            for key, value in update_data.items():
                setattr(user, key, value)
        await self.db.refresh(user)
        log.info("Updated user %s: %s", user_id, sorted(update_data))
        return user

    async def set_users_active(self, user_ids: Sequence[str], is_active: bool) -> int:
        user_ids = list(dict.fromkeys(user_ids))
        result = await self._execute(select(User.id).where(User.id.in_(user_ids)))
        found = set(result.scalars().all())
        missing = [uid for uid in user_ids if uid not in found]
        if missing:
            raise NotFound("Some users do not exist", {"missing_ids": missing})

        async with self.transaction():
            result = await self.db.execute(
                update(User).where(User.id.in_(user_ids)).values(is_active=is_active)
            )
        log.info("Set is_active=%s on %d users", is_active, result.rowcount)
        return result.rowcount

    async def record_login(self, user: User) -> None:
        async with self.transaction():
            user.last_login_at = datetime.now(timezone.utc)
        await self.db.refresh(user)

    async def ownership_counts(self, user_id: str) -> Dict[str, int]:
        """Number of historical records that reference the user, per kind."""
        queries = {
            "hotels": select(func.count(Hotel.id)).where(Hotel.created_by_id == user_id),
            "rooms": select(func.count(Room.id)).where(Room.created_by_id == user_id),
            "bookings": select(func.count(Booking.id)).where(
                or_(Booking.created_by_id == user_id, Booking.updated_by_id == user_id)
            ),
        }
        return {kind: (await self._execute(stmt)).scalar_one() for kind, stmt in queries.items()}

    async def delete_user(self, user_id: str, actor_id: Optional[str] = None) -> Tuple[DeleteOutcome, Dict[str, int]]:
        """
        Delete a user, or deactivate them if they own historical records.

        Returns:
            ("deleted" | "deactivated", ownership counts)

        Raises:
            ValidationError: If a user tries to delete their own account
            NotFound: If the user does not exist
        """
        if actor_id is not None and actor_id == user_id:
            raise ValidationError("Cannot delete your own account", {"user_id": user_id})
        user = await self.get_user(user_id)
        counts = await self.ownership_counts(user_id)

        if any(counts.values()):
            async with self.transaction():
                user.is_active = False
            log.info("User %s owns records %s; deactivated instead of deleted", user_id, counts)
            return "deactivated", counts

        async with self.transaction():
            await self.db.execute(delete(UserPermission).where(UserPermission.user_id == user_id))
            await self.db.delete(user)
        log.info("Deleted user %s", user_id)
        return "deleted", counts

    async def stats(self, limit: int = 10, recent_days: int = 30) -> UserStatsResponse:
        now = datetime.now(timezone.utc)
        since = now - timedelta(days=recent_days)

        async def count(*where) -> int:
            stmt = select(func.count(User.id))
            if where:
                stmt = stmt.where(*where)
            return (await self._execute(stmt)).scalar_one()

        total = await count()
        active = await count(User.is_active.is_(True))
        with_group = await count(User.group_id.is_not(None))
        with_overrides = await count(User.id.in_(select(UserPermission.user_id)))

        overrides = func.count(UserPermission.id).label("overrides")
        top_users = await self._execute(
            select(User, overrides)
            .join(UserPermission, UserPermission.user_id == User.id)
            .group_by(User.id)
            .order_by(overrides.desc(), User.username)
            .limit(limit)
        )

        permissions = PermissionStore(self.db)
        groups = await permissions.list_groups(limit=None)
        distribution = sorted(
            (GroupCount(id=g.id, name=g.name, is_active=g.is_active, count=users) for g, users, _ in groups),
            key=lambda g: -g.count,
        )

        return UserStatsResponse(
            overview=UserStatsOverview(
                total_users=total,
                active_users=active,
                inactive_users=total - active,
                users_with_group=with_group,
                users_without_group=total - with_group,
                users_with_overrides=with_overrides,
            ),
            group_distribution=distribution,
            top_users_by_overrides=[
                UserOverrideCount(id=u.id, username=u.username, full_name=u.full_name, override_count=n)
                for u, n in top_users.all()
            ],
            top_override_permissions=await permissions.top_permissions(UserPermission, limit),
            new_users=await count(User.created_at >= since),
            logged_in_last_week=await count(User.last_login_at >= now - timedelta(days=7)),
            logged_in_recently=await count(User.last_login_at >= since),
            never_logged_in=await count(User.last_login_at.is_(None)),
            since=since,
        )
