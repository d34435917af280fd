import pytest
from datetime import date
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select

from app.core.exceptions import Conflict, NotFound, ValidationError
from app.features.hotels.models import Booking, Hotel, Room
from app.features.users.models import User
from app.features.users.schemas import UserCreate, UserUpdate
from app.features.users.store import UserStore


@pytest.fixture
def users(db) -> UserStore:
    return UserStore(db)


@pytest.mark.asyncio
class TestUserStore:
    async def test_create_user_in_group(self, users, make_group):
        group = await make_group("Reception")

        user = await users.create_user(
            UserCreate(email="desk@grandhotel.com", username="desk", full_name="Front Desk", group_id=group.id)
        )

        assert user.group_id == group.id
        assert user.is_active is True

    async def test_create_user_unknown_group(self, users, db):
        with pytest.raises(NotFound):
            await users.create_user(
                UserCreate(email="desk@grandhotel.com", username="desk", full_name="Front Desk", group_id="missing")
            )
        assert (await db.execute(select(func.count(User.id)))).scalar_one() == 0

    async def test_create_duplicate_username(self, users, make_user):
        await make_user("desk")

        with pytest.raises(Conflict) as exc:
            await users.create_user(UserCreate(email="other@grandhotel.com", username="desk", full_name="Other"))
        assert exc.value.extra["duplicates"] == ["desk"]

    async def test_move_user_between_groups(self, users, make_group, make_user):
        reception = await make_group("Reception")
        manager = await make_group("Manager")
        user = await make_user("desk", reception)

        updated = await users.update_user(user.id, UserUpdate(group_id=manager.id))
        assert updated.group_id == manager.id

        with pytest.raises(NotFound):
            await users.update_user(user.id, UserUpdate(group_id="missing"))

    async def test_update_rejects_null_for_required_fields(self):
        for field in ("email", "username", "full_name", "is_active"):
            with pytest.raises(PydanticValidationError):
                UserUpdate(**{field: None})
        assert UserUpdate(group_id=None).model_dump(exclude_unset=True) == {"group_id": None}

    async def test_set_users_active(self, users, make_user):
        a = await make_user("a")
        b = await make_user("b")

        assert await users.set_users_active([a.id, b.id], False) == 2
        assert [u.username for u in await users.list_users(is_active=False)] == ["a", "b"]

        with pytest.raises(NotFound) as exc:
            await users.set_users_active([a.id, "missing"], True)
        assert exc.value.extra["missing_ids"] == ["missing"]

    async def test_stats(self, users, make_permission, make_group, make_user):
        hotels_read = await make_permission("hotels", "read")
        rooms_read = await make_permission("rooms", "read")
        reception = await make_group("Reception")
        a = await make_user("a", reception, {hotels_read: False, rooms_read: True})
        await make_user("b", reception, {hotels_read: True})
        await make_user("c", is_active=False)
        await users.record_login(a)

        stats = await users.stats()

        overview = stats.overview
        assert (overview.total_users, overview.active_users, overview.inactive_users) == (3, 2, 1)
        assert (overview.users_with_group, overview.users_without_group, overview.users_with_overrides) == (2, 1, 2)
        assert [(u.username, u.override_count) for u in stats.top_users_by_overrides] == [("a", 2), ("b", 1)]
        assert [(p.permission.module, p.usage_count) for p in stats.top_override_permissions] == [
            ("hotels", 2),
            ("rooms", 1),
        ]
        assert [(g.name, g.count) for g in stats.group_distribution] == [("Reception", 2)]
        assert (stats.new_users, stats.logged_in_last_week, stats.never_logged_in) == (3, 1, 2)

    async def test_delete_user_without_records(self, users, db, make_user):
        user = await make_user("temp")

        result, counts = await users.delete_user(user.id)

        assert result == "deleted"
        assert counts == {"hotels": 0, "rooms": 0, "bookings": 0}
        assert (await db.execute(select(func.count(User.id)))).scalar_one() == 0

    async def test_delete_user_with_records_deactivates(self, users, db, make_user):
        user = await make_user("builder")
        hotel = Hotel(name="Seaside", created_by_id=user.id)
        db.add(hotel)
        await db.flush()
        room = Room(hotel_id=hotel.id, number="101")
        db.add(room)
        await db.flush()
        db.add(Booking(room_id=room.id, guest_name="Guest", check_in=date(2026, 1, 1), check_out=date(2026, 1, 3), updated_by_id=user.id))
        await db.commit()

        result, counts = await users.delete_user(user.id)

        assert result == "deactivated"
        assert counts == {"hotels": 1, "rooms": 0, "bookings": 1}
        assert (await users.get_user(user.id)).is_active is False

    async def test_delete_self_refused(self, users, make_user):
        user = await make_user("admin")

        with pytest.raises(ValidationError):
            await users.delete_user(user.id, actor_id=user.id)
        assert (await users.get_user(user.id)).is_active is True

    async def test_delete_missing_user(self, users):
        with pytest.raises(NotFound):
            await users.delete_user("missing")
