import pytest

from app.core.exceptions import NotFound, StoreError
from app.features.permissions.schemas import LinkMode


@pytest.mark.asyncio
class TestPermissionResolver:
    """Effective permissions against a real database"""

    async def test_group_grant_denied_by_user_override(self, resolver, make_permission, make_group, make_user):
        bookings_read = await make_permission("bookings", "read")
        manager = await make_group("Manager", {bookings_read: True})
        user = await make_user("clerk", manager, overrides={bookings_read: False})

        assert await resolver.has_permission(user.id, "bookings", "read") is False

    async def test_user_override_grants_what_group_lacks(self, resolver, make_permission, make_group, make_user):
        reports_export = await make_permission("reports", "export")
        group = await make_group("Reception")
        user = await make_user("frontdesk", group, overrides={reports_export: True})

        assert await resolver.has_permission(user.id, "reports", "export") is True

    async def test_group_grant_applies_without_override(self, resolver, make_permission, make_group, make_user):
        hotels_read = await make_permission("hotels", "read")
        group = await make_group("Manager", {hotels_read: True})
        user = await make_user("manager", group)

        assert await resolver.has_permission(user.id, "hotels", "read") is True

    async def test_unknown_permission_is_denied(self, resolver, make_permission, make_group, make_user):
        hotels_read = await make_permission("hotels", "read")
        group = await make_group("Manager", {hotels_read: True})
        user = await make_user("manager", group)

        assert await resolver.has_permission(user.id, "hotels", "delete") is False
        assert await resolver.has_permission(user.id, "nothing", "here") is False

    async def test_inactive_group_contributes_nothing(self, resolver, make_permission, make_group, make_user):
        hotels_read = await make_permission("hotels", "read")
        rooms_read = await make_permission("rooms", "read")
        group = await make_group("Retired", {hotels_read: True}, is_active=False)
        user = await make_user("old_timer", group, overrides={rooms_read: True})

        assert await resolver.has_permission(user.id, "hotels", "read") is False
        assert await resolver.has_permission(user.id, "rooms", "read") is True

    async def test_user_without_group_uses_overrides_only(self, resolver, make_permission, make_user):
        rooms_read = await make_permission("rooms", "read")
        user = await make_user("floating", overrides={rooms_read: True})

        effective = await resolver.get_effective_permissions(user.id)
        assert [(e.key, e.is_allowed, e.source) for e in effective] == [("rooms:read", True, "user")]

    async def test_effective_permissions_records_source(self, resolver, make_permission, make_group, make_user):
        bookings_read = await make_permission("bookings", "read")
        hotels_read = await make_permission("hotels", "read")
        group = await make_group("Manager", {bookings_read: True, hotels_read: True})
        user = await make_user("clerk", group, overrides={bookings_read: False})

        effective = {e.key: (e.is_allowed, e.source) for e in await resolver.get_effective_permissions(user.id)}
        assert effective == {
            "bookings:read": (False, "user"),
            "hotels:read": (True, "group"),
        }

    async def test_missing_user_raises_not_found(self, resolver):
        with pytest.raises(NotFound):
            await resolver.get_effective_permissions("01HZZZZZZZZZZZZZZZZZZZZZZZ")
        with pytest.raises(NotFound):
            await resolver.has_any("01HZZZZZZZZZZZZZZZZZZZZZZZ", [])

    async def test_has_any_and_has_all(self, resolver, make_permission, make_group, make_user):
        hotels_read = await make_permission("hotels", "read")
        rooms_read = await make_permission("rooms", "read")
        group = await make_group("Manager", {hotels_read: True, rooms_read: False})
        user = await make_user("manager", group)

        assert await resolver.has_any(user.id, [("rooms", "read"), ("hotels", "read")]) is True
        assert await resolver.has_any(user.id, [("rooms", "read"), ("hotels", "delete")]) is False
        assert await resolver.has_all(user.id, [("hotels", "read")]) is True
        assert await resolver.has_all(user.id, [("hotels", "read"), ("rooms", "read")]) is False

    async def test_empty_query_lists(self, resolver, make_user):
        user = await make_user("nobody")

        assert await resolver.has_any(user.id, []) is False
        assert await resolver.has_all(user.id, []) is True

    async def test_can_manage_and_key_lookup(self, resolver, make_permission, make_group, make_user):
        hotels_manage = await make_permission("hotels", "manage")
        group = await make_group("Manager", {hotels_manage: True})
        user = await make_user("manager", group)

        assert await resolver.can_manage(user.id, "hotels") is True
        assert await resolver.can_manage(user.id, "rooms") is False
        assert await resolver.has_permission_by_key(user.id, "hotels:manage") is True

    async def test_mutation_invalidates_memo(self, store, resolver, make_permission, make_group, make_user):
        bookings_read = await make_permission("bookings", "read")
        group = await make_group("Manager", {bookings_read: True})
        user = await make_user("clerk", group)
        assert await resolver.has_permission(user.id, "bookings", "read") is True

        await store.upsert_user_permission(user.id, bookings_read.id, False)
        assert await resolver.has_permission(user.id, "bookings", "read") is False

        await store.link_user_permissions(user.id, [bookings_read.id], LinkMode.REMOVE)
        assert await resolver.has_permission(user.id, "bookings", "read") is True

    async def test_store_failure_propagates(self, store, resolver, make_user, monkeypatch):
        user = await make_user("clerk")

        async def broken(*args, **kwargs):
            raise StoreError("Permission store unavailable")

        monkeypatch.setattr(store, "find_user_permissions", broken)
        with pytest.raises(StoreError):
            await resolver.has_permission(user.id, "hotels", "read")
