import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.exceptions import Conflict, MissingPermissions, ValidationError
from app.features.permissions.constants import IMPORT_GENERATED_DESCRIPTION
from app.features.permissions.models import Permission, UserGroup
from app.features.permissions.schemas import GroupImportRequest, PermissionImportRequest
from app.features.permissions.transfer import export_groups, export_permissions, import_groups, import_permissions


class UntouchableStore:
    """Fails the test if the import reaches the store."""

    def __getattr__(self, name):
        raise AssertionError(f"store.{name} used before payload validation")


def permission_import(items, **options) -> PermissionImportRequest:
    return PermissionImportRequest.model_validate({"permissions": items, "options": options})


def group_import(groups, **options) -> GroupImportRequest:
    return GroupImportRequest.model_validate({"groups": groups, "options": options})


async def count(db, model) -> int:
    return (await db.execute(select(func.count(model.id)))).scalar_one()


async def grant_keys(store, group_id):
    return [(p.key, allowed) for p, allowed in await store.find_group_permissions(group_id)]


@pytest.mark.asyncio
class TestImportPermissions:
    async def test_duplicate_in_payload_rejected_before_store(self):
        request = permission_import([{"module": "Hotels", "action": "create"}, {"module": "Hotels", "action": "create"}])

        with pytest.raises(ValidationError) as exc:
            await import_permissions(UntouchableStore(), request)
        assert exc.value.extra["duplicates"] == ["Hotels:create"]

    async def test_creates_new(self, store, db):
        request = permission_import([{"module": "hotels", "action": "read"}, {"module": "rooms", "action": "read"}])

        report = await import_permissions(store, request)

        assert (report.total, report.created, report.skipped, report.errors) == (2, 2, 0, [])
        assert await count(db, Permission) == 2

    async def test_validate_only_does_not_write(self, store, db, make_permission):
        await make_permission("hotels", "read")
        request = permission_import(
            [{"module": "hotels", "action": "read"}, {"module": "rooms", "action": "read"}],
            validate_only=True,
        )

        report = await import_permissions(store, request)

        assert report.validate_only is True
        assert (report.new, report.duplicates) == (1, 1)
        assert report.preview == {"new": ["rooms:read"], "duplicates": ["hotels:read"]}
        assert await count(db, Permission) == 1

    async def test_duplicates_without_policy_conflict(self, store, db, make_permission):
        await make_permission("hotels", "read")
        request = permission_import(
            [{"module": "hotels", "action": "read"}, {"module": "rooms", "action": "read"}],
            skip_duplicates=False,
        )

        with pytest.raises(Conflict) as exc:
            await import_permissions(store, request)
        assert exc.value.extra["duplicates"] == ["hotels:read"]
        assert await count(db, Permission) == 1

    async def test_skip_duplicates(self, store, make_permission):
        await make_permission("hotels", "read", "old")
        request = permission_import(
            [{"module": "hotels", "action": "read", "description": "new"}, {"module": "rooms", "action": "read"}]
        )

        report = await import_permissions(store, request)

        assert (report.created, report.updated, report.skipped) == (1, 0, 1)
        assert (await store.find_permissions_by_keys([("hotels", "read")]))[("hotels", "read")].description == "old"

    async def test_update_existing_only_when_changed(self, store, make_permission):
        await make_permission("hotels", "read", "old")
        await make_permission("rooms", "read", "same")
        request = permission_import(
            [
                {"module": "hotels", "action": "read", "description": "new"},
                {"module": "rooms", "action": "read", "description": "same"},
            ],
            update_existing=True,
        )

        report = await import_permissions(store, request)

        assert (report.created, report.updated, report.skipped) == (0, 1, 1)
        stored = await store.find_permissions_by_keys([("hotels", "read")])
        assert stored[("hotels", "read")].description == "new"


@pytest.mark.asyncio
class TestImportGroups:
    async def test_duplicate_names_rejected_before_store(self):
        request = group_import([{"name": "Manager"}, {"name": "Manager"}])

        with pytest.raises(ValidationError):
            await import_groups(UntouchableStore(), request)

    async def test_creates_groups_with_permissions(self, store, make_permission):
        await make_permission("hotels", "read")
        request = group_import([{"name": "Manager", "permissions": [{"module": "hotels", "action": "read"}]}])

        report = await import_groups(store, request)

        assert report.created == 1
        group = (await store.find_groups_by_names(["Manager"]))["Manager"]
        assert [(p.key, allowed) for p, allowed in await store.find_group_permissions(group.id)] == [("hotels:read", True)]

    async def test_missing_permissions_block(self, store, db):
        request = group_import([{"name": "Manager", "permissions": [{"module": "spa", "action": "read"}]}])

        with pytest.raises(MissingPermissions) as exc:
            await import_groups(store, request)
        assert exc.value.extra["missing_permissions"] == ["spa:read"]
        assert await count(db, UserGroup) == 0

    async def test_missing_permissions_checked_before_duplicates(self, store, make_group):
        await make_group("Manager")
        request = group_import(
            [{"name": "Manager", "permissions": [{"module": "spa", "action": "read"}]}],
            skip_duplicates=False,
        )

        with pytest.raises(MissingPermissions):
            await import_groups(store, request)

    async def test_failing_item_reported_others_committed(self, store, make_permission, make_group, monkeypatch):
        hotels_read = await make_permission("hotels", "read")
        await make_permission("rooms", "read")
        day = await make_group("Day Shift", {hotels_read: True})
        night = await make_group("Night Shift", {hotels_read: True})
        day_id, night_id = day.id, night.id
        apply_links = store.apply_group_links

        async def flaky_apply(group_id, permission_ids, mode):
            if group_id == day_id:
                raise OperationalError("INSERT INTO group_permissions", {}, Exception("database is locked"))
            return await apply_links(group_id, permission_ids, mode)

        monkeypatch.setattr(store, "apply_group_links", flaky_apply)
        rooms_only = [{"module": "rooms", "action": "read"}]
        request = group_import(
            [
                {"name": "Day Shift", "description": "changed", "permissions": rooms_only},
                {"name": "Night Shift", "description": "changed", "permissions": rooms_only},
            ],
            update_existing=True,
        )

        report = await import_groups(store, request)

        assert (report.updated, report.skipped) == (1, 0)
        assert len(report.errors) == 1
        assert report.errors[0].startswith("Failed to update group 'Day Shift'")
        monkeypatch.undo()
        assert await grant_keys(store, day_id) == [("hotels:read", True)]
        assert await grant_keys(store, night_id) == [("rooms:read", True)]
        groups = await store.find_groups_by_names(["Day Shift", "Night Shift"])
        assert (groups["Day Shift"].description, groups["Night Shift"].description) == (None, "changed")

    async def test_create_missing_permissions(self, store):
        request = group_import(
            [{"name": "Spa", "permissions": [{"module": "spa", "action": "read"}]}],
            create_missing_permissions=True,
        )

        report = await import_groups(store, request)

        assert (report.created, report.created_permissions) == (1, 1)
        created = (await store.find_permissions_by_keys([("spa", "read")]))[("spa", "read")]
        assert created.description == IMPORT_GENERATED_DESCRIPTION

    async def test_validate_only_reports_missing(self, store, db, make_group):
        await make_group("Manager")
        request = group_import(
            [
                {"name": "Manager"},
                {"name": "Spa", "permissions": [{"module": "spa", "action": "read"}]},
            ],
            validate_only=True,
        )

        report = await import_groups(store, request)

        assert report.valid is False
        assert report.preview == {"new": ["Spa"], "duplicates": ["Manager"], "missing_permissions": ["spa:read"]}
        assert await count(db, UserGroup) == 1

    async def test_update_existing_replaces_permissions(self, store, make_permission, make_group):
        hotels_read = await make_permission("hotels", "read")
        await make_permission("rooms", "read")
        group = await make_group("Manager", {hotels_read: True})
        request = group_import(
            [{"name": "Manager", "description": "Runs the hotel", "permissions": [{"module": "rooms", "action": "read"}]}],
            update_existing=True,
        )

        report = await import_groups(store, request)

        assert report.updated == 1
        assert (await store.get_group(group.id)).description == "Runs the hotel"
        assert [p.key for p, _ in await store.find_group_permissions(group.id)] == ["rooms:read"]

    async def test_skip_existing_group(self, store, make_permission, make_group):
        hotels_read = await make_permission("hotels", "read")
        group = await make_group("Manager", {hotels_read: True})
        request = group_import([{"name": "Manager", "permissions": []}])

        report = await import_groups(store, request)

        assert (report.created, report.skipped) == (0, 1)
        assert [p.key for p, _ in await store.find_group_permissions(group.id)] == ["hotels:read"]


@pytest.mark.asyncio
class TestExport:
    async def test_export_permissions_with_usage(self, store, make_permission, make_group):
        hotels_read = await make_permission("hotels", "read", "View hotels")
        await make_permission("rooms", "read")
        await make_group("Manager", {hotels_read: True})

        exported = await export_permissions(store, include_usage=True)

        assert [(e.module, e.action, e.group_count, e.user_count) for e in exported] == [
            ("hotels", "read", 1, 0),
            ("rooms", "read", 0, 0),
        ]

    async def test_export_permissions_by_module(self, store, make_permission):
        await make_permission("hotels", "read")
        await make_permission("rooms", "read")

        exported = await export_permissions(store, modules=["rooms"])

        assert [(e.module, e.group_count) for e in exported] == [("rooms", None)]

    async def test_exported_groups_reimport(self, store, db, make_permission, make_group):
        hotels_read = await make_permission("hotels", "read")
        rooms_read = await make_permission("rooms", "read")
        await make_group("Manager", {hotels_read: True, rooms_read: False})

        exported = await export_groups(store)
        assert [(g.name, [p.key for p in g.permissions]) for g in exported] == [("Manager", ["hotels:read"])]

        request = GroupImportRequest(groups=[g.model_dump() for g in exported])
        report = await import_groups(store, request)
        assert (report.created, report.skipped) == (0, 1)
        assert await count(db, UserGroup) == 1
