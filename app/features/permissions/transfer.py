"""
Import and export of permissions and groups.

An import validates the whole payload before touching the database, then
applies it item by item inside one transaction. Each item runs in its own
savepoint: a failing item is reported in ``errors`` and the rest of the
batch still commits.

Duplicate policy, for items whose key (or group name) already exists:

- ``update_existing``: overwrite the stored fields
- ``skip_duplicates``: leave them untouched and count them as skipped
- neither: reject the whole import with Conflict
"""
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core import config
from app.core.exceptions import Conflict, MissingPermissions, PermissionSystemError, ValidationError
from app.features.permissions.constants import IMPORT_GENERATED_DESCRIPTION
from app.features.permissions.models import Permission, UserGroup
from app.features.permissions.schemas import (
    GroupExport,
    GroupImportRequest,
    ImportReport,
    LinkMode,
    PermissionExport,
    PermissionImportRequest,
    PermissionKey,
)
from app.features.permissions.store import PermissionStore, find_duplicate_keys
from app.utils import get_logger


log = get_logger(__name__)


def _preview(**sections: Sequence[str]) -> Dict[str, List[str]]:
    return {name: list(values)[: config.IMPORT_PREVIEW_LIMIT] for name, values in sections.items()}


def _duplicate_conflict(duplicates: List[str]) -> Conflict:
    return Conflict(
        "Some items already exist",
        {
            "duplicates": duplicates,
            "suggestion": "Set skip_duplicates or update_existing to import anyway",
        },
    )


async def import_permissions(store: PermissionStore, request: PermissionImportRequest) -> ImportReport:
    items = request.permissions
    options = request.options

    repeated = find_duplicate_keys(item.key for item in items)
    if repeated:
        raise ValidationError("Duplicate permissions in import payload", {"duplicates": repeated})

    existing = await store.find_permissions_by_keys((item.module, item.action) for item in items)
    new_items = [item for item in items if (item.module, item.action) not in existing]
    duplicate_items = [item for item in items if (item.module, item.action) in existing]

    report = ImportReport(
        validate_only=options.validate_only,
        total=len(items),
        new=len(new_items),
        duplicates=len(duplicate_items),
    )
    if options.validate_only:
        report.preview = _preview(
            new=[item.key for item in new_items],
            duplicates=[item.key for item in duplicate_items],
        )
        return report

    if duplicate_items and not (options.skip_duplicates or options.update_existing):
        raise _duplicate_conflict([item.key for item in duplicate_items])

    async with store.transaction():
        for item in new_items:
            try:
                async with store.savepoint():
                    store.db.add(Permission(**item.model_dump()))
                    await store.db.flush()
                report.created += 1
            except IntegrityError:
                # Inserted concurrently since the partition above
                report.skipped += 1
            except SQLAlchemyError as e:
                report.errors.append(f"Failed to create {item.key}: {e}")

        for item in duplicate_items:
            permission = existing[(item.module, item.action)]
            if not options.update_existing or item.description == permission.description:
                report.skipped += 1
                continue
            try:
                async with store.savepoint():
                    permission.description = item.description
                    await store.db.flush()
                report.updated += 1
            except SQLAlchemyError as e:
                report.errors.append(f"Failed to update {item.key}: {e}")

    log.info(
        "Permission import: %d created, %d updated, %d skipped, %d errors",
        report.created,
        report.updated,
        report.skipped,
        len(report.errors),
    )
    return report


async def _create_missing_permissions(store: PermissionStore, keys: List[PermissionKey], report: ImportReport) -> None:
    for key in keys:
        try:
            async with store.savepoint():
                store.db.add(
                    Permission(module=key.module, action=key.action, description=IMPORT_GENERATED_DESCRIPTION)
                )
                await store.db.flush()
            report.created_permissions += 1
        except IntegrityError:
            # Created concurrently
            continue
        except SQLAlchemyError as e:
            report.errors.append(f"Failed to create permission {key.key}: {e}")


async def import_groups(store: PermissionStore, request: GroupImportRequest) -> ImportReport:
    """
    Import groups together with their grants.

    Grants are given as (module, action) keys. Keys with no stored
    permission make the import fail with MissingPermissions unless
    ``create_missing_permissions`` is set, in which case they are created
    first. An updated group that lists permissions gets exactly that set.
    """
    items = request.groups
    options = request.options

    repeated = find_duplicate_keys(item.name for item in items)
    if repeated:
        raise ValidationError("Duplicate group names in import payload", {"duplicates": repeated})

    wanted: Dict[tuple, PermissionKey] = {}
    for item in items:
        for key in item.permissions:
            wanted.setdefault((key.module, key.action), key)
    known = await store.find_permissions_by_keys(wanted)
    missing = [key for pair, key in wanted.items() if pair not in known]

    existing = await store.find_groups_by_names(item.name for item in items)
    new_items = [item for item in items if item.name not in existing]
    duplicate_items = [item for item in items if item.name in existing]

    report = ImportReport(
        validate_only=options.validate_only,
        valid=not missing or options.create_missing_permissions,
        total=len(items),
        new=len(new_items),
        duplicates=len(duplicate_items),
        missing_permissions=[key.key for key in missing],
    )
    if options.validate_only:
        report.preview = _preview(
            new=[item.name for item in new_items],
            duplicates=[item.name for item in duplicate_items],
            missing_permissions=report.missing_permissions,
        )
        return report

    if missing and not options.create_missing_permissions:
        raise MissingPermissions(
            "Some permissions referenced by the import do not exist",
            {"missing_permissions": report.missing_permissions},
        )
    if duplicate_items and not (options.skip_duplicates or options.update_existing):
        raise _duplicate_conflict([item.name for item in duplicate_items])

    async with store.transaction():
        if missing:
            await _create_missing_permissions(store, missing, report)
            known = await store.find_permissions_by_keys(wanted)

        def permission_ids(keys: List[PermissionKey]) -> List[str]:
            return [known[(k.module, k.action)].id for k in keys if (k.module, k.action) in known]

        for item in new_items:
            try:
                async with store.savepoint():
                    group = UserGroup(name=item.name, description=item.description, is_active=item.is_active)
                    store.db.add(group)
                    await store.db.flush()
                    await store.apply_group_links(group.id, permission_ids(item.permissions), LinkMode.ADD)
                report.created += 1
            except (SQLAlchemyError, PermissionSystemError) as e:
                report.errors.append(f"Failed to create group {item.name!r}: {e}")

        for item in duplicate_items:
            if not options.update_existing:
                report.skipped += 1
                continue
            group = existing[item.name]
            try:
                async with store.savepoint():
                    if item.description is not None:
                        group.description = item.description
                    if "is_active" in item.model_fields_set:
                        group.is_active = item.is_active
                    await store.db.flush()
                    if item.permissions:
                        await store.apply_group_links(group.id, permission_ids(item.permissions), LinkMode.REPLACE)
                report.updated += 1
            except (SQLAlchemyError, PermissionSystemError) as e:
                report.errors.append(f"Failed to update group {item.name!r}: {e}")

    log.info(
        "Group import: %d created, %d updated, %d skipped, %d permissions created, %d errors",
        report.created,
        report.updated,
        report.skipped,
        report.created_permissions,
        len(report.errors),
    )
    return report


async def export_permissions(
    store: PermissionStore,
    modules: Optional[Sequence[str]] = None,
    include_usage: bool = False,
) -> List[PermissionExport]:
    permissions: List[Permission] = []
    if modules:
        for module in dict.fromkeys(modules):
            permissions.extend(await store.list_permissions(module=module, limit=None))
        permissions.sort(key=lambda p: (p.module, p.action))
    else:
        permissions = await store.list_permissions(limit=None)

    usage = await store.permission_usage([p.id for p in permissions]) if include_usage else {}
    exported = []
    for p in permissions:
        row = PermissionExport(module=p.module, action=p.action, description=p.description)
        if include_usage:
            row.group_count, row.user_count = usage.get(p.id, (0, 0))
        exported.append(row)
    return exported


async def export_groups(store: PermissionStore, include_permissions: bool = True) -> List[GroupExport]:
    """Groups in an import-ready shape; only allowed grants are listed."""
    exported = []
    for group, _, _ in await store.list_groups(limit=None):
        row = GroupExport(name=group.name, description=group.description, is_active=group.is_active)
        if include_permissions:
            row.permissions = [
                PermissionKey(module=p.module, action=p.action)
                for p, is_allowed in await store.find_group_permissions(group.id)
                if is_allowed
            ]
        exported.append(row)
    return exported
