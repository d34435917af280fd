"""
Seed script to populate the permission catalogue and default groups.

Run this script after database initialization to create:
- One permission per module/action pair of the catalogue
- The Administrator, Manager and Receptionist groups with their grants
- Optionally an administrator user, printing a bearer token for it

Running it again only adds what is missing.

Usage:
    python -m scripts.seed_permissions
    python -m scripts.seed_permissions --admin-email admin@grandhotel.com --admin-username admin
"""
import argparse
import asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.permissions.constants import ACTIONS, MODULES
from app.features.permissions.models import Permission
from app.features.permissions.schemas import GroupCreate, LinkMode, PermissionCreate
from app.features.permissions.store import PermissionStore
from app.features.users.auth import create_access_token
from app.features.users.schemas import UserCreate
from app.features.users.store import UserStore
from app.utils import get_logger


log = get_logger(__name__)

ADMIN_GROUP = "Administrator"

DEFAULT_GROUPS = {
    ADMIN_GROUP: {
        "description": "Full access to every module",
        "permissions": [(m, a) for m in MODULES.ALL for a in ACTIONS.ALL],
    },
    "Manager": {
        "description": "Hotel manager: runs hotels, rooms and bookings, reads everything else",
        "permissions": (
            [(m, ACTIONS.READ) for m in MODULES.ALL]
            + [(m, a) for m in (MODULES.HOTELS, MODULES.ROOMS, MODULES.BOOKINGS) for a in ACTIONS.CRUD]
            + [(MODULES.BOOKINGS, ACTIONS.EXPORT), (MODULES.REPORTS, ACTIONS.EXPORT)]
        ),
    },
    "Receptionist": {
        "description": "Front desk: bookings and read access to hotels and rooms",
        "permissions": [
            (MODULES.HOTELS, ACTIONS.READ),
            (MODULES.ROOMS, ACTIONS.READ),
            (MODULES.BOOKINGS, ACTIONS.CREATE),
            (MODULES.BOOKINGS, ACTIONS.READ),
            (MODULES.BOOKINGS, ACTIONS.UPDATE),
        ],
    },
}


def describe(module: str, action: str) -> str:
    return f"{action.capitalize()} {module}"


async def seed_permissions(store: PermissionStore) -> dict[tuple[str, str], Permission]:
    """
    Create the module x action catalogue.

    Returns:
        Dictionary mapping (module, action) to Permission objects
    """
    log.info("Creating permission catalogue...")
    keys = [(m, a) for m in MODULES.ALL for a in ACTIONS.ALL]
    existing = await store.find_permissions_by_keys(keys)
    missing = [PermissionCreate(module=m, action=a, description=describe(m, a)) for m, a in keys if (m, a) not in existing]

    if missing:
        await store.bulk_create_permissions(missing)
    log.info("Created %d permissions, %d already present", len(missing), len(existing))
    return await store.find_permissions_by_keys(keys)


async def seed_groups(store: PermissionStore, permissions_map: dict[tuple[str, str], Permission]) -> dict:
    """Create the default groups, or add any grants they are missing."""
    log.info("Creating default groups...")
    existing = await store.find_groups_by_names(DEFAULT_GROUPS)
    groups = {}

    for name, group_config in DEFAULT_GROUPS.items():
        permission_ids = [permissions_map[key].id for key in dict.fromkeys(group_config["permissions"])]
        if name in existing:
            result = await store.link_group_permissions(existing[name].id, permission_ids, LinkMode.ADD)
            log.info("Group '%s' exists, added %d missing grants", name, result.added)
            groups[name] = existing[name]
            continue

        groups[name] = await store.create_group(
            GroupCreate(name=name, description=group_config["description"], permission_ids=permission_ids)
        )
        log.info("Created group '%s' with %d permissions", name, len(permission_ids))
    return groups


async def seed_admin(db: AsyncSession, group_id: str, email: str, username: str) -> str:
    """Create the administrator user if absent; returns a bearer token for it."""
    users = UserStore(db)
    matches = [u for u in await users.list_users(search=username) if u.username == username]
    if matches:
        user = matches[0]
        log.info("User '%s' already exists", username)
    else:
        user = await users.create_user(
            UserCreate(email=email, username=username, full_name="System Administrator", group_id=group_id)
        )
        log.info("Created administrator '%s'", username)
    return create_access_token(user.id)


async def seed(db: AsyncSession, admin_email: str | None = None, admin_username: str = "admin") -> str | None:
    """Seed permissions, groups and the optional admin; returns the admin's token if one was requested."""
    store = PermissionStore(db)
    permissions_map = await seed_permissions(store)
    groups = await seed_groups(store, permissions_map)

    log.info("Permission seeding completed successfully!")
    for name, group_config in DEFAULT_GROUPS.items():
        log.info("  - %s: %s", name, group_config["description"])

    if admin_email:
        return await seed_admin(db, groups[ADMIN_GROUP].id, admin_email, admin_username)
    return None


async def main(admin_email: str | None = None, admin_username: str = "admin"):
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        token = await seed(db, admin_email, admin_username)
    if token:
        print(f"Bearer token for {admin_username}:\n{token}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the permission catalogue and default groups")
    parser.add_argument("--admin-email", help="Also create an administrator user with this email")
    parser.add_argument("--admin-username", default="admin")
    args = parser.parse_args()
    asyncio.run(main(args.admin_email, args.admin_username))
