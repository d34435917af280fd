"""
Catalogue of modules and actions known to the back office.

Permissions are stored rows, so any (module, action) matching the naming
rule is valid; these constants name the ones the app itself checks.
"""


class MODULES:
    USERS = "users"
    GROUPS = "groups"
    PERMISSIONS = "permissions"
    HOTELS = "hotels"
    ROOMS = "rooms"
    BOOKINGS = "bookings"
    REPORTS = "reports"
    SETTINGS = "settings"
    AUDIT = "audit"

    ALL = (USERS, GROUPS, PERMISSIONS, HOTELS, ROOMS, BOOKINGS, REPORTS, SETTINGS, AUDIT)


class ACTIONS:
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"
    EXPORT = "export"
    IMPORT = "import"

    CRUD = (CREATE, READ, UPDATE, DELETE)
    ALL = (CREATE, READ, UPDATE, DELETE, MANAGE, EXPORT, IMPORT)


# Description given to permissions created implicitly by a group import
IMPORT_GENERATED_DESCRIPTION = "Created automatically during group import"
