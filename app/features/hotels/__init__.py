"""
Hotel inventory and bookings.

Only the ownership columns matter to the rest of the app: a user that
created or updated any of these rows cannot be hard-deleted.
"""
