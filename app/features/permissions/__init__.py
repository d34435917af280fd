"""
Permission management feature module.

Two-tier access control: groups grant permissions to their members and
per-user overrides take precedence over the group's value.
"""
