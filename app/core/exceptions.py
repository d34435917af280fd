"""
Error taxonomy for the permission core.

These exceptions carry no HTTP knowledge; ``app.main`` maps them onto
responses through ``status_code`` and ``extra``.
"""
from typing import Any, Dict, Optional


class PermissionSystemError(Exception):
    """Base class for errors surfaced by the permission core."""
    status_code: int = 500

    def __init__(self, detail: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.detail, **self.extra}


class NotFound(PermissionSystemError):
    """Referenced permission, group or user does not exist."""
    status_code = 404


class Conflict(PermissionSystemError):
    """Duplicate key or delete blocked by live references."""
    status_code = 409


class MissingPermissions(PermissionSystemError):
    """Import references (module, action) pairs that are not stored."""
    status_code = 400


class ValidationError(PermissionSystemError):
    """Malformed input rejected before any store call."""
    status_code = 400


class StoreError(PermissionSystemError):
    """Persistence unreachable or transaction failed."""
    status_code = 503
