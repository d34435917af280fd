"""
Base class for session-backed stores.

A store wraps one AsyncSession (one request) and owns its transaction
boundaries:

- ``transaction()`` commits on success and rolls back on any error,
  translating SQLAlchemy failures into ``StoreError``.
- ``savepoint()`` isolates one item of a batch so a failing item can be
  reported without aborting the surrounding transaction.
- Invalidation hooks are kept in ``session.info`` so every store sharing
  the session notifies the same listeners (e.g. a per-request permission
  cache) whenever a transaction ends.
"""
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import StoreError
from app.utils import get_logger


log = get_logger(__name__)

_HOOKS_KEY = "invalidation_hooks"


class SessionStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def add_invalidation_hook(self, hook: Callable[[], None]) -> None:
        hooks = self.db.info.setdefault(_HOOKS_KEY, [])
        if hook not in hooks:
            hooks.append(hook)

    def _invalidate(self) -> None:
        for hook in self.db.info.get(_HOOKS_KEY, []):
            hook()

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    async def _execute(self, stmt: Any):
        try:
            return await self.db.execute(stmt)
        except SQLAlchemyError as e:
            log.error("Store query failed: %s", e)
            raise StoreError("Permission store unavailable") from e

    async def ping(self) -> None:
        await self._execute(text("SELECT 1"))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run the enclosed mutations as one all-or-nothing unit."""
        try:
            yield
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            log.error("Transaction rolled back: %s", e)
            raise StoreError("Transaction failed") from e
        except Exception:
            await self.db.rollback()
            raise
        finally:
            self._invalidate()

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Nested transaction; errors roll back only the enclosed work."""
        async with self.db.begin_nested():
            yield
