"""Per-item mutual exclusion across worker processes.

:class:`PostgresAdvisoryLock` uses session-level advisory locks.  Each held
lock pins one pooled connection until it is released; if the worker process
dies, PostgreSQL drops the session and the lock with it, so no lease expiry
is needed.  Keys are ``(namespace, hashtext(item_id))``.  A hash collision can
only make an unrelated item look busy for one poll, never let two workers
hold the same item.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

logger = logging.getLogger(__name__)

# Arbitrary constant separating outbox item locks from other advisory lock users.
OUTBOX_LOCK_NAMESPACE = 0x0CA1_5C
DEFAULT_ACQUIRE_TIMEOUT_S = 10.0


class DistributedLock(abc.ABC):
    """Non-blocking, per-item lock shared by every worker."""

    @abc.abstractmethod
    async def try_acquire(self, item_id: UUID) -> bool:
        """Attempt to take the lock; return False immediately if it is held elsewhere."""

    @abc.abstractmethod
    async def release(self, item_id: UUID) -> None:
        """Release the lock. Releasing an unheld lock is a no-op."""

    @asynccontextmanager
    async def held(self, item_id: UUID) -> AsyncIterator[bool]:
        """Yield whether the lock was acquired, releasing it on every exit path."""
        acquired = await self.try_acquire(item_id)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(item_id)


class PostgresAdvisoryLock(DistributedLock):
    def __init__(
        self,
        pool: Any,
        namespace: int = OUTBOX_LOCK_NAMESPACE,
        *,
        acquire_timeout_s: float = DEFAULT_ACQUIRE_TIMEOUT_S,
    ) -> None:
        self._pool = pool
        self._namespace = namespace
        self._acquire_timeout_s = acquire_timeout_s
        self._held: dict[UUID, Any] = {}
        self._guard = asyncio.Lock()

    @property
    def held_count(self) -> int:
        return len(self._held)

    async def try_acquire(self, item_id: UUID) -> bool:
        async with self._guard:
            if item_id in self._held:
                return False
            # Reserve the slot so a concurrent caller in this process backs off.
            self._held[item_id] = None

        conn = None
        try:
            # Raises TimeoutError when the pool stays exhausted.
            conn = await self._pool.acquire(timeout=self._acquire_timeout_s)
            acquired = await conn.fetchval(
                "SELECT pg_try_advisory_lock($1::int, hashtext($2::text))",
                self._namespace,
                str(item_id),
            )
        except BaseException:
            self._held.pop(item_id, None)
            if conn is not None:
                await self._pool.release(conn)
            raise

        if not acquired:
            self._held.pop(item_id, None)
            await self._pool.release(conn)
            return False

        self._held[item_id] = conn
        return True

    async def release(self, item_id: UUID) -> None:
        conn = self._held.pop(item_id, None)
        if conn is None:
            return
        try:
            await conn.fetchval(
                "SELECT pg_advisory_unlock($1::int, hashtext($2::text))",
                self._namespace,
                str(item_id),
            )
        except Exception:
            # Pool reset on release runs pg_advisory_unlock_all().
            logger.warning("Advisory unlock failed for outbox item %s", item_id, exc_info=True)
        finally:
            await self._pool.release(conn)

    async def release_all(self) -> None:
        for item_id in list(self._held):
            await self.release(item_id)
