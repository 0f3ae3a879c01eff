"""Read access to ``google_connections`` and the one-way invalidation flag."""

from __future__ import annotations

import abc
import logging
from typing import Any
from uuid import UUID

from calsync.db import affected_rows
from calsync.sync.models import Connection

logger = logging.getLogger(__name__)


class ConnectionRepository(abc.ABC):
    @abc.abstractmethod
    async def get(self, workspace_id: UUID) -> Connection:
        """Return the workspace's connection; a missing row is reported as invalid."""

    @abc.abstractmethod
    async def mark_invalid(self, workspace_id: UUID, reason: str | None = None) -> bool:
        """Flag the connection invalid. Never flips it back to valid."""


class PostgresConnectionRepository(ConnectionRepository):
    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def get(self, workspace_id: UUID) -> Connection:
        row = await self._pool.fetchrow(
            """
            SELECT workspace_id, refresh_token_encrypted, calendar_id, is_valid
            FROM google_connections
            WHERE workspace_id = $1
            """,
            workspace_id,
        )
        if row is None:
            return Connection(
                workspace_id=workspace_id,
                refresh_token_encrypted=None,
                calendar_id=None,
                is_valid=False,
            )
        return Connection.from_row(row)

    async def mark_invalid(self, workspace_id: UUID, reason: str | None = None) -> bool:
        status = await self._pool.execute(
            """
            UPDATE google_connections
            SET is_valid = false, last_error = $2, updated_at = now()
            WHERE workspace_id = $1 AND is_valid
            """,
            workspace_id,
            reason,
        )
        flipped = affected_rows(status) > 0
        if flipped:
            logger.warning("Marked Google connection invalid for workspace %s", workspace_id)
        return flipped
