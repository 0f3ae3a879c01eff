"""Persistence for ``calendar_event_bindings``.

A binding maps one workspace source entity ``(workspace_id, source_type,
source_id)`` to the external event created for it.  The tuple is unique, so a
repeated upsert updates the existing row in place and bumps ``sync_version``.
"""

from __future__ import annotations

import abc
import logging
from typing import Any
from uuid import UUID

from calsync.db import affected_rows
from calsync.sync.models import Binding

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, workspace_id, source_type, source_id, external_event_id, calendar_id,
    event_type, event_title, event_start, event_end, sync_version, last_synced_at
"""


class BindingRepository(abc.ABC):
    @abc.abstractmethod
    async def get(self, workspace_id: UUID, source_type: str, source_id: UUID) -> Binding | None:
        ...

    @abc.abstractmethod
    async def upsert(self, binding: Binding) -> Binding:
        """Insert or update the binding for its source tuple and return the stored row."""

    @abc.abstractmethod
    async def delete(self, workspace_id: UUID, source_type: str, source_id: UUID) -> bool:
        ...

    @abc.abstractmethod
    async def list_for_workspace(self, workspace_id: UUID) -> list[Binding]:
        ...

    @abc.abstractmethod
    async def delete_for_workspace(self, workspace_id: UUID) -> int:
        ...


class PostgresBindingRepository(BindingRepository):
    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def get(self, workspace_id: UUID, source_type: str, source_id: UUID) -> Binding | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_COLUMNS}
            FROM calendar_event_bindings
            WHERE workspace_id = $1 AND source_type = $2 AND source_id = $3
            """,
            workspace_id,
            source_type,
            source_id,
        )
        return Binding.from_row(row) if row is not None else None

    async def upsert(self, binding: Binding) -> Binding:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO calendar_event_bindings (
                workspace_id, source_type, source_id, external_event_id, calendar_id,
                event_type, event_title, event_start, event_end
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (workspace_id, source_type, source_id) DO UPDATE SET
                external_event_id = EXCLUDED.external_event_id,
                calendar_id = EXCLUDED.calendar_id,
                event_type = EXCLUDED.event_type,
                event_title = EXCLUDED.event_title,
                event_start = EXCLUDED.event_start,
                event_end = EXCLUDED.event_end,
                sync_version = calendar_event_bindings.sync_version + 1,
                last_synced_at = now(),
                updated_at = now()
            RETURNING {_COLUMNS}
            """,
            binding.workspace_id,
            str(binding.source_type),
            binding.source_id,
            binding.external_event_id,
            binding.calendar_id,
            str(binding.event_type),
            binding.event_title,
            binding.event_start,
            binding.event_end,
        )
        return Binding.from_row(row)

    async def delete(self, workspace_id: UUID, source_type: str, source_id: UUID) -> bool:
        status = await self._pool.execute(
            """
            DELETE FROM calendar_event_bindings
            WHERE workspace_id = $1 AND source_type = $2 AND source_id = $3
            """,
            workspace_id,
            source_type,
            source_id,
        )
        return affected_rows(status) > 0

    async def list_for_workspace(self, workspace_id: UUID) -> list[Binding]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM calendar_event_bindings
            WHERE workspace_id = $1
            ORDER BY created_at, id
            """,
            workspace_id,
        )
        return [Binding.from_row(row) for row in rows]

    async def delete_for_workspace(self, workspace_id: UUID) -> int:
        status = await self._pool.execute(
            "DELETE FROM calendar_event_bindings WHERE workspace_id = $1",
            workspace_id,
        )
        deleted = affected_rows(status)
        logger.info("Deleted %d binding(s) for workspace %s", deleted, workspace_id)
        return deleted

