"""The ``sync_outbox`` queue store.

Rows are written by the application (or by :meth:`OutboxStore.enqueue`) and
every later transition is a single-row ``UPDATE`` issued by the worker while it
holds the item's lock:

    PENDING/FAILED --mark_processing--> PROCESSING
    PROCESSING --mark_completed--> COMPLETED
    PROCESSING --mark_failed_for_retry--> FAILED (next_attempt_at in the future)
    PROCESSING --mark_dead_letter--> DEAD_LETTER
    DEAD_LETTER --requeue_dead_letter--> PENDING (manual replay)

A PROCESSING row whose ``updated_at`` is older than the recovery grace period
is treated as orphaned by a crashed worker and becomes ready again.

UPSERT_EVENT and CANCEL_EVENT rows for the same ``(workspace, sourceType,
sourceId)`` are delivered one at a time in ``(created_at, id)`` order: a row is
not ready while an earlier row for its source is still PENDING, PROCESSING or
FAILED.  Workers may run any number of items in parallel without two of them
racing on one binding.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from calsync.db import affected_rows
from calsync.sync.models import (
    CancelEventPayload,
    OutboxStatus,
    QueueItem,
    RebuildAllPayload,
    UpsertEventPayload,
    dump_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
MAX_DEAD_LETTER_LIST_LIMIT = 500

_COLUMNS = """
    id, workspace_id, operation, payload, status, attempts, max_attempts,
    next_attempt_at, last_error, created_at, updated_at, processed_at
"""

# Shared readiness predicate. $N placeholders: now, stale_before.
_READY = """
    (
        (status IN ('PENDING', 'FAILED') AND next_attempt_at <= {now})
        OR (status = 'PROCESSING' AND updated_at <= {stale_before})
    )
"""

# Earlier open rows for the same source hold this one back. REBUILD_ALL rows
# have no sourceId, so the comparison is NULL and they are never held.
_IN_SOURCE_ORDER = """
    NOT EXISTS (
        SELECT 1
        FROM sync_outbox AS earlier
        WHERE earlier.workspace_id = sync_outbox.workspace_id
          AND earlier.operation IN ('UPSERT_EVENT', 'CANCEL_EVENT')
          AND earlier.payload->>'sourceType' = sync_outbox.payload->>'sourceType'
          AND earlier.payload->>'sourceId' = sync_outbox.payload->>'sourceId'
          AND earlier.status IN ('PENDING', 'PROCESSING', 'FAILED')
          AND (earlier.created_at, earlier.id) < (sync_outbox.created_at, sync_outbox.id)
    )
"""


class OutboxStore(abc.ABC):
    """Durable queue of calendar mutations."""

    @abc.abstractmethod
    async def enqueue(
        self,
        payload: UpsertEventPayload | CancelEventPayload | RebuildAllPayload,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: datetime | None = None,
    ) -> UUID:
        ...

    @abc.abstractmethod
    async def get(self, item_id: UUID) -> QueueItem | None:
        ...

    @abc.abstractmethod
    async def fetch_ready_batch(
        self,
        limit: int,
        now: datetime,
        *,
        stale_before: datetime | None = None,
    ) -> list[QueueItem]:
        """Return up to ``limit`` ready items ordered by ``created_at`` then ``id``.

        A row queued behind an earlier open row for the same source is not ready.
        """

    @abc.abstractmethod
    async def mark_processing(
        self,
        item_id: UUID,
        now: datetime,
        *,
        stale_before: datetime | None = None,
    ) -> QueueItem | None:
        """Claim a ready item; return the claimed row or None if it is no longer ready."""

    @abc.abstractmethod
    async def mark_completed(self, item_id: UUID, now: datetime) -> bool:
        ...

    @abc.abstractmethod
    async def mark_failed_for_retry(
        self,
        item_id: UUID,
        *,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        ...

    @abc.abstractmethod
    async def mark_dead_letter(
        self,
        item_id: UUID,
        *,
        attempts: int,
        error: str,
        now: datetime,
    ) -> bool:
        ...

    @abc.abstractmethod
    async def status_counts(self, workspace_id: UUID | None = None) -> dict[str, int]:
        ...

    @abc.abstractmethod
    async def list_dead_letters(
        self,
        workspace_id: UUID | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def requeue_dead_letter(self, item_id: UUID, now: datetime) -> bool:
        ...

    @abc.abstractmethod
    async def purge_terminal(self, older_than: datetime) -> int:
        """Delete COMPLETED and DEAD_LETTER rows last updated before ``older_than``."""


def clamp_dead_letter_limit(limit: int) -> int:
    if limit < 1:
        return 50
    return min(limit, MAX_DEAD_LETTER_LIST_LIMIT)


class PostgresOutboxStore(OutboxStore):
    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def enqueue(
        self,
        payload: UpsertEventPayload | CancelEventPayload | RebuildAllPayload,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: datetime | None = None,
    ) -> UUID:
        item_id = await self._pool.fetchval(
            """
            INSERT INTO sync_outbox (
                workspace_id, operation, payload, max_attempts, next_attempt_at
            )
            VALUES ($1, $2, $3::jsonb, $4, COALESCE($5, now()))
            RETURNING id
            """,
            payload.workspace_id,
            payload.operation,
            dump_payload(payload),
            max_attempts,
            now,
        )
        logger.debug("Enqueued %s outbox item %s", payload.operation, item_id)
        return item_id

    async def get(self, item_id: UUID) -> QueueItem | None:
        row = await self._pool.fetchrow(
            f"SELECT {_COLUMNS} FROM sync_outbox WHERE id = $1",
            item_id,
        )
        return QueueItem.from_row(row) if row is not None else None

    async def fetch_ready_batch(
        self,
        limit: int,
        now: datetime,
        *,
        stale_before: datetime | None = None,
    ) -> list[QueueItem]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM sync_outbox
            WHERE {_READY.format(now="$1", stale_before="$2")} AND {_IN_SOURCE_ORDER}
            ORDER BY created_at, id
            LIMIT $3
            """,
            now,
            stale_before,
            limit,
        )
        return [QueueItem.from_row(row) for row in rows]

    async def mark_processing(
        self,
        item_id: UUID,
        now: datetime,
        *,
        stale_before: datetime | None = None,
    ) -> QueueItem | None:
        row = await self._pool.fetchrow(
            f"""
            UPDATE sync_outbox
            SET status = 'PROCESSING', updated_at = $2
            WHERE id = $1
              AND {_READY.format(now="$2", stale_before="$3")}
              AND {_IN_SOURCE_ORDER}
            RETURNING {_COLUMNS}
            """,
            item_id,
            now,
            stale_before,
        )
        return QueueItem.from_row(row) if row is not None else None

    async def mark_completed(self, item_id: UUID, now: datetime) -> bool:
        status = await self._pool.execute(
            """
            UPDATE sync_outbox
            SET status = 'COMPLETED', processed_at = $2, updated_at = $2, last_error = NULL
            WHERE id = $1 AND status = 'PROCESSING'
            """,
            item_id,
            now,
        )
        return affected_rows(status) == 1

    async def mark_failed_for_retry(
        self,
        item_id: UUID,
        *,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        status = await self._pool.execute(
            """
            UPDATE sync_outbox
            SET status = 'FAILED', attempts = $2, next_attempt_at = $3,
                last_error = $4, updated_at = $5
            WHERE id = $1 AND status = 'PROCESSING'
            """,
            item_id,
            attempts,
            next_attempt_at,
            error,
            now,
        )
        return affected_rows(status) == 1

    async def mark_dead_letter(
        self,
        item_id: UUID,
        *,
        attempts: int,
        error: str,
        now: datetime,
    ) -> bool:
        status = await self._pool.execute(
            """
            UPDATE sync_outbox
            SET status = 'DEAD_LETTER', attempts = LEAST($2, max_attempts),
                last_error = $3, updated_at = $4
            WHERE id = $1 AND status = 'PROCESSING'
            """,
            item_id,
            attempts,
            error,
            now,
        )
        return affected_rows(status) == 1

    async def status_counts(self, workspace_id: UUID | None = None) -> dict[str, int]:
        rows = await self._pool.fetch(
            """
            SELECT status, count(*) AS n
            FROM sync_outbox
            WHERE $1::uuid IS NULL OR workspace_id = $1
            GROUP BY status
            """,
            workspace_id,
        )
        counts = {status.value: 0 for status in OutboxStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    async def list_dead_letters(
        self,
        workspace_id: UUID | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        rows = await self._pool.fetch(
            """
            SELECT id, workspace_id, operation, attempts, max_attempts, last_error,
                   created_at, updated_at
            FROM sync_outbox
            WHERE status = 'DEAD_LETTER' AND ($1::uuid IS NULL OR workspace_id = $1)
            ORDER BY updated_at DESC, id
            LIMIT $2
            """,
            workspace_id,
            clamp_dead_letter_limit(limit),
        )
        return [dict(row) for row in rows]

    async def requeue_dead_letter(self, item_id: UUID, now: datetime) -> bool:
        status = await self._pool.execute(
            """
            UPDATE sync_outbox
            SET status = 'PENDING', attempts = 0, next_attempt_at = $2,
                last_error = NULL, updated_at = $2
            WHERE id = $1 AND status = 'DEAD_LETTER'
            """,
            item_id,
            now,
        )
        requeued = affected_rows(status) == 1
        if requeued:
            logger.info("Requeued dead-lettered outbox item %s", item_id)
        return requeued

    async def purge_terminal(self, older_than: datetime) -> int:
        status = await self._pool.execute(
            """
            DELETE FROM sync_outbox
            WHERE status IN ('COMPLETED', 'DEAD_LETTER') AND updated_at < $1
            """,
            older_than,
        )
        deleted = affected_rows(status)
        logger.info("Purged %d terminal outbox item(s) older than %s", deleted, older_than)
        return deleted
