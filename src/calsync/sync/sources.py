"""Where REBUILD_ALL finds the entities whose events must be recreated.

The application owns its tracked entities (tasks, milestones, gate runs,
project reviews).  It exposes the currently active ones to the sync engine
through a view or table with this shape::

    workspace_id  uuid
    source_type   text         -- task | milestone | gate_run | project_review
    source_id     uuid
    event_type    text         -- GATE_REVIEW | BLOCKER_DEADLINE | MILESTONE | PROJECT_REVIEW
    title         text
    description   text NULL
    event_start   timestamptz
    event_end     timestamptz
    is_all_day    boolean
    recurrence    text[] NULL
    location      text NULL
    color_id      text NULL
    calendar_id   text NULL    -- falls back to the rebuild's calendar
"""

from __future__ import annotations

import abc
import logging
import re
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from calsync.sync.models import UpsertEventPayload

logger = logging.getLogger(__name__)

_RELATION_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class ActiveEntitySource(abc.ABC):
    @abc.abstractmethod
    async def list_active(self, workspace_id: UUID, calendar_id: str) -> list[UpsertEventPayload]:
        """Return one UPSERT_EVENT payload per active entity of the workspace."""


class SqlActiveEntitySource(ActiveEntitySource):
    """Reads active entities from an application-maintained relation."""

    def __init__(self, pool: Any, relation: str) -> None:
        if _RELATION_PATTERN.fullmatch(relation) is None:
            raise ValueError(f"Invalid relation name: {relation!r}")
        self._pool = pool
        self._relation = relation

    async def list_active(self, workspace_id: UUID, calendar_id: str) -> list[UpsertEventPayload]:
        rows = await self._pool.fetch(
            f"""
            SELECT source_type, source_id, event_type, title, description,
                   event_start, event_end, is_all_day, recurrence, location,
                   color_id, calendar_id
            FROM {self._relation}
            WHERE workspace_id = $1
            ORDER BY event_start, source_id
            """,
            workspace_id,
        )
        payloads: list[UpsertEventPayload] = []
        for row in rows:
            try:
                payloads.append(
                    UpsertEventPayload(
                        workspace_id=workspace_id,
                        calendar_id=row["calendar_id"] or calendar_id,
                        source_type=row["source_type"],
                        source_id=row["source_id"],
                        event_type=row["event_type"],
                        event={
                            "title": row["title"],
                            "description": row["description"],
                            "start": row["event_start"],
                            "end": row["event_end"],
                            "is_all_day": bool(row["is_all_day"]),
                            "recurrence": list(row["recurrence"]) if row["recurrence"] else None,
                            "location": row["location"],
                            "color_id": row["color_id"],
                        },
                    )
                )
            except ValidationError as exc:
                logger.warning(
                    "Skipping active %s %s during rebuild: %s",
                    row["source_type"],
                    row["source_id"],
                    exc.errors()[0]["msg"] if exc.errors() else exc,
                )
        return payloads
