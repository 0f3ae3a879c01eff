"""Operation handlers: apply one validated outbox payload to the external calendar.

Handlers raise on failure and never touch the queue row; the worker turns a
raised exception into a retry or dead-letter decision.  A missing or invalid
workspace connection raises :class:`ConnectionInvalidError` before any
provider call is made.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, assert_never
from uuid import UUID

from calsync.sync.bindings import BindingRepository
from calsync.sync.connections import ConnectionRepository
from calsync.sync.errors import CalendarRequestError, ConnectionInvalidError
from calsync.sync.models import (
    Binding,
    CancelEventPayload,
    OutboxPayload,
    RebuildAllPayload,
    UpsertEventPayload,
)
from calsync.sync.outbox import DEFAULT_MAX_ATTEMPTS, OutboxStore
from calsync.sync.provider import CalendarProvider, ProviderFactory
from calsync.sync.sources import ActiveEntitySource

logger = logging.getLogger(__name__)

_GONE_STATUS_CODES = (404, 410)


def _is_gone(exc: Exception) -> bool:
    return isinstance(exc, CalendarRequestError) and exc.status_code in _GONE_STATUS_CODES


@dataclass
class HandlerResult:
    """Summary of what a handler did, logged by the worker."""

    action: str
    external_event_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class SyncHandlers:
    """Dispatches payloads to the UPSERT_EVENT, CANCEL_EVENT and REBUILD_ALL handlers."""

    def __init__(
        self,
        *,
        bindings: BindingRepository,
        connections: ConnectionRepository,
        providers: ProviderFactory,
        outbox: OutboxStore | None = None,
        active_sources: ActiveEntitySource | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._bindings = bindings
        self._connections = connections
        self._providers = providers
        self._outbox = outbox
        self._active_sources = active_sources
        self._max_attempts = max_attempts

    async def handle(self, payload: OutboxPayload) -> HandlerResult:
        match payload:
            case UpsertEventPayload():
                return await self.upsert_event(payload)
            case CancelEventPayload():
                return await self.cancel_event(payload)
            case RebuildAllPayload():
                return await self.rebuild_all(payload)
            case _:
                assert_never(payload)

    async def _provider_for(self, workspace_id: UUID) -> CalendarProvider:
        connection = await self._connections.get(workspace_id)
        if not connection.usable:
            raise ConnectionInvalidError(workspace_id)
        return self._providers.for_connection(connection)

    async def upsert_event(self, payload: UpsertEventPayload) -> HandlerResult:
        provider = await self._provider_for(payload.workspace_id)
        existing = await self._bindings.get(
            payload.workspace_id, payload.source_type, payload.source_id
        )

        if existing is not None:
            # A 404/410 here propagates and dead-letters the item.
            event_id = await provider.update_event(
                calendar_id=existing.calendar_id,
                event_id=existing.external_event_id,
                fields=payload.event,
            )
            action = "updated"
        else:
            event_id = await provider.create_event(
                calendar_id=payload.calendar_id,
                fields=payload.event,
            )
            action = "created"

        stored = await self._bindings.upsert(
            Binding(
                workspace_id=payload.workspace_id,
                source_type=payload.source_type,
                source_id=payload.source_id,
                external_event_id=event_id,
                calendar_id=existing.calendar_id if existing is not None else payload.calendar_id,
                event_type=payload.event_type,
                event_title=payload.event.title,
                event_start=payload.event.start,
                event_end=payload.event.end,
            )
        )
        return HandlerResult(
            action=action,
            external_event_id=event_id,
            details={"sync_version": stored.sync_version},
        )

    async def cancel_event(self, payload: CancelEventPayload) -> HandlerResult:
        provider = await self._provider_for(payload.workspace_id)
        binding = await self._bindings.get(
            payload.workspace_id, payload.source_type, payload.source_id
        )
        if binding is None:
            return HandlerResult(action="noop")

        try:
            await provider.delete_event(
                calendar_id=binding.calendar_id,
                event_id=binding.external_event_id,
            )
        except CalendarRequestError as exc:
            if not _is_gone(exc):
                raise
            logger.info(
                "Event %s already gone from calendar; removing binding",
                binding.external_event_id,
            )

        await self._bindings.delete(binding.workspace_id, binding.source_type, binding.source_id)
        return HandlerResult(action="cancelled", external_event_id=binding.external_event_id)

    async def rebuild_all(self, payload: RebuildAllPayload) -> HandlerResult:
        provider = await self._provider_for(payload.workspace_id)
        bindings = await self._bindings.list_for_workspace(payload.workspace_id)

        deleted = 0
        already_gone = 0
        for binding in bindings:
            try:
                await provider.delete_event(
                    calendar_id=binding.calendar_id,
                    event_id=binding.external_event_id,
                )
                deleted += 1
            except CalendarRequestError as exc:
                if not _is_gone(exc):
                    raise
                already_gone += 1
                logger.info(
                    "Rebuild: event %s for %s %s already gone",
                    binding.external_event_id,
                    binding.source_type,
                    binding.source_id,
                )

        removed = await self._bindings.delete_for_workspace(payload.workspace_id)
        requeued = await self._requeue_active(payload)
        return HandlerResult(
            action="rebuilt",
            details={
                "events_deleted": deleted,
                "events_already_gone": already_gone,
                "bindings_removed": removed,
                "upserts_enqueued": requeued,
            },
        )

    async def _requeue_active(self, payload: RebuildAllPayload) -> int:
        if self._active_sources is None or self._outbox is None:
            logger.warning(
                "Rebuild for workspace %s removed all events but no active entity source "
                "is configured; events will not be recreated",
                payload.workspace_id,
            )
            return 0

        upserts = await self._active_sources.list_active(payload.workspace_id, payload.calendar_id)
        for upsert in upserts:
            await self._outbox.enqueue(upsert, max_attempts=self._max_attempts)
        logger.info(
            "Rebuild enqueued %d upsert(s) for workspace %s", len(upserts), payload.workspace_id
        )
        return len(upserts)
