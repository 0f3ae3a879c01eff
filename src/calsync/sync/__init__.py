"""Outbox-driven synchronization of workspace events to Google Calendar.

The worker drains ``sync_outbox`` rows, applies them through the operation
handlers and records bindings between source entities and external events.
"""

from calsync.sync.errors import ErrorClass, classify_error
from calsync.sync.handlers import SyncHandlers
from calsync.sync.models import (
    CalendarEventFields,
    CancelEventPayload,
    OutboxOperation,
    OutboxStatus,
    RebuildAllPayload,
    UpsertEventPayload,
    parse_payload,
)
from calsync.sync.retry import RetryPolicy
from calsync.sync.worker import ItemOutcome, SyncWorker

__all__ = [
    "CalendarEventFields",
    "CancelEventPayload",
    "ErrorClass",
    "ItemOutcome",
    "OutboxOperation",
    "OutboxStatus",
    "RebuildAllPayload",
    "RetryPolicy",
    "SyncHandlers",
    "SyncWorker",
    "UpsertEventPayload",
    "classify_error",
    "parse_payload",
]
