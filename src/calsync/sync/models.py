"""Data model for the sync engine: queue items, bindings, connections and payloads.

Payloads are stored as camelCase JSON in ``sync_outbox.payload`` and are
validated when an item is dequeued, never trusted as written.  The three
payload variants form a union discriminated on ``operation``; the row's
``operation`` column is authoritative and any ``operation`` key inside the
payload must agree with it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from calsync.sync.errors import PayloadValidationError


class OutboxOperation(StrEnum):
    UPSERT_EVENT = "UPSERT_EVENT"
    CANCEL_EVENT = "CANCEL_EVENT"
    REBUILD_ALL = "REBUILD_ALL"


class OutboxStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


class SourceType(StrEnum):
    TASK = "task"
    MILESTONE = "milestone"
    GATE_RUN = "gate_run"
    PROJECT_REVIEW = "project_review"


class CalendarEventType(StrEnum):
    GATE_REVIEW = "GATE_REVIEW"
    BLOCKER_DEADLINE = "BLOCKER_DEADLINE"
    MILESTONE = "MILESTONE"
    PROJECT_REVIEW = "PROJECT_REVIEW"


# ---------------------------------------------------------------------------
# Payload schemas
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class CalendarEventFields(_CamelModel):
    """Event content carried by an UPSERT_EVENT payload."""

    title: str = Field(min_length=1, max_length=500)
    description: str | None = None
    start: datetime
    end: datetime
    is_all_day: bool = False
    recurrence: list[str] | None = None
    location: str | None = None
    color_id: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    @model_validator(mode="after")
    def _validate_range(self) -> CalendarEventFields:
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class _PayloadBase(_CamelModel):
    workspace_id: UUID
    calendar_id: str = Field(min_length=1)


class UpsertEventPayload(_PayloadBase):
    operation: Literal["UPSERT_EVENT"] = "UPSERT_EVENT"
    source_type: SourceType
    source_id: UUID
    event_type: CalendarEventType
    event: CalendarEventFields


class CancelEventPayload(_PayloadBase):
    operation: Literal["CANCEL_EVENT"] = "CANCEL_EVENT"
    source_type: SourceType
    source_id: UUID


class RebuildAllPayload(_PayloadBase):
    operation: Literal["REBUILD_ALL"] = "REBUILD_ALL"


OutboxPayload = Annotated[
    UpsertEventPayload | CancelEventPayload | RebuildAllPayload,
    Field(discriminator="operation"),
]

_PAYLOAD_ADAPTER: TypeAdapter[OutboxPayload] = TypeAdapter(OutboxPayload)


def parse_payload(operation: str, raw: Any) -> OutboxPayload:
    """Validate a stored payload against the schema selected by ``operation``.

    Raises :class:`PayloadValidationError` for unknown operations, operation
    mismatches, malformed JSON and schema violations.
    """
    try:
        op = OutboxOperation(operation)
    except ValueError:
        raise PayloadValidationError(f"Unknown outbox operation: {operation!r}") from None

    if isinstance(raw, str | bytes):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PayloadValidationError(f"Payload is not valid JSON: {exc.msg}") from exc
    if not isinstance(raw, dict):
        raise PayloadValidationError("Payload must be a JSON object")

    embedded = raw.get("operation")
    if embedded is not None and embedded != op.value:
        raise PayloadValidationError(
            f"Payload operation {embedded!r} does not match row operation {op.value!r}"
        )

    try:
        return _PAYLOAD_ADAPTER.validate_python({**raw, "operation": op.value})
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise PayloadValidationError(f"Invalid {op.value} payload: {details}") from exc


def dump_payload(payload: UpsertEventPayload | CancelEventPayload | RebuildAllPayload) -> str:
    """Serialize a payload to the camelCase JSON stored in ``sync_outbox``."""
    return payload.model_dump_json(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------


def _row_to_kwargs(cls: type, row: Any) -> dict[str, Any]:
    data = dict(row)
    return {f.name: data[f.name] for f in fields(cls) if f.name in data}


@dataclass(frozen=True)
class QueueItem:
    """One ``sync_outbox`` row."""

    id: UUID
    workspace_id: UUID
    operation: str
    payload: Any
    status: OutboxStatus
    attempts: int
    max_attempts: int
    next_attempt_at: datetime
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None
    processed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> QueueItem:
        kwargs = _row_to_kwargs(cls, row)
        if isinstance(kwargs.get("payload"), str):
            kwargs["payload"] = json.loads(kwargs["payload"])
        kwargs["status"] = OutboxStatus(kwargs["status"])
        return cls(**kwargs)


@dataclass(frozen=True)
class Binding:
    """Mapping from a workspace source entity to the external calendar event."""

    workspace_id: UUID
    source_type: str
    source_id: UUID
    external_event_id: str
    calendar_id: str
    event_type: str
    event_title: str
    event_start: datetime
    event_end: datetime
    sync_version: int = 1
    last_synced_at: datetime | None = None
    id: UUID | None = None

    @classmethod
    def from_row(cls, row: Any) -> Binding:
        return cls(**_row_to_kwargs(cls, row))


@dataclass(frozen=True)
class Connection:
    """A workspace's Google Calendar connection."""

    workspace_id: UUID
    refresh_token_encrypted: str | None
    calendar_id: str | None
    is_valid: bool

    @property
    def usable(self) -> bool:
        return self.is_valid and bool(self.refresh_token_encrypted)

    @classmethod
    def from_row(cls, row: Any) -> Connection:
        return cls(**_row_to_kwargs(cls, row))
