"""Root conftest: in-memory fakes of every sync collaborator plus the Postgres container.

Unit tests drive the worker and handlers against the fakes below.  Integration
tests (``tests/integration``) use the session-scoped ``postgres_container``
and provision a fresh database per test.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from calsync.config import WorkerConfig
from calsync.core.clock import ManualClock
from calsync.sync.bindings import BindingRepository
from calsync.sync.connections import ConnectionRepository
from calsync.sync.errors import CalendarRequestError
from calsync.sync.handlers import SyncHandlers
from calsync.sync.locks import DistributedLock
from calsync.sync.models import (
    Binding,
    CalendarEventFields,
    CancelEventPayload,
    Connection,
    OutboxStatus,
    QueueItem,
    RebuildAllPayload,
    UpsertEventPayload,
    dump_payload,
)
from calsync.sync.outbox import DEFAULT_MAX_ATTEMPTS, OutboxStore, clamp_dead_letter_limit
from calsync.sync.provider import CalendarProvider, ProviderFactory
from calsync.sync.sources import ActiveEntitySource
from calsync.sync.worker import SyncWorker

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from calsync.db import Database

docker_available = shutil.which("docker") is not None

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def upsert_payload(
    workspace_id: uuid.UUID,
    source_id: uuid.UUID | None = None,
    *,
    title: str = "Gate 2 review",
    calendar_id: str = "primary",
    source_type: str = "gate_run",
    **event: Any,
) -> UpsertEventPayload:
    return UpsertEventPayload(
        workspace_id=workspace_id,
        calendar_id=calendar_id,
        source_type=source_type,
        source_id=source_id or uuid.uuid4(),
        event_type="GATE_REVIEW",
        event=CalendarEventFields(
            title=title,
            start=event.pop("start", T0 + timedelta(days=7)),
            end=event.pop("end", T0 + timedelta(days=7, hours=1)),
            **event,
        ),
    )


def cancel_payload(
    workspace_id: uuid.UUID, source_id: uuid.UUID, *, source_type: str = "gate_run"
) -> CancelEventPayload:
    return CancelEventPayload(
        workspace_id=workspace_id,
        calendar_id="primary",
        source_type=source_type,
        source_id=source_id,
    )


def rebuild_payload(workspace_id: uuid.UUID) -> RebuildAllPayload:
    return RebuildAllPayload(workspace_id=workspace_id, calendar_id="primary")


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class InMemoryOutboxStore(OutboxStore):
    """Dict-backed outbox with the same readiness and transition rules as Postgres."""

    def __init__(self, clock: ManualClock) -> None:
        self._clock = clock
        self.items: dict[uuid.UUID, QueueItem] = {}
        self.transitions: list[tuple[uuid.UUID, OutboxStatus]] = []
        self._seq = 0

    def add_raw(
        self,
        workspace_id: uuid.UUID,
        operation: str,
        payload: Any,
        *,
        status: OutboxStatus = OutboxStatus.PENDING,
        attempts: int = 0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        next_attempt_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> QueueItem:
        """Insert a row exactly as the application would, bypassing validation."""
        self._seq += 1
        now = self._clock.now()
        item = QueueItem(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            operation=operation,
            payload=payload,
            status=status,
            attempts=attempts,
            max_attempts=max_attempts,
            next_attempt_at=next_attempt_at or now,
            created_at=now + timedelta(microseconds=self._seq),
            updated_at=updated_at or now,
        )
        self.items[item.id] = item
        return item

    async def enqueue(
        self,
        payload: UpsertEventPayload | CancelEventPayload | RebuildAllPayload,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: datetime | None = None,
    ) -> uuid.UUID:
        item = self.add_raw(
            payload.workspace_id,
            payload.operation,
            json.loads(dump_payload(payload)),
            max_attempts=max_attempts,
            next_attempt_at=now,
        )
        return item.id

    async def get(self, item_id: uuid.UUID) -> QueueItem | None:
        return self.items.get(item_id)

    @staticmethod
    def _ready(item: QueueItem, now: datetime, stale_before: datetime | None) -> bool:
        if item.status in (OutboxStatus.PENDING, OutboxStatus.FAILED):
            return item.next_attempt_at <= now
        if item.status is OutboxStatus.PROCESSING and stale_before is not None:
            return item.updated_at <= stale_before
        return False

    @staticmethod
    def _source_key(item: QueueItem) -> tuple[Any, ...] | None:
        if item.operation not in ("UPSERT_EVENT", "CANCEL_EVENT"):
            return None
        payload = item.payload if isinstance(item.payload, dict) else {}
        if payload.get("sourceType") is None or payload.get("sourceId") is None:
            return None
        return (item.workspace_id, payload["sourceType"], str(payload["sourceId"]))

    def _held_back(self, item: QueueItem) -> bool:
        """True while an earlier open row exists for the same source."""
        key = self._source_key(item)
        if key is None:
            return False
        return any(
            other.status
            in (OutboxStatus.PENDING, OutboxStatus.PROCESSING, OutboxStatus.FAILED)
            and self._source_key(other) == key
            and (other.created_at, str(other.id)) < (item.created_at, str(item.id))
            for other in self.items.values()
        )

    async def fetch_ready_batch(
        self, limit: int, now: datetime, *, stale_before: datetime | None = None
    ) -> list[QueueItem]:
        ready = [
            i
            for i in self.items.values()
            if self._ready(i, now, stale_before) and not self._held_back(i)
        ]
        ready.sort(key=lambda i: (i.created_at, str(i.id)))
        return ready[:limit]

    def _transition(self, item_id: uuid.UUID, **changes: Any) -> QueueItem:
        item = replace(self.items[item_id], **changes)
        self.items[item_id] = item
        self.transitions.append((item_id, item.status))
        return item

    async def mark_processing(
        self, item_id: uuid.UUID, now: datetime, *, stale_before: datetime | None = None
    ) -> QueueItem | None:
        item = self.items.get(item_id)
        if item is None or not self._ready(item, now, stale_before) or self._held_back(item):
            return None
        return self._transition(item_id, status=OutboxStatus.PROCESSING, updated_at=now)

    async def mark_completed(self, item_id: uuid.UUID, now: datetime) -> bool:
        if self.items[item_id].status is not OutboxStatus.PROCESSING:
            return False
        self._transition(
            item_id,
            status=OutboxStatus.COMPLETED,
            processed_at=now,
            updated_at=now,
            last_error=None,
        )
        return True

    async def mark_failed_for_retry(
        self,
        item_id: uuid.UUID,
        *,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        if self.items[item_id].status is not OutboxStatus.PROCESSING:
            return False
        self._transition(
            item_id,
            status=OutboxStatus.FAILED,
            attempts=attempts,
            next_attempt_at=next_attempt_at,
            last_error=error,
            updated_at=now,
        )
        return True

    async def mark_dead_letter(
        self, item_id: uuid.UUID, *, attempts: int, error: str, now: datetime
    ) -> bool:
        item = self.items[item_id]
        if item.status is not OutboxStatus.PROCESSING:
            return False
        self._transition(
            item_id,
            status=OutboxStatus.DEAD_LETTER,
            attempts=min(attempts, item.max_attempts),
            last_error=error,
            updated_at=now,
        )
        return True

    async def status_counts(self, workspace_id: uuid.UUID | None = None) -> dict[str, int]:
        counts = {status.value: 0 for status in OutboxStatus}
        for item in self.items.values():
            if workspace_id is None or item.workspace_id == workspace_id:
                counts[item.status.value] += 1
        return counts

    async def list_dead_letters(
        self, workspace_id: uuid.UUID | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        rows = [
            {
                "id": i.id,
                "workspace_id": i.workspace_id,
                "operation": i.operation,
                "attempts": i.attempts,
                "max_attempts": i.max_attempts,
                "last_error": i.last_error,
                "created_at": i.created_at,
                "updated_at": i.updated_at,
            }
            for i in self.items.values()
            if i.status is OutboxStatus.DEAD_LETTER
            and (workspace_id is None or i.workspace_id == workspace_id)
        ]
        rows.sort(key=lambda r: r["updated_at"], reverse=True)
        return rows[: clamp_dead_letter_limit(limit)]

    async def requeue_dead_letter(self, item_id: uuid.UUID, now: datetime) -> bool:
        item = self.items.get(item_id)
        if item is None or item.status is not OutboxStatus.DEAD_LETTER:
            return False
        self._transition(
            item_id,
            status=OutboxStatus.PENDING,
            attempts=0,
            next_attempt_at=now,
            last_error=None,
            updated_at=now,
        )
        return True

    async def purge_terminal(self, older_than: datetime) -> int:
        doomed = [
            i.id
            for i in self.items.values()
            if i.status in (OutboxStatus.COMPLETED, OutboxStatus.DEAD_LETTER)
            and i.updated_at < older_than
        ]
        for item_id in doomed:
            del self.items[item_id]
        return len(doomed)


class InMemoryBindingRepository(BindingRepository):
    def __init__(self) -> None:
        self.rows: dict[tuple[uuid.UUID, str, uuid.UUID], Binding] = {}

    async def get(
        self, workspace_id: uuid.UUID, source_type: str, source_id: uuid.UUID
    ) -> Binding | None:
        return self.rows.get((workspace_id, str(source_type), source_id))

    async def upsert(self, binding: Binding) -> Binding:
        key = (binding.workspace_id, str(binding.source_type), binding.source_id)
        existing = self.rows.get(key)
        stored = replace(
            binding,
            id=existing.id if existing else uuid.uuid4(),
            sync_version=existing.sync_version + 1 if existing else 1,
        )
        self.rows[key] = stored
        return stored

    async def delete(
        self, workspace_id: uuid.UUID, source_type: str, source_id: uuid.UUID
    ) -> bool:
        return self.rows.pop((workspace_id, str(source_type), source_id), None) is not None

    async def list_for_workspace(self, workspace_id: uuid.UUID) -> list[Binding]:
        return [b for b in self.rows.values() if b.workspace_id == workspace_id]

    async def delete_for_workspace(self, workspace_id: uuid.UUID) -> int:
        doomed = [k for k in self.rows if k[0] == workspace_id]
        for key in doomed:
            del self.rows[key]
        return len(doomed)


class InMemoryConnectionRepository(ConnectionRepository):
    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, Connection] = {}
        self.invalidated: list[uuid.UUID] = []

    def add(self, workspace_id: uuid.UUID, *, is_valid: bool = True) -> Connection:
        connection = Connection(
            workspace_id=workspace_id,
            refresh_token_encrypted=f"refresh-{workspace_id.hex[:8]}",
            calendar_id="primary",
            is_valid=is_valid,
        )
        self.rows[workspace_id] = connection
        return connection

    async def get(self, workspace_id: uuid.UUID) -> Connection:
        return self.rows.get(workspace_id) or Connection(
            workspace_id=workspace_id,
            refresh_token_encrypted=None,
            calendar_id=None,
            is_valid=False,
        )

    async def mark_invalid(self, workspace_id: uuid.UUID, reason: str | None = None) -> bool:
        connection = self.rows.get(workspace_id)
        if connection is None or not connection.is_valid:
            return False
        self.rows[workspace_id] = replace(connection, is_valid=False)
        self.invalidated.append(workspace_id)
        return True


class InMemoryLock(DistributedLock):
    """Lock with an optional set of ids held by an imaginary other worker."""

    def __init__(self) -> None:
        self.held_ids: set[uuid.UUID] = set()
        self.held_elsewhere: set[uuid.UUID] = set()
        self.releases: list[uuid.UUID] = []

    async def try_acquire(self, item_id: uuid.UUID) -> bool:
        if item_id in self.held_ids or item_id in self.held_elsewhere:
            return False
        self.held_ids.add(item_id)
        return True

    async def release(self, item_id: uuid.UUID) -> None:
        if item_id in self.held_ids:
            self.held_ids.discard(item_id)
            self.releases.append(item_id)


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeCalendarProvider(CalendarProvider):
    """Records calls and keeps an in-memory calendar; failures are scripted per call."""

    def __init__(self) -> None:
        self.events: dict[str, CalendarEventFields] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.failures: dict[str, list[BaseException]] = {"create": [], "update": [], "delete": []}
        self.delete_failures: dict[str, BaseException] = {}
        self.delay_s = 0.0
        self._seq = 0

    @property
    def name(self) -> str:
        return "fake"

    def fail_next(self, operation: str, exc: BaseException) -> None:
        self.failures[operation].append(exc)

    async def _maybe_fail(self, operation: str) -> None:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.failures[operation]:
            raise self.failures[operation].pop(0)

    async def create_event(self, *, calendar_id: str, fields: CalendarEventFields) -> str:
        self.calls.append(("create", None))
        await self._maybe_fail("create")
        self._seq += 1
        event_id = f"evt-{self._seq}"
        self.events[event_id] = fields
        return event_id

    async def update_event(
        self, *, calendar_id: str, event_id: str, fields: CalendarEventFields
    ) -> str:
        self.calls.append(("update", event_id))
        await self._maybe_fail("update")
        if event_id not in self.events:
            raise CalendarRequestError(status_code=404, message="Not Found")
        self.events[event_id] = fields
        return event_id

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        self.calls.append(("delete", event_id))
        await self._maybe_fail("delete")
        if event_id in self.delete_failures:
            raise self.delete_failures[event_id]
        if self.events.pop(event_id, None) is None:
            raise CalendarRequestError(status_code=410, message="Resource has been deleted")


class FakeProviderFactory(ProviderFactory):
    def __init__(self, provider: FakeCalendarProvider) -> None:
        self.provider = provider
        self.closed = False

    def for_connection(self, connection: Connection) -> CalendarProvider:
        return self.provider

    async def close(self) -> None:
        self.closed = True


class StaticActiveEntitySource(ActiveEntitySource):
    def __init__(self, payloads: list[UpsertEventPayload] | None = None) -> None:
        self.payloads = payloads or []

    async def list_active(
        self, workspace_id: uuid.UUID, calendar_id: str
    ) -> list[UpsertEventPayload]:
        return [p for p in self.payloads if p.workspace_id == workspace_id]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def outbox(clock: ManualClock) -> InMemoryOutboxStore:
    return InMemoryOutboxStore(clock)


@pytest.fixture
def bindings() -> InMemoryBindingRepository:
    return InMemoryBindingRepository()


@pytest.fixture
def connections() -> InMemoryConnectionRepository:
    return InMemoryConnectionRepository()


@pytest.fixture
def lock() -> InMemoryLock:
    return InMemoryLock()


@pytest.fixture
def provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def workspace_id(connections: InMemoryConnectionRepository) -> uuid.UUID:
    """A workspace with a valid calendar connection."""
    ws = uuid.uuid4()
    connections.add(ws)
    return ws


@pytest.fixture
def active_sources() -> StaticActiveEntitySource:
    return StaticActiveEntitySource()


@pytest.fixture
def handlers(
    bindings: InMemoryBindingRepository,
    connections: InMemoryConnectionRepository,
    provider: FakeCalendarProvider,
    outbox: InMemoryOutboxStore,
    active_sources: StaticActiveEntitySource,
) -> SyncHandlers:
    return SyncHandlers(
        bindings=bindings,
        connections=connections,
        providers=FakeProviderFactory(provider),
        outbox=outbox,
        active_sources=active_sources,
    )


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        name="test",
        batch_size=10,
        poll_interval_s=0.05,
        max_attempts=5,
        base_backoff_s=1.0,
        max_backoff_s=3600.0,
        recover_processing_after_s=300.0,
        shutdown_timeout_s=5.0,
    )


@pytest.fixture
def worker(
    outbox: InMemoryOutboxStore,
    lock: InMemoryLock,
    handlers: SyncHandlers,
    connections: InMemoryConnectionRepository,
    worker_config: WorkerConfig,
    clock: ManualClock,
) -> SyncWorker:
    return SyncWorker(
        store=outbox,
        lock=lock,
        handlers=handlers,
        connections=connections,
        config=worker_config,
        clock=clock,
    )


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_database`` usage creates a database with a random name,
    so rows never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh database and connected :class:`Database` for a single test usage.

    Tests should use this as:
        async with provisioned_database() as db:
            ...
    """
    from calsync.db import Database

    @asynccontextmanager
    async def _provision(
        *,
        db_name: str | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 4,
    ) -> AsyncIterator[Database]:
        db = Database(
            db_name=db_name or _unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
