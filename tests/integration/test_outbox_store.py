"""Integration tests for PostgresOutboxStore against a real Postgres.

Covers:
- enqueue defaults and payload storage
- ready ordering and the PROCESSING recovery window
- the conditional claim and every transition guard
- dead-letter inspection, replay and retention purge
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from calsync.migrations import run_migrations
from calsync.sync.models import OutboxStatus
from calsync.sync.outbox import PostgresOutboxStore
from conftest import T0, cancel_payload, docker_available, upsert_payload

pytestmark = [
    pytest.mark.integration,
    pytest.mark.asyncio(loop_scope="session"),
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]


@pytest.fixture
async def db(provisioned_database):
    async with provisioned_database() as database:
        await run_migrations(database.dsn)
        yield database


@pytest.fixture
def store(db):
    return PostgresOutboxStore(db)


async def _claim(store, item_id, at=T0):
    item = await store.mark_processing(item_id, at)
    assert item is not None
    return item


class TestEnqueue:
    async def test_new_item_is_pending_with_zero_attempts(self, store):
        ws = uuid.uuid4()
        item_id = await store.enqueue(upsert_payload(ws), now=T0)

        item = await store.get(item_id)

        assert item.status == OutboxStatus.PENDING
        assert item.attempts == 0
        assert item.max_attempts == 5
        assert item.next_attempt_at == T0
        assert item.operation == "UPSERT_EVENT"
        assert item.payload["workspaceId"] == str(ws)
        assert item.payload["event"]["title"] == "Gate 2 review"

    async def test_missing_item_returns_none(self, store):
        assert await store.get(uuid.uuid4()) is None


class TestFetchReadyBatch:
    async def test_orders_by_creation_and_respects_limit(self, store):
        ws = uuid.uuid4()
        ids = [await store.enqueue(upsert_payload(ws), now=T0) for _ in range(3)]

        batch = await store.fetch_ready_batch(2, T0)

        assert [item.id for item in batch] == ids[:2]

    async def test_future_items_are_not_ready(self, store):
        await store.enqueue(upsert_payload(uuid.uuid4()), now=T0 + timedelta(minutes=5))

        assert await store.fetch_ready_batch(10, T0) == []
        assert len(await store.fetch_ready_batch(10, T0 + timedelta(minutes=5))) == 1

    async def test_terminal_items_are_never_ready(self, store):
        item_id = await store.enqueue(upsert_payload(uuid.uuid4()), now=T0)
        await _claim(store, item_id)
        await store.mark_completed(item_id, T0)

        assert await store.fetch_ready_batch(10, T0 + timedelta(days=1)) == []

    async def test_stale_processing_rows_are_recovered(self, store):
        item_id = await store.enqueue(upsert_payload(uuid.uuid4()), now=T0)
        await _claim(store, item_id)
        later = T0 + timedelta(minutes=10)

        assert await store.fetch_ready_batch(10, later) == []
        too_early = T0 - timedelta(seconds=1)
        assert await store.fetch_ready_batch(10, later, stale_before=too_early) == []

        recovered = await store.fetch_ready_batch(10, later, stale_before=T0)
        assert [item.id for item in recovered] == [item_id]


class TestSourceOrdering:
    async def test_later_row_for_same_source_waits(self, store):
        ws, source_id = uuid.uuid4(), uuid.uuid4()
        first = await store.enqueue(upsert_payload(ws, source_id), now=T0)
        second = await store.enqueue(cancel_payload(ws, source_id), now=T0)
        unrelated = await store.enqueue(upsert_payload(ws), now=T0)

        batch = await store.fetch_ready_batch(10, T0)

        assert [item.id for item in batch] == [first, unrelated]
        assert await store.mark_processing(second, T0) is None

    async def test_source_is_released_when_earlier_row_finishes(self, store):
        ws, source_id = uuid.uuid4(), uuid.uuid4()
        first = await store.enqueue(upsert_payload(ws, source_id), now=T0)
        second = await store.enqueue(upsert_payload(ws, source_id), now=T0)

        await _claim(store, first)
        assert await store.fetch_ready_batch(10, T0) == []
        await store.mark_failed_for_retry(
            first, attempts=1, next_attempt_at=T0 + timedelta(minutes=1), error="x", now=T0
        )
        assert await store.fetch_ready_batch(10, T0) == []

        later = T0 + timedelta(minutes=1)
        await _claim(store, first, at=later)
        await store.mark_dead_letter(first, attempts=2, error="gone", now=later)

        assert [item.id for item in await store.fetch_ready_batch(10, later)] == [second]
        assert (await _claim(store, second, at=later)).id == second

    async def test_same_source_in_other_workspace_is_independent(self, store):
        source_id = uuid.uuid4()
        first = await store.enqueue(upsert_payload(uuid.uuid4(), source_id), now=T0)
        second = await store.enqueue(upsert_payload(uuid.uuid4(), source_id), now=T0)

        batch = await store.fetch_ready_batch(10, T0)

        assert {item.id for item in batch} == {first, second}


class TestTransitions:
    async def test_claim_is_exclusive(self, store):
        item_id = await store.enqueue(upsert_payload(uuid.uuid4()), now=T0)

        first = await store.mark_processing(item_id, T0)
        second = await store.mark_processing(item_id, T0)

        assert first.status == OutboxStatus.PROCESSING
        assert second is None

    async def test_complete(self, store):
        item_id = await store.enqueue(upsert_payload(uuid.uuid4()), now=T0)
        await _claim(store, item_id)

        assert await store.mark_completed(item_id, T0 + timedelta(seconds=1)) is True

        item = await store.get(item_id)
        assert item.status == OutboxStatus.COMPLETED
        assert item.processed_at == T0 + timedelta(seconds=1)
        assert item.last_error is None

    async def test_transitions_require_processing(self, store):
        item_id = await store.enqueue(upsert_payload(uuid.uuid4()), now=T0)

        assert await store.mark_completed(item_id, T0) is False
        assert (
            await store.mark_failed_for_retry(
                item_id, attempts=1, next_attempt_at=T0, error="x", now=T0
            )
            is False
        )
        assert await store.mark_dead_letter(item_id, attempts=1, error="x", now=T0) is False
        assert (await store.get(item_id)).status == OutboxStatus.PENDING

    async def test_retry_schedules_next_attempt(self, store):
        item_id = await store.enqueue(upsert_payload(uuid.uuid4()), now=T0)
        await _claim(store, item_id)
        retry_at = T0 + timedelta(seconds=2)

        ok = await store.mark_failed_for_retry(
            item_id, attempts=1, next_attempt_at=retry_at, error="HTTP 503", now=T0
        )

        assert ok is True
        item = await store.get(item_id)
        assert item.status == OutboxStatus.FAILED
        assert item.attempts == 1
        assert item.last_error == "HTTP 503"
        assert await store.fetch_ready_batch(10, T0) == []
        assert [i.id for i in await store.fetch_ready_batch(10, retry_at)] == [item_id]

    async def test_dead_letter_caps_attempts(self, store):
        item_id = await store.enqueue(upsert_payload(uuid.uuid4()), max_attempts=3, now=T0)
        await _claim(store, item_id)

        assert await store.mark_dead_letter(item_id, attempts=7, error="gone", now=T0) is True

        item = await store.get(item_id)
        assert item.status == OutboxStatus.DEAD_LETTER
        assert item.attempts == 3


class TestOperatorViews:
    async def test_status_counts_zero_filled_and_scoped(self, store):
        ws_a, ws_b = uuid.uuid4(), uuid.uuid4()
        await store.enqueue(upsert_payload(ws_a), now=T0)
        done = await store.enqueue(cancel_payload(ws_a, uuid.uuid4()), now=T0)
        await store.enqueue(upsert_payload(ws_b), now=T0)
        await _claim(store, done)
        await store.mark_completed(done, T0)

        overall = await store.status_counts()
        scoped = await store.status_counts(ws_a)

        assert overall["PENDING"] == 2
        assert overall["DEAD_LETTER"] == 0
        assert scoped == {
            "PENDING": 1,
            "PROCESSING": 0,
            "COMPLETED": 1,
            "FAILED": 0,
            "DEAD_LETTER": 0,
        }

    async def test_dead_letters_listed_newest_first(self, store):
        ws = uuid.uuid4()
        older = await store.enqueue(upsert_payload(ws), now=T0)
        newer = await store.enqueue(upsert_payload(ws), now=T0)
        await _claim(store, older)
        await store.mark_dead_letter(older, attempts=1, error="first", now=T0)
        await _claim(store, newer)
        await store.mark_dead_letter(
            newer, attempts=1, error="second", now=T0 + timedelta(seconds=1)
        )

        rows = await store.list_dead_letters(ws)

        assert [row["id"] for row in rows] == [newer, older]
        assert rows[0]["last_error"] == "second"
        assert await store.list_dead_letters(uuid.uuid4()) == []

    async def test_requeue_resets_dead_letter(self, store):
        item_id = await store.enqueue(upsert_payload(uuid.uuid4()), now=T0)
        await _claim(store, item_id)
        await store.mark_dead_letter(item_id, attempts=5, error="bad", now=T0)
        replay_at = T0 + timedelta(hours=1)

        assert await store.requeue_dead_letter(item_id, replay_at) is True
        assert await store.requeue_dead_letter(item_id, replay_at) is False

        item = await store.get(item_id)
        assert item.status == OutboxStatus.PENDING
        assert item.attempts == 0
        assert item.last_error is None
        assert item.next_attempt_at == replay_at

    async def test_purge_removes_only_old_terminal_rows(self, store):
        ws = uuid.uuid4()
        completed = await store.enqueue(upsert_payload(ws), now=T0)
        dead = await store.enqueue(upsert_payload(ws), now=T0)
        pending = await store.enqueue(upsert_payload(ws), now=T0)
        recent = await store.enqueue(upsert_payload(ws), now=T0)
        await _claim(store, completed)
        await store.mark_completed(completed, T0)
        await _claim(store, dead)
        await store.mark_dead_letter(dead, attempts=1, error="x", now=T0)
        await _claim(store, recent)
        await store.mark_completed(recent, T0 + timedelta(days=10))

        deleted = await store.purge_terminal(T0 + timedelta(days=1))

        assert deleted == 2
        assert await store.get(completed) is None
        assert await store.get(dead) is None
        assert await store.get(pending) is not None
        assert await store.get(recent) is not None
