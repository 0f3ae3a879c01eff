"""The outbox sync worker.

Polls ``sync_outbox`` on a fixed interval and drives each ready item through
lock → claim → validate → handle → record outcome.  Any number of workers may
run against the same database; the per-item advisory lock guarantees that a
row is processed by at most one of them at a time, and the store holds back
later rows for a source until the earlier ones are finished, so two items never
race on the same binding.

Delivery is at-least-once.  If a worker dies after the calendar accepted a
create but before the binding row was written, the retried item creates a
second external event.

Lifecycle::

    worker = SyncWorker(store=..., lock=..., handlers=..., connections=...)
    await worker.start()   # initial drain, then poll every poll_interval_s
    worker.wake()          # poll now instead of waiting for the interval
    await worker.stop()    # finish the in-flight item(s), skip the rest
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from datetime import datetime, timedelta
from enum import StrEnum

import structlog

from calsync.config import WorkerConfig
from calsync.core.clock import Clock, SystemClock
from calsync.core.metrics import SyncMetrics
from calsync.core.telemetry import item_span
from calsync.sync.connections import ConnectionRepository
from calsync.sync.errors import PayloadValidationError, classify_error, sanitize_error_message
from calsync.sync.handlers import SyncHandlers
from calsync.sync.locks import DistributedLock
from calsync.sync.models import OutboxStatus, QueueItem, parse_payload
from calsync.sync.outbox import OutboxStore
from calsync.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ItemOutcome(StrEnum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    LOCKED = "locked"
    NOT_READY = "not_ready"
    STORE_ERROR = "store_error"


class SyncWorker:
    def __init__(
        self,
        *,
        store: OutboxStore,
        lock: DistributedLock,
        handlers: SyncHandlers,
        connections: ConnectionRepository,
        config: WorkerConfig | None = None,
        clock: Clock | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._lock = lock
        self._handlers = handlers
        self._connections = connections
        self._config = config or WorkerConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics or SyncMetrics(worker_name=self._config.name)
        if self._config.recover_processing_after_s <= 0:
            raise ValueError("recover_processing_after_s must be positive")
        self._policy = RetryPolicy(
            base_delay_s=self._config.base_backoff_s,
            max_delay_s=self._config.max_backoff_s,
        )

        self._running = False
        self._stop_requested = False
        self._loop_task: asyncio.Task | None = None
        self._wake_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(max(1, self._config.max_parallel))
        self._totals: Counter[str] = Counter()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def stats(self) -> dict[str, int]:
        """Cumulative per-outcome item counts since this worker was created."""
        return {outcome.value: self._totals[outcome.value] for outcome in ItemOutcome}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start polling. The first drain runs immediately."""
        if self._running:
            return
        self._running = True
        self._stop_requested = False
        self._loop_task = asyncio.create_task(
            self._run_loop(), name=f"calsync-worker-{self._config.name}"
        )
        logger.info(
            "Sync worker started: batch_size=%d, poll_interval_s=%s, max_attempts=%d, "
            "max_parallel=%d",
            self._config.batch_size,
            self._config.poll_interval_s,
            self._config.max_attempts,
            self._config.max_parallel,
        )

    async def stop(self) -> None:
        """Stop polling and wait for in-flight items to finish.

        Items already being processed run to completion (each provider call is
        bounded by its HTTP timeout).  Remaining items of the current batch
        are left untouched for the next poll.  The loop task is cancelled
        only if it outlives ``shutdown_timeout_s``.
        """
        if not self._running:
            return
        self._running = False
        self._stop_requested = True
        self._wake_event.set()

        task = self._loop_task
        self._loop_task = None
        if task is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(task), timeout=self._config.shutdown_timeout_s
                )
            except TimeoutError:
                logger.error(
                    "Sync worker did not stop within %.1fs; cancelling",
                    self._config.shutdown_timeout_s,
                )
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("Sync worker stopped: %s", self.stats)

    def wake(self) -> None:
        """Trigger an immediate poll."""
        self._wake_event.set()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.drain_once()
            except Exception:
                logger.exception("Outbox drain failed")

            if not self._running:
                break
            try:
                await asyncio.wait_for(
                    self._wake_event.wait(), timeout=self._config.poll_interval_s
                )
            except TimeoutError:
                pass
            self._wake_event.clear()

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def _stale_before(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self._config.recover_processing_after_s)

    async def drain_once(self) -> dict[str, int]:
        """Fetch one batch of ready items and process it. Returns per-outcome counts."""
        now = self._clock.now()
        items = await self._store.fetch_ready_batch(
            self._config.batch_size, now, stale_before=self._stale_before(now)
        )
        self._metrics.record_batch_size(len(items))
        if not items:
            return {}

        logger.debug("Fetched %d ready outbox item(s)", len(items))
        counts: Counter[str] = Counter()

        if self._config.max_parallel <= 1:
            for item in items:
                if self._stop_requested:
                    break
                counts[await self.process_item(item)] += 1
        else:
            outcomes = await asyncio.gather(*(self._process_bounded(item) for item in items))
            counts.update(outcome for outcome in outcomes if outcome is not None)

        return dict(counts)

    async def _process_bounded(self, item: QueueItem) -> ItemOutcome | None:
        async with self._semaphore:
            if self._stop_requested:
                return None
            return await self.process_item(item)

    async def process_item(self, item: QueueItem) -> ItemOutcome:
        """Process one item under its lock. Never raises past this boundary."""
        started = time.monotonic()
        with structlog.contextvars.bound_contextvars(
            outbox_id=str(item.id),
            workspace_id=str(item.workspace_id),
            operation=item.operation,
        ):
            try:
                async with self._lock.held(item.id) as acquired:
                    if not acquired:
                        self._metrics.lock_contended()
                        logger.debug("Outbox item %s is locked by another worker", item.id)
                        outcome = ItemOutcome.LOCKED
                    else:
                        with item_span(
                            item.id, item.operation, worker_name=self._config.name
                        ) as span:
                            outcome = await self._process_locked(item)
                            span.set_attribute("calsync.outcome", outcome.value)
            except Exception:
                logger.exception("Unexpected failure around outbox item %s", item.id)
                outcome = ItemOutcome.STORE_ERROR

        self._totals[outcome.value] += 1
        self._metrics.item_outcome(outcome.value, item.operation)
        if outcome not in (ItemOutcome.LOCKED, ItemOutcome.NOT_READY):
            self._metrics.record_item_duration(
                (time.monotonic() - started) * 1000, item.operation
            )
        return outcome

    async def _process_locked(self, item: QueueItem) -> ItemOutcome:
        now = self._clock.now()
        try:
            claimed = await self._store.mark_processing(
                item.id, now, stale_before=self._stale_before(now)
            )
        except Exception:
            logger.exception("Failed to claim outbox item %s", item.id)
            return ItemOutcome.STORE_ERROR

        if claimed is None:
            logger.debug("Outbox item %s is no longer ready; skipping", item.id)
            return ItemOutcome.NOT_READY
        if item.status is OutboxStatus.PROCESSING:
            logger.warning(
                "Recovering outbox item %s left in PROCESSING since %s",
                item.id,
                item.updated_at,
            )

        try:
            payload = parse_payload(claimed.operation, claimed.payload)
        except PayloadValidationError as exc:
            error = sanitize_error_message(str(exc))
            logger.error("Outbox item %s has an invalid payload: %s", claimed.id, error)
            return await self._record_dead_letter(claimed, claimed.attempts + 1, error)

        try:
            result = await self._handlers.handle(payload)
        except Exception as exc:
            return await self._handle_failure(claimed, exc)

        try:
            await self._store.mark_completed(claimed.id, self._clock.now())
        except Exception:
            logger.exception("Failed to mark outbox item %s completed", claimed.id)
            return ItemOutcome.STORE_ERROR

        logger.info(
            "Outbox item %s completed (%s)",
            claimed.id,
            result.action,
            extra={"external_event_id": result.external_event_id, **result.details},
        )
        return ItemOutcome.COMPLETED

    async def _handle_failure(self, item: QueueItem, exc: Exception) -> ItemOutcome:
        classification = classify_error(exc)
        decision = self._policy.decide(
            attempts=item.attempts,
            max_attempts=item.max_attempts,
            classification=classification,
            now=self._clock.now(),
        )

        if classification.invalidates_connection:
            try:
                if await self._connections.mark_invalid(item.workspace_id, classification.message):
                    self._metrics.connection_invalidated()
            except Exception:
                logger.exception(
                    "Failed to mark connection invalid for workspace %s", item.workspace_id
                )

        if decision.dead_letter or decision.next_attempt_at is None:
            logger.error(
                "Outbox item %s dead-lettered after %d attempt(s) [%s]: %s",
                item.id,
                decision.attempts,
                classification.error_class.value,
                decision.error,
            )
            return await self._record_dead_letter(item, decision.attempts, decision.error)

        logger.warning(
            "Outbox item %s failed [%s], retry %d/%d at %s: %s",
            item.id,
            classification.error_class.value,
            decision.attempts,
            item.max_attempts,
            decision.next_attempt_at.isoformat(),
            decision.error,
        )
        try:
            await self._store.mark_failed_for_retry(
                item.id,
                attempts=decision.attempts,
                next_attempt_at=decision.next_attempt_at,
                error=decision.error,
                now=self._clock.now(),
            )
        except Exception:
            logger.exception("Failed to schedule retry for outbox item %s", item.id)
            return ItemOutcome.STORE_ERROR
        return ItemOutcome.RETRY_SCHEDULED

    async def _record_dead_letter(self, item: QueueItem, attempts: int, error: str) -> ItemOutcome:
        try:
            await self._store.mark_dead_letter(
                item.id,
                attempts=min(attempts, item.max_attempts),
                error=error,
                now=self._clock.now(),
            )
        except Exception:
            logger.exception("Failed to dead-letter outbox item %s", item.id)
            return ItemOutcome.STORE_ERROR
        return ItemOutcome.DEAD_LETTERED
