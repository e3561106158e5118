"""Usage ledger sync: batches admitted usage into the durable monthly ledger.

The admission path calls ``record()`` (non-blocking, never raises) and moves
on. A background asyncio task flushes every ``flush_interval_seconds``:

1. Drain the bounded queue and aggregate deltas per (tenant, resource, month,
   admitted plan) into ``PendingBatch`` objects, each with a fresh ``batch_id``.
2. Apply due batches through the repository in a worker thread. The batch id is
   the repository's idempotency key, so a retry after an ambiguous failure
   never double counts.
3. Compare the returned monthly total against the limit of the plan the usage
   was admitted under (the tenant's resolved plan when none was recorded); the
   repository's compare-and-set on the threshold flag picks the single caller
   that fires the overage trigger.

Failed batches are retried with exponential backoff; after ``max_retries``
attempts they are dropped as lost and a ``LEDGER_DELTAS_LOST`` alert is raised.
When the queue is full the oldest delta is dropped with a warning.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from quota_gate.config import LEDGER_SYNC_SETTINGS
from quota_gate.core.policy import PolicyTable
from quota_gate.errors import LedgerFlushFailure
from quota_gate.integrations.base import LedgerUpdate, PlanResolver, UsageLedger
from quota_gate.models.db.enums import AlertType, ResourceType
from quota_gate.services.alerting import AlertService
from quota_gate.services.overage import OverageTrigger
from quota_gate.utils import get_logger, log_business_event, log_performance
from quota_gate.utils.backoff import compute_backoff_seconds
from quota_gate.utils.time import billing_month

logger = get_logger(__name__)


@dataclass(frozen=True)
class UsageDelta:
    tenant_id: str
    resource_type: ResourceType
    amount: int
    timestamp: float
    plan: Optional[str] = None


@dataclass
class PendingBatch:
    batch_id: str
    tenant_id: str
    resource_type: ResourceType
    billing_month: str
    amount: int
    plan: Optional[str] = None
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None


class UsageLedgerSync:
    def __init__(
        self,
        repository: UsageLedger,
        plan_resolver: PlanResolver,
        policies: PolicyTable,
        overage_trigger: Optional[OverageTrigger],
        *,
        alerts: Optional[AlertService] = None,
        clock: Callable[[], float] = time.time,
        flush_interval_seconds: Optional[float] = None,
        max_queue_size: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self._repository = repository
        self._plan_resolver = plan_resolver
        self._policies = policies
        self._overage_trigger = overage_trigger
        self._alerts = alerts
        self._clock = clock
        self.flush_interval_seconds = float(
            flush_interval_seconds if flush_interval_seconds is not None else LEDGER_SYNC_SETTINGS["flush_interval_seconds"]
        )
        self.max_queue_size = int(max_queue_size if max_queue_size is not None else LEDGER_SYNC_SETTINGS["max_queue_size"])
        self.max_retries = int(max_retries if max_retries is not None else LEDGER_SYNC_SETTINGS["max_retries"])
        self._warn_depth = int(LEDGER_SYNC_SETTINGS.get("warn_depth", self.max_queue_size))

        self._queue: deque[UsageDelta] = deque()
        self._pending: list[PendingBatch] = []
        self._task: Optional[asyncio.Task] = None
        self._flush_lock: Optional[asyncio.Lock] = None
        self._depth_warned = False

        self.dropped_deltas = 0
        self.lost_deltas = 0
        self.applied_batches = 0

    # ------------------------------------------------------------------ #
    # Producer side (admission path)
    # ------------------------------------------------------------------ #
    def record(self, delta: UsageDelta) -> None:
        if len(self._queue) >= self.max_queue_size:
            dropped = self._queue.popleft()
            self.dropped_deltas += dropped.amount
            logger.warning(
                "Ledger queue full, dropping oldest usage delta",
                tenant_id=dropped.tenant_id,
                resource_type=dropped.resource_type.value,
                max_queue_size=self.max_queue_size,
                dropped_total=self.dropped_deltas,
            )
        self._queue.append(delta)

        depth = len(self._queue)
        if depth >= self._warn_depth and not self._depth_warned:
            self._depth_warned = True
            logger.warning("Ledger queue depth high", queue_depth=depth, warn_depth=self._warn_depth)
        elif depth < self._warn_depth:
            self._depth_warned = False

    def record_usage(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        amount: int = 1,
        *,
        timestamp: Optional[float] = None,
        plan: Optional[str] = None,
    ) -> None:
        self.record(UsageDelta(
            tenant_id=tenant_id,
            resource_type=resource_type,
            amount=amount,
            timestamp=self._clock() if timestamp is None else timestamp,
            plan=plan,
        ))

    # ------------------------------------------------------------------ #
    # Background task
    # ------------------------------------------------------------------ #
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:  # pragma: no cover
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="usage-ledger-sync")
        logger.info("Usage ledger sync started", flush_interval_seconds=self.flush_interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush(force=True)
        logger.info(
            "Usage ledger sync stopped",
            pending_batches=len(self._pending),
            queue_depth=len(self._queue),
        )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_seconds)
            try:
                await self.flush()
            except Exception as e:  # pragma: no cover
                logger.error("Ledger sync loop error", error=str(e), exc_info=True)

    # ------------------------------------------------------------------ #
    # Flushing
    # ------------------------------------------------------------------ #
    def _drain(self) -> None:
        aggregated: dict[tuple[str, ResourceType, str, Optional[str]], int] = {}
        while self._queue:
            delta = self._queue.popleft()
            key = (delta.tenant_id, delta.resource_type, billing_month(delta.timestamp), delta.plan)
            aggregated[key] = aggregated.get(key, 0) + delta.amount
        for (tenant_id, resource_type, month, plan), amount in aggregated.items():
            if amount <= 0:
                continue
            self._pending.append(PendingBatch(
                batch_id=uuid.uuid4().hex,
                tenant_id=tenant_id,
                resource_type=resource_type,
                billing_month=month,
                amount=amount,
                plan=plan,
            ))
        self._depth_warned = False

    async def flush(self, *, force: bool = False) -> int:
        """Apply queued usage; returns the number of batches applied.

        ``force`` ignores retry backoff (used on shutdown).
        """
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()
        async with self._flush_lock:
            start_time = time.time()
            self._drain()
            now = self._clock()
            due = [b for b in self._pending if force or b.next_attempt_at <= now]
            applied = 0
            for batch in due:
                if await self._apply(batch):
                    applied += 1
            if due:
                log_performance(
                    operation="ledger_flush",
                    duration_ms=(time.time() - start_time) * 1000,
                    additional_data={"batches_due": len(due), "batches_applied": applied},
                )
            return applied

    async def _apply(self, batch: PendingBatch) -> bool:
        batch.attempts += 1
        try:
            update: LedgerUpdate = await asyncio.to_thread(
                self._repository.increment_monthly_usage,
                batch.tenant_id,
                batch.resource_type,
                batch.amount,
                delta_id=batch.batch_id,
                billing_month=batch.billing_month,
            )
        except Exception as e:
            failure = e if isinstance(e, LedgerFlushFailure) else LedgerFlushFailure(
                str(e), batch_id=batch.batch_id, attempts=batch.attempts
            )
            await self._on_failure(batch, failure)
            return False

        self._pending.remove(batch)
        self.applied_batches += 1
        if not update.applied:
            logger.info("Ledger batch was already applied", batch_id=batch.batch_id, tenant_id=batch.tenant_id)
        await self._check_overage(batch, update.total)
        return True

    async def _on_failure(self, batch: PendingBatch, failure: LedgerFlushFailure) -> None:
        batch.last_error = str(failure)
        if batch.attempts >= self.max_retries:
            self._pending.remove(batch)
            self.lost_deltas += batch.amount
            logger.error(
                "Ledger batch lost after max retries",
                batch_id=batch.batch_id,
                tenant_id=batch.tenant_id,
                resource_type=batch.resource_type.value,
                billing_month=batch.billing_month,
                amount=batch.amount,
                attempts=batch.attempts,
                error=batch.last_error,
            )
            log_business_event(
                "ledger_deltas_lost",
                {
                    "batch_id": batch.batch_id,
                    "resource_type": batch.resource_type.value,
                    "billing_month": batch.billing_month,
                    "amount": batch.amount,
                },
                tenant_id=batch.tenant_id,
            )
            if self._alerts is not None:
                await asyncio.to_thread(
                    self._alerts.raise_alert,
                    AlertType.LEDGER_DELTAS_LOST,
                    title="Usage deltas lost",
                    message=f"{batch.amount} {batch.resource_type.value} could not be written to the monthly ledger.",
                    tenant_id=batch.tenant_id,
                    details={
                        "batch_id": batch.batch_id,
                        "billing_month": batch.billing_month,
                        "amount": batch.amount,
                        "attempts": batch.attempts,
                        "error": batch.last_error,
                    },
                )
            return

        delay = compute_backoff_seconds(batch.attempts)
        batch.next_attempt_at = self._clock() + delay
        logger.warning(
            "Ledger flush failed, retry scheduled",
            batch_id=batch.batch_id,
            tenant_id=batch.tenant_id,
            attempts=batch.attempts,
            retry_in_seconds=round(delay, 2),
            error=batch.last_error,
        )

    async def _check_overage(self, batch: PendingBatch, total: int) -> None:
        try:
            # The plan the usage was admitted under wins over the tenant lookup
            plan = batch.plan or self._plan_resolver.get_plan_for_tenant(batch.tenant_id)
            policy = self._policies.resolve(plan)
            limit = policy.monthly_limit(batch.resource_type)
            if limit is None or total <= limit:
                return
            crossed = await asyncio.to_thread(
                self._repository.mark_threshold_crossed,
                batch.tenant_id,
                batch.billing_month,
                batch.resource_type,
            )
            if not crossed or self._overage_trigger is None:
                return
            logger.info(
                "Monthly limit crossed",
                tenant_id=batch.tenant_id,
                resource_type=batch.resource_type.value,
                billing_month=batch.billing_month,
                total=total,
                limit=limit,
            )
            await asyncio.to_thread(
                self._overage_trigger.on_threshold_crossed,
                batch.tenant_id,
                batch.resource_type,
                total - limit,
                plan=policy.plan,
                billing_month=batch.billing_month,
            )
        except Exception as e:
            logger.error(
                "Overage check failed",
                tenant_id=batch.tenant_id,
                resource_type=batch.resource_type.value,
                error=str(e),
                exc_info=True,
            )

    def snapshot(self) -> dict[str, int | bool]:
        return {
            "running": self.running,
            "queue_depth": len(self._queue),
            "max_queue_size": self.max_queue_size,
            "pending_batches": len(self._pending),
            "applied_batches": self.applied_batches,
            "dropped_deltas": self.dropped_deltas,
            "lost_deltas": self.lost_deltas,
        }


__all__ = ["UsageDelta", "PendingBatch", "UsageLedgerSync"]
