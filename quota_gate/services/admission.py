"""Admission controller: per-tenant allow/deny on the request path.

For each operation:

1. Resolve the plan's ``QuotaPolicy`` (unknown plans fall back to the most
   restrictive tier).
2. Compute the minute/hour/day bucket keys for ``now``.
3. Cooldown: if the tenant's last admitted operation is more recent than the
   plan's cooldown, deny with ``COOLDOWN`` without incrementing anything.
4. Read the three counters in one batch and check
   ``minute + 1 <= per_minute + burst``, ``hour + 1 <= per_hour``,
   ``day + 1 <= per_day``. The longest failing window wins (DAY > HOUR >
   MINUTE) and ``retry_after`` is the time until that window resets.
5. On pass, increment the three counters in one batch, stamp the cooldown
   marker and queue a usage delta for the monthly ledger.

The controller holds no lock across awaits. Check-then-increment is not one
atomic step across keys, so concurrent requests for the same tenant can
over-admit by at most the number of in-flight requests.

Counter store failures fail closed: ``ServiceUnavailable`` is raised, never an
allow. Consecutive failures open a circuit so later requests fail fast.
"""
from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Optional

from quota_gate.config import COUNTER_STORE_SETTINGS
from quota_gate.core.policy import PolicyTable, QuotaPolicy
from quota_gate.core.window_clock import (
    ADMISSION_WINDOWS,
    bucket_key,
    cooldown_key,
    counter_ttl,
    next_reset_time,
    seconds_until_reset,
)
from quota_gate.errors import ServiceUnavailable, StoreUnavailable
from quota_gate.models.db.enums import AlertType, DenialReason, Granularity, ResourceType
from quota_gate.models.schemas.admission import (
    AdmissionResult,
    CurrentUsage,
    PolicyLimits,
    ResetTimes,
    UsageSnapshot,
    WindowCounts,
)
from quota_gate.services.alerting import AlertService
from quota_gate.services.ledger_sync import UsageLedgerSync
from quota_gate.store.base import CounterStore
from quota_gate.utils import get_logger
from quota_gate.utils.circuit_breaker import CircuitBreaker
from quota_gate.utils.time import from_epoch

logger = get_logger(__name__)

STORE_CIRCUIT = "counter_store"

# Checked longest window first so the most durable denial is reported
_DENIAL_ORDER: tuple[tuple[Granularity, DenialReason], ...] = (
    (Granularity.DAY, DenialReason.DAY_LIMIT),
    (Granularity.HOUR, DenialReason.HOUR_LIMIT),
    (Granularity.MINUTE, DenialReason.MINUTE_LIMIT),
)


def _window_limits(policy: QuotaPolicy) -> dict[Granularity, int]:
    """Effective per-window limits (burst applies to the minute window only)."""
    return {
        Granularity.MINUTE: policy.effective_minute_limit,
        Granularity.HOUR: policy.events_per_hour,
        Granularity.DAY: policy.events_per_day,
    }


def _base_limits(policy: QuotaPolicy) -> dict[Granularity, int]:
    return {
        Granularity.MINUTE: policy.events_per_minute,
        Granularity.HOUR: policy.events_per_hour,
        Granularity.DAY: policy.events_per_day,
    }


def _counts(counts: dict[Granularity, int]) -> WindowCounts:
    return WindowCounts(
        minute=counts[Granularity.MINUTE],
        hour=counts[Granularity.HOUR],
        day=counts[Granularity.DAY],
    )


class AdmissionController:
    def __init__(
        self,
        store: CounterStore,
        policies: PolicyTable,
        *,
        clock: Callable[[], float] = time.time,
        ledger_sync: Optional[UsageLedgerSync] = None,
        breaker: Optional[CircuitBreaker] = None,
        alerts: Optional[AlertService] = None,
        key_prefix: Optional[str] = None,
        grace_seconds: Optional[int] = None,
    ):
        self.store = store
        self.policies = policies
        self._clock = clock
        self._ledger_sync = ledger_sync
        self._breaker = breaker if breaker is not None else CircuitBreaker(clock=clock)
        self._alerts = alerts
        self.key_prefix = str(key_prefix or COUNTER_STORE_SETTINGS.get("key_prefix", "quota"))
        self.grace_seconds = int(
            grace_seconds if grace_seconds is not None else COUNTER_STORE_SETTINGS.get("grace_seconds", 60)
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def now(self) -> float:
        return self._clock()

    def _keys(self, tenant_id: str, now: float) -> dict[Granularity, str]:
        return {g: bucket_key(tenant_id, g, now, self.key_prefix) for g in ADMISSION_WINDOWS}

    def _guard_store(self, tenant_id: str) -> None:
        allowed, reason = self._breaker.allow_call(STORE_CIRCUIT)
        if not allowed:
            logger.warning("Counter store circuit open, failing closed", tenant_id=tenant_id, reason=reason)
            raise ServiceUnavailable(f"Counter store unavailable ({reason})")

    async def _store_failed(self, tenant_id: str, error: StoreUnavailable) -> None:
        tripped = self._breaker.record_failure(STORE_CIRCUIT)
        logger.error(
            "Counter store call failed, failing closed",
            tenant_id=tenant_id,
            backend=self.store.backend_name,
            error=str(error),
        )
        if not tripped:
            return
        logger.error("Counter store circuit opened", backend=self.store.backend_name)
        if self._alerts is not None:
            await asyncio.to_thread(
                self._alerts.raise_alert,
                AlertType.COUNTER_STORE_DEGRADED,
                title="Counter store degraded",
                message="Counter store failures opened the circuit; admission is failing closed.",
                details={"backend": self.store.backend_name, "error": str(error)},
            )

    async def _read_counts(self, keys: dict[Granularity, str]) -> dict[Granularity, int]:
        values = await self.store.get_multi(list(keys.values()))
        return {g: int(values.get(key, 0)) for g, key in keys.items()}

    def _result(
        self,
        policy: QuotaPolicy,
        counts: dict[Granularity, int],
        now: float,
        *,
        allowed: bool,
        reason: Optional[DenialReason] = None,
        retry_after: Optional[int] = None,
    ) -> AdmissionResult:
        minute_limit = policy.effective_minute_limit
        return AdmissionResult(
            allowed=allowed,
            plan=policy.plan,
            reason=reason,
            retry_after_seconds=retry_after,
            usage_snapshot=_counts(counts),
            limit=minute_limit,
            remaining=max(0, minute_limit - counts[Granularity.MINUTE]),
            reset_at=int(next_reset_time(Granularity.MINUTE, now)),
        )

    async def check_and_admit(
        self,
        tenant_id: str,
        plan: Optional[str],
        *,
        resource_type: ResourceType = ResourceType.EVENTS,
    ) -> AdmissionResult:
        policy = self.policies.resolve(plan)
        now = self._clock()
        keys = self._keys(tenant_id, now)
        marker_key = cooldown_key(tenant_id, self.key_prefix)

        self._guard_store(tenant_id)
        try:
            if policy.cooldown_period_seconds > 0:
                last = await self.store.get_timestamp(marker_key)
                if last is not None and now - last < policy.cooldown_period_seconds:
                    retry_after = max(1, math.ceil(policy.cooldown_period_seconds - (now - last)))
                    counts = await self._read_counts(keys)
                    self._breaker.record_success(STORE_CIRCUIT)
                    logger.info(
                        "Admission denied",
                        tenant_id=tenant_id,
                        plan=policy.plan,
                        reason=DenialReason.COOLDOWN.value,
                        retry_after_seconds=retry_after,
                    )
                    return self._result(policy, counts, now, allowed=False, reason=DenialReason.COOLDOWN, retry_after=retry_after)

            counts = await self._read_counts(keys)
            limits = _window_limits(policy)
            for granularity, reason in _DENIAL_ORDER:
                if counts[granularity] + 1 > limits[granularity]:
                    retry_after = seconds_until_reset(granularity, now)
                    self._breaker.record_success(STORE_CIRCUIT)
                    logger.info(
                        "Admission denied",
                        tenant_id=tenant_id,
                        plan=policy.plan,
                        reason=reason.value,
                        count=counts[granularity],
                        limit=limits[granularity],
                        retry_after_seconds=retry_after,
                    )
                    return self._result(policy, counts, now, allowed=False, reason=reason, retry_after=retry_after)

            new_values = await self.store.increment_many(
                [(keys[g], counter_ttl(g, self.grace_seconds)) for g in ADMISSION_WINDOWS]
            )
            await self.store.set_timestamp(
                marker_key, now, policy.cooldown_period_seconds + self.grace_seconds
            )
        except StoreUnavailable as e:
            await self._store_failed(tenant_id, e)
            raise ServiceUnavailable("Counter store unavailable; admission refused") from e
        except BaseException:
            # Cancelled or unexpected error: no verdict on the store
            self._breaker.release_probe(STORE_CIRCUIT)
            raise

        self._breaker.record_success(STORE_CIRCUIT)
        counts = dict(zip(ADMISSION_WINDOWS, (int(v) for v in new_values)))

        if self._ledger_sync is not None:
            self._ledger_sync.record_usage(tenant_id, resource_type, 1, timestamp=now, plan=policy.plan)

        logger.debug(
            "Admission allowed",
            tenant_id=tenant_id,
            plan=policy.plan,
            resource_type=resource_type.value,
            minute=counts[Granularity.MINUTE],
            hour=counts[Granularity.HOUR],
            day=counts[Granularity.DAY],
        )
        return self._result(policy, counts, now, allowed=True)

    async def get_usage_snapshot(self, tenant_id: str, plan: Optional[str]) -> UsageSnapshot:
        policy = self.policies.resolve(plan)
        now = self._clock()
        keys = self._keys(tenant_id, now)

        self._guard_store(tenant_id)
        try:
            counts = await self._read_counts(keys)
            last = await self.store.get_timestamp(cooldown_key(tenant_id, self.key_prefix))
        except StoreUnavailable as e:
            await self._store_failed(tenant_id, e)
            raise ServiceUnavailable("Counter store unavailable; usage snapshot refused") from e
        except BaseException:
            self._breaker.release_probe(STORE_CIRCUIT)
            raise
        self._breaker.record_success(STORE_CIRCUIT)

        cooldown_remaining = 0
        if last is not None and policy.cooldown_period_seconds > 0:
            cooldown_remaining = max(0, math.ceil(policy.cooldown_period_seconds - (now - last)))

        effective = _window_limits(policy)
        base = _base_limits(policy)
        remaining = {g: max(0, effective[g] - counts[g]) for g in ADMISSION_WINDOWS}
        utilization = {g: round(counts[g] / base[g] * 100) if base[g] > 0 else 0 for g in ADMISSION_WINDOWS}
        can_proceed = cooldown_remaining == 0 and all(counts[g] + 1 <= effective[g] for g in ADMISSION_WINDOWS)

        return UsageSnapshot(
            tenant_id=tenant_id,
            plan=policy.plan,
            limits=PolicyLimits(
                events_per_minute=policy.events_per_minute,
                events_per_hour=policy.events_per_hour,
                events_per_day=policy.events_per_day,
                cooldown_period_seconds=policy.cooldown_period_seconds,
                burst_allowance=policy.burst_allowance,
            ),
            current_usage=CurrentUsage(
                minute=counts[Granularity.MINUTE],
                hour=counts[Granularity.HOUR],
                day=counts[Granularity.DAY],
                cooldown_remaining=cooldown_remaining,
            ),
            remaining=_counts(remaining),
            utilization_percent=_counts(utilization),
            next_reset_times=ResetTimes(
                minute=from_epoch(next_reset_time(Granularity.MINUTE, now)),
                hour=from_epoch(next_reset_time(Granularity.HOUR, now)),
                day=from_epoch(next_reset_time(Granularity.DAY, now)),
            ),
            can_proceed=can_proceed,
        )


__all__ = ["AdmissionController", "STORE_CIRCUIT"]
