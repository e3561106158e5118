"""Quota policy table.

Built once at startup from ``quota_gate.config`` and read-only afterwards:
each plan maps to a frozen ``QuotaPolicy`` and the mapping itself is a
``MappingProxyType``. Recognized plans are the ``PlanTier`` values; anything
else resolves to the most restrictive tier (``DEFAULT_PLAN``) with a warning.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from quota_gate import config
from quota_gate.errors import UnknownPlan
from quota_gate.models.db.enums import PlanTier, ResourceType
from quota_gate.utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class QuotaPolicy:
    plan: str
    events_per_minute: int
    events_per_hour: int
    events_per_day: int
    cooldown_period_seconds: int = 0
    burst_allowance: int = 0
    monthly_limits: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    overage_rates_cents: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        for name in ("events_per_minute", "events_per_hour", "events_per_day", "cooldown_period_seconds", "burst_allowance"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0 for plan '{self.plan}'")

    @property
    def effective_minute_limit(self) -> int:
        return self.events_per_minute + self.burst_allowance

    def monthly_limit(self, resource_type: ResourceType) -> Optional[int]:
        """Contractual monthly cap for a resource; None means uncapped."""
        return self.monthly_limits.get(resource_type.value)

    def overage_rate(self, resource_type: ResourceType) -> int:
        return int(self.overage_rates_cents.get(resource_type.value, 0))


class PolicyTable:
    """Immutable plan -> QuotaPolicy lookup with a documented default."""

    def __init__(self, policies: Mapping[str, QuotaPolicy], *, default_plan: str):
        if default_plan not in policies:
            raise ValueError(f"Default plan '{default_plan}' missing from policy table")
        self._policies: Mapping[str, QuotaPolicy] = MappingProxyType(dict(policies))
        self._default_plan = default_plan

    @property
    def default_plan(self) -> str:
        return self._default_plan

    @property
    def plans(self) -> tuple[str, ...]:
        return tuple(self._policies)

    def __contains__(self, plan: object) -> bool:
        return plan in self._policies

    def get(self, plan: Optional[str]) -> QuotaPolicy:
        """Strict lookup. Raises UnknownPlan."""
        key = plan.value if isinstance(plan, PlanTier) else plan
        try:
            return self._policies[key]  # type: ignore[index]
        except KeyError:
            raise UnknownPlan(plan) from None

    def resolve(self, plan: Optional[str]) -> QuotaPolicy:
        """Lenient lookup used on the admission path; never raises."""
        try:
            return self.get(plan)
        except UnknownPlan:
            logger.warning(
                "Unknown plan, falling back to most restrictive tier",
                plan=plan,
                fallback_plan=self._default_plan,
            )
            return self._policies[self._default_plan]


def _most_restrictive_plan(policies: Mapping[str, QuotaPolicy]) -> str:
    """DEFAULT_PLAN when configured, else the first PLAN_ORDER tier present."""
    if config.DEFAULT_PLAN in policies:
        return config.DEFAULT_PLAN
    for plan in config.PLAN_ORDER:
        if plan in policies:
            return plan
    raise ValueError("Policy table has no known plan tier to fall back to")


def build_policy_table(
    quota_policies: Optional[Mapping[str, Mapping[str, int]]] = None,
    monthly_limits: Optional[Mapping[str, Mapping[str, int]]] = None,
    overage_rates: Optional[Mapping[str, Mapping[str, int]]] = None,
    *,
    default_plan: Optional[str] = None,
) -> PolicyTable:
    """Freeze the configured dicts into a PolicyTable (call once at startup)."""
    quota_policies = quota_policies if quota_policies is not None else config.QUOTA_POLICIES
    monthly_limits = monthly_limits if monthly_limits is not None else config.MONTHLY_LIMITS
    overage_rates = overage_rates if overage_rates is not None else config.OVERAGE_RATES

    policies: dict[str, QuotaPolicy] = {}
    for plan, limits in quota_policies.items():
        policies[plan] = QuotaPolicy(
            plan=plan,
            events_per_minute=int(limits["events_per_minute"]),
            events_per_hour=int(limits["events_per_hour"]),
            events_per_day=int(limits["events_per_day"]),
            cooldown_period_seconds=int(limits.get("cooldown_period_seconds", 0)),
            burst_allowance=int(limits.get("burst_allowance", 0)),
            monthly_limits=MappingProxyType(dict(monthly_limits.get(plan, {}))),
            overage_rates_cents=MappingProxyType(dict(overage_rates.get(plan, {}))),
        )
    default_plan = default_plan or _most_restrictive_plan(policies)
    logger.info("Quota policy table built", plans=list(policies), default_plan=default_plan)
    return PolicyTable(policies, default_plan=default_plan)


__all__ = ["QuotaPolicy", "PolicyTable", "build_policy_table"]
