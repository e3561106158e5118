"""Monthly usage reporting: per-resource headroom and usage recommendations.

Read-only views over the durable ledger for dashboards and pre-flight checks.
Admission never consults them, and their counts trail live admissions by up
to one ledger flush interval.

Percentages are ``used / limit`` rounded half up; a resource with no monthly
cap always reports 0% and ``None`` for limit and remaining. A check that would
land above ``HIGH_USAGE_PERCENT`` logs a warning.
"""
from __future__ import annotations

import math
import time
from typing import Callable, Dict, List, Optional

from quota_gate.core.policy import PolicyTable, QuotaPolicy
from quota_gate.integrations.base import MonthlyUsage, PlanResolver, UsageLedger
from quota_gate.models.db.enums import ResourceType
from quota_gate.models.schemas.ledger import MonthlyLimitCheck, MonthlyUsageReport, ResourceUsage
from quota_gate.utils import get_logger
from quota_gate.utils.time import billing_month as month_of

logger = get_logger(__name__)

HIGH_USAGE_PERCENT = 90

# (threshold, template) checked highest first; usage strictly above the threshold matches
RECOMMENDATION_TIERS: tuple[tuple[int, str], ...] = (
    (95, "Critical: {resource} usage at {pct}%. Immediate plan upgrade required."),
    (90, "High {resource} usage at {pct}%. Consider upgrading your plan soon."),
    (75, "Approaching {resource} limit at {pct}%. Monitor usage closely."),
    (50, "Moderate {resource} usage at {pct}%. On track for normal usage."),
)
UPGRADE_HINT_PERCENT = 60
UPGRADE_HINT_MIN_RESOURCES = 3
ALL_CLEAR = "Usage is within normal limits across all resources."


def usage_percentage(used: int, limit: Optional[int]) -> int:
    if limit is None:
        return 0
    if limit <= 0:
        return 100 if used > 0 else 0
    return math.floor(used * 100 / limit + 0.5)


def build_recommendations(resources: Dict[str, ResourceUsage]) -> List[str]:
    recommendations: List[str] = []
    for resource, usage in resources.items():
        for threshold, template in RECOMMENDATION_TIERS:
            if usage.percentage > threshold:
                recommendations.append(template.format(resource=resource, pct=usage.percentage))
                break

    heavy = [resource for resource, usage in resources.items() if usage.percentage > UPGRADE_HINT_PERCENT]
    if len(heavy) >= UPGRADE_HINT_MIN_RESOURCES:
        recommendations.append(f"Consider a higher plan for better value across {', '.join(heavy)}.")

    if not recommendations:
        recommendations.append(ALL_CLEAR)
    return recommendations


class MonthlyUsageReporter:
    def __init__(
        self,
        ledger: UsageLedger,
        plan_resolver: PlanResolver,
        policies: PolicyTable,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._ledger = ledger
        self._plan_resolver = plan_resolver
        self._policies = policies
        self._clock = clock

    def _policy(self, tenant_id: str, plan: Optional[str]) -> QuotaPolicy:
        return self._policies.resolve(plan or self._plan_resolver.get_plan_for_tenant(tenant_id))

    def _usage(self, tenant_id: str, month: str) -> Optional[MonthlyUsage]:
        return self._ledger.get_monthly_usage(tenant_id, month)

    def check_monthly_limits(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        amount: int = 1,
        *,
        plan: Optional[str] = None,
        billing_month: Optional[str] = None,
    ) -> MonthlyLimitCheck:
        """Would ``amount`` more units stay within the monthly cap?"""
        month = billing_month or month_of(self._clock())
        policy = self._policy(tenant_id, plan)
        usage = self._usage(tenant_id, month)
        used = usage.counts.get(resource_type.value, 0) if usage else 0
        limit = policy.monthly_limit(resource_type)

        projected = used + amount
        overage = projected - limit if limit is not None and projected > limit else None
        result = MonthlyLimitCheck(
            tenant_id=tenant_id,
            plan=policy.plan,
            billing_month=month,
            resource_type=resource_type,
            allowed=limit is None or projected <= limit,
            current_usage=used,
            limit=limit,
            remaining=None if limit is None else max(0, limit - used),
            percentage=usage_percentage(projected, limit),
            overage=overage,
        )

        if result.percentage > HIGH_USAGE_PERCENT:
            logger.warning(
                "High monthly usage",
                tenant_id=tenant_id,
                plan=policy.plan,
                resource_type=resource_type.value,
                percentage=result.percentage,
                remaining=result.remaining,
            )
        logger.debug(
            "Monthly limit check",
            tenant_id=tenant_id,
            resource_type=resource_type.value,
            allowed=result.allowed,
            percentage=result.percentage,
        )
        return result

    def monthly_report(
        self,
        tenant_id: str,
        *,
        plan: Optional[str] = None,
        billing_month: Optional[str] = None,
    ) -> MonthlyUsageReport:
        month = billing_month or month_of(self._clock())
        policy = self._policy(tenant_id, plan)
        usage = self._usage(tenant_id, month)

        resources: Dict[str, ResourceUsage] = {}
        for resource_type in ResourceType:
            used = usage.counts.get(resource_type.value, 0) if usage else 0
            limit = policy.monthly_limit(resource_type)
            resources[resource_type.value] = ResourceUsage(
                used=used,
                limit=limit,
                remaining=None if limit is None else max(0, limit - used),
                percentage=usage_percentage(used, limit),
            )

        return MonthlyUsageReport(
            tenant_id=tenant_id,
            billing_month=month,
            plan=policy.plan,
            resources=resources,
            recommendations=build_recommendations(resources),
        )


__all__ = [
    "MonthlyUsageReporter",
    "build_recommendations",
    "usage_percentage",
    "HIGH_USAGE_PERCENT",
]
