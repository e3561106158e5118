"""Overage trigger: turns a monthly-limit crossing into a billing charge.

Callers guarantee at-most-once invocation per crossing (the ledger sync flips
the threshold flag with a compare-and-set before calling in). Billing failures
are logged and alerted; the flag stays set so the charge is followed up
manually rather than retried into a duplicate.
"""
from __future__ import annotations

from typing import Optional

from quota_gate.core.policy import PolicyTable
from quota_gate.integrations.base import BillingClient, ChargeResult, PlanResolver
from quota_gate.models.db.enums import AlertType, ResourceType
from quota_gate.services.alerting import AlertService
from quota_gate.utils import get_logger, log_business_event

logger = get_logger(__name__)


class OverageTrigger:
    def __init__(
        self,
        billing: BillingClient,
        policies: PolicyTable,
        plan_resolver: PlanResolver,
        *,
        alerts: Optional[AlertService] = None,
    ):
        self._billing = billing
        self._policies = policies
        self._plan_resolver = plan_resolver
        self._alerts = alerts

    def on_threshold_crossed(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        overage_amount: int,
        *,
        plan: Optional[str] = None,
        billing_month: Optional[str] = None,
    ) -> Optional[ChargeResult]:
        policy = self._policies.resolve(plan or self._plan_resolver.get_plan_for_tenant(tenant_id))
        rate = policy.overage_rate(resource_type)
        log_business_event(
            "overage_threshold_crossed",
            {
                "plan": policy.plan,
                "resource_type": resource_type.value,
                "overage_units": overage_amount,
                "rate_cents": rate,
                "billing_month": billing_month,
            },
            tenant_id=tenant_id,
        )

        if overage_amount <= 0:
            return None
        if rate <= 0:
            logger.info(
                "Plan has no overage billing, skipping charge",
                tenant_id=tenant_id,
                plan=policy.plan,
                resource_type=resource_type.value,
            )
            return None

        amount_cents = overage_amount * rate
        description = (
            f"Overage: {overage_amount} {resource_type.value} beyond the {policy.plan} plan monthly limit"
            + (f" ({billing_month})" if billing_month else "")
        )
        try:
            result = self._billing.create_overage_charge(
                tenant_id,
                amount_cents,
                description,
                metadata={
                    "resource_type": resource_type.value,
                    "billing_month": billing_month,
                    "units": overage_amount,
                },
            )
        except Exception as e:
            logger.error(
                "Overage charge failed",
                tenant_id=tenant_id,
                resource_type=resource_type.value,
                amount_cents=amount_cents,
                error=str(e),
                exc_info=True,
            )
            if self._alerts is not None:
                self._alerts.raise_alert(
                    AlertType.OVERAGE_CHARGE_FAILED,
                    title="Overage charge failed",
                    message=f"Could not bill {amount_cents} cents of {resource_type.value} overage; manual follow-up required.",
                    tenant_id=tenant_id,
                    details={
                        "resource_type": resource_type.value,
                        "billing_month": billing_month,
                        "units": overage_amount,
                        "amount_cents": amount_cents,
                        "error": str(e),
                    },
                )
            return None

        logger.info(
            "Overage charge created",
            tenant_id=tenant_id,
            charge_id=result.charge_id,
            amount_cents=amount_cents,
            resource_type=resource_type.value,
        )
        return result


__all__ = ["OverageTrigger"]
