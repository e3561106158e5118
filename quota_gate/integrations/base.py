"""Collaborator interfaces the quota engine depends on.

Tenant plan lookup, durable usage persistence and billing are owned by other
services. The engine only talks to them through these narrow ABCs; bundled
implementations live beside this module.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from quota_gate.models.db.enums import ChargeStatus, ResourceType


class PlanResolver(ABC):
    @abstractmethod
    def get_plan_for_tenant(self, tenant_id: str) -> str:
        ...


@dataclass(frozen=True)
class LedgerUpdate:
    """Outcome of one idempotent ledger increment.

    ``applied`` is False when the delta id had already been recorded; ``total``
    is the resource's current monthly count either way.
    """
    total: int
    applied: bool


@dataclass(frozen=True)
class MonthlyUsage:
    tenant_id: str
    billing_month: str
    counts: Dict[str, int]
    threshold_crossed: Dict[str, bool]
    last_updated: Optional[datetime] = None


class UsageLedger(ABC):
    """Durable monthly usage persistence (synchronous; run off the event loop)."""

    @abstractmethod
    def increment_monthly_usage(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        amount: int,
        *,
        delta_id: str,
        billing_month: str,
    ) -> LedgerUpdate:
        ...

    @abstractmethod
    def get_monthly_usage(self, tenant_id: str, billing_month: Optional[str] = None) -> Optional[MonthlyUsage]:
        ...

    @abstractmethod
    def mark_threshold_crossed(self, tenant_id: str, billing_month: str, resource_type: ResourceType) -> bool:
        """Set the crossed flag; True only for the caller that flipped it."""

    @abstractmethod
    def reset_monthly_usage(self, tenant_id: str, billing_month: str) -> None:
        ...


@dataclass(frozen=True)
class ChargeResult:
    status: ChargeStatus
    amount_cents: int
    charge_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class BillingClient(ABC):
    @abstractmethod
    def create_overage_charge(
        self,
        tenant_id: str,
        amount_cents: int,
        description: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """Raise OverageChargeFailed when the charge cannot be created."""


__all__ = [
    "PlanResolver",
    "UsageLedger",
    "LedgerUpdate",
    "MonthlyUsage",
    "BillingClient",
    "ChargeResult",
]
