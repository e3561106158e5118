"""Billing collaborator that records overage charge instructions.

Invoice/payment mechanics belong to the payment service; this client persists
an ``OverageCharge`` row per charge for that service to pick up.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quota_gate.database import SessionLocal
from quota_gate.errors import OverageChargeFailed
from quota_gate.models.db import OverageCharge
from quota_gate.models.db.enums import ChargeStatus
from quota_gate.utils import get_logger, log_business_event
from .base import BillingClient, ChargeResult

logger = get_logger(__name__)


class RecordingBillingClient(BillingClient):
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def create_overage_charge(
        self,
        tenant_id: str,
        amount_cents: int,
        description: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        if amount_cents <= 0:
            raise OverageChargeFailed(f"Refusing non-positive overage charge ({amount_cents}) for tenant {tenant_id}")
        metadata = metadata or {}
        session = self._session_factory()
        try:
            charge = OverageCharge(
                tenant_id=tenant_id,
                resource_type=metadata.get("resource_type"),
                billing_month=metadata.get("billing_month"),
                units=metadata.get("units"),
                amount_cents=amount_cents,
                description=description,
                status=ChargeStatus.PENDING,
            )
            session.add(charge)
            session.commit()
            charge_id = str(charge.id)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to record overage charge", tenant_id=tenant_id, error=str(e), exc_info=True)
            raise OverageChargeFailed(f"Could not record overage charge for tenant {tenant_id}") from e
        finally:
            session.close()

        log_business_event(
            "overage_charge_recorded",
            {"charge_id": charge_id, "amount_cents": amount_cents, **metadata},
            tenant_id=tenant_id,
        )
        return ChargeResult(status=ChargeStatus.PENDING, amount_cents=amount_cents, charge_id=charge_id, details=metadata)


__all__ = ["RecordingBillingClient"]
