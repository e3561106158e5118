"""SQLAlchemy-backed durable usage ledger.

All methods are synchronous and open their own session; the ledger sync runs
them in a worker thread. Counts change only through SQL-side arithmetic
(``SET col = col + :n``) so concurrent writers never lose increments.

Idempotency: ``increment_monthly_usage`` inserts the ``AppliedDelta`` row and
bumps the counter in one transaction. A replayed ``delta_id`` hits the unique
constraint and the increment is skipped.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quota_gate.database import SessionLocal
from quota_gate.errors import LedgerFlushFailure
from quota_gate.integrations.base import LedgerUpdate, MonthlyUsage, UsageLedger
from quota_gate.models.db import AppliedDelta, UsageLedgerRecord, RESOURCE_COLUMNS
from quota_gate.models.db.enums import ResourceType
from quota_gate.utils import get_logger, log_business_event
from quota_gate.utils.time import billing_month as month_of, utc_now

logger = get_logger(__name__)


class SqlUsageLedger(UsageLedger):
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, *, clock: Callable[[], float] = time.time):
        self._session_factory = session_factory
        self._clock = clock

    @staticmethod
    def _row_filter(tenant_id: str, billing_month: str):
        return (
            UsageLedgerRecord.tenant_id == tenant_id,
            UsageLedgerRecord.billing_month == billing_month,
        )

    def _ensure_row(self, tenant_id: str, billing_month: str) -> None:
        """Create the (tenant, month) row if missing, in its own transaction."""
        session = self._session_factory()
        try:
            exists = session.execute(
                select(UsageLedgerRecord.id).where(*self._row_filter(tenant_id, billing_month))
            ).first()
            if exists is None:
                session.add(UsageLedgerRecord(tenant_id=tenant_id, billing_month=billing_month))
                session.commit()
                logger.info("Usage ledger record created", tenant_id=tenant_id, billing_month=billing_month)
        except IntegrityError:
            # Another writer created it first
            session.rollback()
        finally:
            session.close()

    def increment_monthly_usage(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        amount: int,
        *,
        delta_id: str,
        billing_month: str,
    ) -> LedgerUpdate:
        if amount < 0:
            raise ValueError("Usage deltas must be non-negative")
        count_name, _ = RESOURCE_COLUMNS[resource_type]
        count_col = getattr(UsageLedgerRecord, count_name)

        try:
            self._ensure_row(tenant_id, billing_month)
        except SQLAlchemyError as e:
            raise LedgerFlushFailure(str(e), batch_id=delta_id, attempts=0) from e

        session = self._session_factory()
        try:
            session.add(AppliedDelta(
                delta_id=delta_id,
                tenant_id=tenant_id,
                billing_month=billing_month,
                resource_type=resource_type.value,
                amount=amount,
            ))
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                total = session.execute(
                    select(count_col).where(*self._row_filter(tenant_id, billing_month))
                ).scalar_one_or_none()
                logger.info(
                    "Usage delta already applied, skipping",
                    tenant_id=tenant_id,
                    delta_id=delta_id,
                    resource_type=resource_type.value,
                )
                return LedgerUpdate(total=int(total or 0), applied=False)

            session.execute(
                update(UsageLedgerRecord)
                .where(*self._row_filter(tenant_id, billing_month))
                .values({count_name: count_col + amount, "last_updated": utc_now()})
                .execution_options(synchronize_session=False)
            )
            total = session.execute(
                select(count_col).where(*self._row_filter(tenant_id, billing_month))
            ).scalar_one()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise LedgerFlushFailure(str(e), batch_id=delta_id, attempts=0) from e
        finally:
            session.close()

        logger.debug(
            "Monthly usage incremented",
            tenant_id=tenant_id,
            billing_month=billing_month,
            resource_type=resource_type.value,
            amount=amount,
            total=total,
        )
        return LedgerUpdate(total=int(total), applied=True)

    def get_monthly_usage(self, tenant_id: str, billing_month: Optional[str] = None) -> Optional[MonthlyUsage]:
        billing_month = billing_month or month_of(self._clock())
        session = self._session_factory()
        try:
            record = session.execute(
                select(UsageLedgerRecord).where(*self._row_filter(tenant_id, billing_month))
            ).scalar_one_or_none()
            if record is None:
                return None
            data = record.to_dict()
        finally:
            session.close()
        return MonthlyUsage(**data)

    def mark_threshold_crossed(self, tenant_id: str, billing_month: str, resource_type: ResourceType) -> bool:
        _, flag_name = RESOURCE_COLUMNS[resource_type]
        flag_col = getattr(UsageLedgerRecord, flag_name)
        session = self._session_factory()
        try:
            result = session.execute(
                update(UsageLedgerRecord)
                .where(*self._row_filter(tenant_id, billing_month), flag_col == False)  # noqa: E712
                .values({flag_name: True})
                .execution_options(synchronize_session=False)
            )
            session.commit()
            flipped = result.rowcount == 1
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

        if flipped:
            log_business_event(
                "monthly_threshold_crossed",
                {"billing_month": billing_month, "resource_type": resource_type.value},
                tenant_id=tenant_id,
            )
        return flipped

    def reset_monthly_usage(self, tenant_id: str, billing_month: str) -> None:
        values = {}
        for count_name, flag_name in RESOURCE_COLUMNS.values():
            values[count_name] = 0
            values[flag_name] = False
        values["last_updated"] = utc_now()

        session = self._session_factory()
        try:
            session.execute(
                update(UsageLedgerRecord)
                .where(*self._row_filter(tenant_id, billing_month))
                .values(values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()
        log_business_event("monthly_usage_reset", {"billing_month": billing_month}, tenant_id=tenant_id)


__all__ = ["SqlUsageLedger"]
