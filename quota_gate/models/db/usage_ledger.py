"""SQLAlchemy models for the durable monthly usage ledger.

One ``UsageLedgerRecord`` per (tenant, billing month). Counts are only ever
changed with ``UPDATE ... SET col = col + :n`` so concurrent flushers never
lose increments. Each resource has its own ``*_threshold_crossed`` flag; the
flag is flipped with a conditional UPDATE so exactly one flusher observes the
crossing and fires the overage trigger.

``AppliedDelta`` records every batch id written to the ledger. Inserting it in
the same transaction as the increment makes a replayed batch a no-op.
"""
from __future__ import annotations
from sqlalchemy import Integer, String, DateTime, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from quota_gate.database import Base
from .enums import ResourceType

# ResourceType -> (count column, threshold flag column)
RESOURCE_COLUMNS: dict[ResourceType, tuple[str, str]] = {
    ResourceType.API_CALLS: ("api_calls", "api_calls_threshold_crossed"),
    ResourceType.CERTIFICATES: ("certificates", "certificates_threshold_crossed"),
    ResourceType.VOTES: ("votes", "votes_threshold_crossed"),
    ResourceType.EVENTS: ("events", "events_threshold_crossed"),
}


class UsageLedgerRecord(Base):
    __tablename__ = "usage_ledger"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    billing_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)  # YYYY-MM

    api_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    certificates: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    votes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    events: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    api_calls_threshold_crossed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    certificates_threshold_crossed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    votes_threshold_crossed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    events_threshold_crossed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_updated: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "billing_month", name="uq_usage_ledger_tenant_month"),
    )

    def count_for(self, resource_type: ResourceType) -> int:
        return int(getattr(self, RESOURCE_COLUMNS[resource_type][0]) or 0)

    def threshold_crossed(self, resource_type: ResourceType) -> bool:
        return bool(getattr(self, RESOURCE_COLUMNS[resource_type][1]))

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "billing_month": self.billing_month,
            "counts": {rt.value: self.count_for(rt) for rt in RESOURCE_COLUMNS},
            "threshold_crossed": {rt.value: self.threshold_crossed(rt) for rt in RESOURCE_COLUMNS},
            "last_updated": self.last_updated,
        }


class AppliedDelta(Base):
    __tablename__ = "applied_usage_deltas"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    delta_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    billing_month: Mapped[str] = mapped_column(String(7), nullable=False)
    resource_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
