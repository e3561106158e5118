"""SQLAlchemy model for overage charge instructions handed to billing."""
from __future__ import annotations
from sqlalchemy import Integer, String, DateTime, Enum, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from quota_gate.database import Base
from .enums import ChargeStatus


class OverageCharge(Base):
    __tablename__ = "overage_charges"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_month: Mapped[str | None] = mapped_column(String(7), nullable=True)
    units: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ChargeStatus] = mapped_column(Enum(ChargeStatus), default=ChargeStatus.PENDING, index=True)
    external_charge_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
