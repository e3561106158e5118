"""Central Enum definitions for quota/admission states.

These replace scattered string literals so the admission path, the ledger
models and the API schemas agree on the same values.
"""
from __future__ import annotations
import enum


class PlanTier(str, enum.Enum):
    FOUNDATION = "foundation"
    GROWTH = "growth"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class Granularity(str, enum.Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return GRANULARITY_SECONDS[self]


GRANULARITY_SECONDS: dict[Granularity, int] = {
    Granularity.MINUTE: 60,
    Granularity.HOUR: 3600,
    Granularity.DAY: 86400,
}


class DenialReason(str, enum.Enum):
    MINUTE_LIMIT = "MINUTE_LIMIT"
    HOUR_LIMIT = "HOUR_LIMIT"
    DAY_LIMIT = "DAY_LIMIT"
    COOLDOWN = "COOLDOWN"


class ResourceType(str, enum.Enum):
    API_CALLS = "api_calls"
    CERTIFICATES = "certificates"
    VOTES = "votes"
    EVENTS = "events"


class ChargeStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    FAILED = "FAILED"


class AlertSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertType(str, enum.Enum):
    LEDGER_DELTAS_LOST = "LEDGER_DELTAS_LOST"
    OVERAGE_CHARGE_FAILED = "OVERAGE_CHARGE_FAILED"
    COUNTER_STORE_DEGRADED = "COUNTER_STORE_DEGRADED"


__all__ = [
    "PlanTier",
    "Granularity",
    "GRANULARITY_SECONDS",
    "DenialReason",
    "ResourceType",
    "ChargeStatus",
    "AlertSeverity",
    "AlertType",
]
