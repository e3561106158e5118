"""
Pydantic schemas for admission decisions and usage snapshots.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from quota_gate.errors import CooldownActive, QuotaExceeded
from quota_gate.models.db.enums import DenialReason, ResourceType


class AdmissionCheckRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=128)
    plan: Optional[str] = Field(None, description="Plan override; resolved from the tenant when omitted")
    resource_type: ResourceType = ResourceType.EVENTS


class WindowCounts(BaseModel):
    minute: int = 0
    hour: int = 0
    day: int = 0


class CurrentUsage(WindowCounts):
    cooldown_remaining: int = Field(0, description="Seconds until the cooldown marker allows the next operation")


class PolicyLimits(BaseModel):
    events_per_minute: int
    events_per_hour: int
    events_per_day: int
    cooldown_period_seconds: int = 0
    burst_allowance: int = 0


class ResetTimes(BaseModel):
    minute: datetime
    hour: datetime
    day: datetime


class UsageSnapshot(BaseModel):
    """Read-only view of a tenant's window usage."""
    tenant_id: str
    plan: str
    limits: PolicyLimits
    current_usage: CurrentUsage
    remaining: WindowCounts = Field(description="Against effective limits (burst included on the minute window)")
    utilization_percent: WindowCounts = Field(description="Against base limits, rounded")
    next_reset_times: ResetTimes
    can_proceed: bool


class AdmissionResult(BaseModel):
    allowed: bool
    plan: str
    reason: Optional[DenialReason] = None
    retry_after_seconds: Optional[int] = None
    usage_snapshot: WindowCounts = Field(default_factory=WindowCounts)
    # Minute window figures for X-RateLimit-* headers
    limit: int = 0
    remaining: int = 0
    reset_at: int = Field(0, description="Epoch seconds when the minute window resets")

    def raise_for_denial(self) -> "AdmissionResult":
        """Raise the matching AdmissionDenied subclass when not allowed."""
        if self.allowed:
            return self
        retry_after = int(self.retry_after_seconds or 1)
        if self.reason == DenialReason.COOLDOWN:
            raise CooldownActive(retry_after)
        reason = self.reason.value if self.reason else "QUOTA_EXCEEDED"
        raise QuotaExceeded(
            f"Quota exceeded ({reason}); retry in {retry_after} seconds",
            reason=reason,
            retry_after_seconds=retry_after,
        )
