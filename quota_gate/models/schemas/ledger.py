"""
Pydantic schemas for the durable usage ledger and the sync queue.
"""
from datetime import datetime
from typing import Optional, Dict, List
from pydantic import BaseModel, ConfigDict
from quota_gate.models.db.enums import ResourceType


class MonthlyUsageRead(BaseModel):
    tenant_id: str
    billing_month: str
    plan: str
    counts: Dict[str, int]
    monthly_limits: Dict[str, int]
    threshold_crossed: Dict[str, bool]
    last_updated: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerQueueStatus(BaseModel):
    running: bool
    queue_depth: int
    max_queue_size: int
    pending_batches: int
    applied_batches: int
    dropped_deltas: int
    lost_deltas: int


class MonthlyLimitCheck(BaseModel):
    """Would more units of a resource fit this month's cap (reporting only)."""
    tenant_id: str
    plan: str
    billing_month: str
    resource_type: ResourceType
    allowed: bool
    current_usage: int
    limit: Optional[int] = None  # None: uncapped
    remaining: Optional[int] = None
    percentage: int
    overage: Optional[int] = None


class ResourceUsage(BaseModel):
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    percentage: int


class MonthlyUsageReport(BaseModel):
    tenant_id: str
    billing_month: str
    plan: str
    resources: Dict[str, ResourceUsage]
    recommendations: List[str]
