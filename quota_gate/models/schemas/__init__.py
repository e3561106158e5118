"""
Pydantic schemas for request/response validation.
"""
from .base import ResponseBase
from .admission import (
    AdmissionCheckRequest,
    AdmissionResult,
    CurrentUsage,
    PolicyLimits,
    ResetTimes,
    UsageSnapshot,
    WindowCounts,
)
from .ledger import MonthlyUsageRead, LedgerQueueStatus

__all__ = [
    "ResponseBase",
    "AdmissionCheckRequest",
    "AdmissionResult",
    "CurrentUsage",
    "PolicyLimits",
    "ResetTimes",
    "UsageSnapshot",
    "WindowCounts",
    "MonthlyUsageRead",
    "LedgerQueueStatus",
]
