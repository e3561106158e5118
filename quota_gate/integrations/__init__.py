from .base import PlanResolver, UsageLedger, LedgerUpdate, MonthlyUsage, BillingClient, ChargeResult
from .plans import StaticPlanResolver
from .billing import RecordingBillingClient

__all__ = [
    "PlanResolver",
    "UsageLedger",
    "LedgerUpdate",
    "MonthlyUsage",
    "BillingClient",
    "ChargeResult",
    "StaticPlanResolver",
    "RecordingBillingClient",
]
