from .usage_ledger import UsageLedgerRecord, AppliedDelta, RESOURCE_COLUMNS
from .overage_charges import OverageCharge
from .alerts import Alert, AlertStatus

__all__ = [
    "UsageLedgerRecord",
    "AppliedDelta",
    "RESOURCE_COLUMNS",
    "OverageCharge",
    "Alert",
    "AlertStatus",
]
