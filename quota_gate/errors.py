"""Exception hierarchy for admission, counter store and ledger paths."""
from __future__ import annotations

from typing import Optional


class QuotaGateError(Exception):
    """Base class for all quota gate errors."""


class AdmissionDenied(QuotaGateError):
    """Expected, user-facing denial (maps to HTTP 429)."""

    def __init__(self, message: str, *, reason: str, retry_after_seconds: int) -> None:
        super().__init__(message)
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds


class QuotaExceeded(AdmissionDenied):
    """A minute/hour/day window is exhausted."""


class CooldownActive(AdmissionDenied):
    """The tenant's previous admitted operation is too recent."""

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            f"Cooldown active: {retry_after_seconds} seconds remaining",
            reason="COOLDOWN",
            retry_after_seconds=retry_after_seconds,
        )


class StoreUnavailable(QuotaGateError):
    """Counter store unreachable, erroring or timed out."""


class ServiceUnavailable(StoreUnavailable):
    """Admission refused because the counter store cannot be trusted (fail closed)."""


class UnknownPlan(LookupError, QuotaGateError):
    """Plan key not present in the policy table.

    Only raised by strict lookups; the admission path falls back instead.
    """

    def __init__(self, plan: Optional[str]) -> None:
        super().__init__(f"Unknown plan '{plan}'")
        self.plan = plan


class LedgerFlushFailure(QuotaGateError):
    """A batched usage delta could not be written to the durable ledger."""

    def __init__(self, message: str, *, batch_id: str, attempts: int) -> None:
        super().__init__(message)
        self.batch_id = batch_id
        self.attempts = attempts


class OverageChargeFailed(QuotaGateError):
    """The billing collaborator rejected an overage charge."""


__all__ = [
    "QuotaGateError",
    "AdmissionDenied",
    "QuotaExceeded",
    "CooldownActive",
    "StoreUnavailable",
    "ServiceUnavailable",
    "UnknownPlan",
    "LedgerFlushFailure",
    "OverageChargeFailed",
]
