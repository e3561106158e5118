"""Tenant quota gate package.

Admission control for metered tenant operations plus the usage ledger sync
that feeds overage billing.
"""

__all__: list[str] = []
