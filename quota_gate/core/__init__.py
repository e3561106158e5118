"""Pure admission building blocks: window clock and policy table."""
from .policy import PolicyTable, QuotaPolicy, build_policy_table

__all__ = ["PolicyTable", "QuotaPolicy", "build_policy_table"]
