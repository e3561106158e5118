"""Static tenant -> plan resolver backed by ``config.TENANT_PLANS``."""
from __future__ import annotations

from typing import Mapping, Optional

from quota_gate import config
from quota_gate.utils import get_logger
from .base import PlanResolver

logger = get_logger(__name__)


class StaticPlanResolver(PlanResolver):
    def __init__(self, assignments: Optional[Mapping[str, str]] = None, *, default_plan: Optional[str] = None):
        self._assignments = dict(assignments if assignments is not None else config.TENANT_PLANS)
        self._default_plan = default_plan or config.DEFAULT_PLAN

    def get_plan_for_tenant(self, tenant_id: str) -> str:
        plan = self._assignments.get(tenant_id)
        if plan is None:
            logger.debug("No plan assignment for tenant, using default", tenant_id=tenant_id, plan=self._default_plan)
            return self._default_plan
        return plan

    def assign(self, tenant_id: str, plan: str) -> None:
        self._assignments[tenant_id] = plan


__all__ = ["StaticPlanResolver"]
