"""
Dependencies for the components wired at startup.

Components live on ``app.state`` (set by the lifespan, or by tests directly),
so endpoints never import ``quota_gate.main``.
"""
from typing import Any
from fastapi import HTTPException, Request, status
from quota_gate.integrations.base import PlanResolver, UsageLedger
from quota_gate.services.admission import AdmissionController
from quota_gate.services.ledger_sync import UsageLedgerSync
from quota_gate.services.usage_report import MonthlyUsageReporter
from quota_gate.utils import get_logger

logger = get_logger(__name__)


def _state_component(request: Request, name: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        logger.error("Component not initialized", component=name)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service not ready ({name} not initialized)",
        )
    return component


def get_admission_controller(request: Request) -> AdmissionController:
    return _state_component(request, "admission_controller")


def get_ledger_sync(request: Request) -> UsageLedgerSync:
    return _state_component(request, "ledger_sync")


def get_plan_resolver(request: Request) -> PlanResolver:
    return _state_component(request, "plan_resolver")


def get_usage_ledger(request: Request) -> UsageLedger:
    return _state_component(request, "usage_ledger")


def get_usage_reporter(request: Request) -> MonthlyUsageReporter:
    return _state_component(request, "usage_reporter")


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")
