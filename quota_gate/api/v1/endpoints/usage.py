"""
Usage endpoints: live window usage and the durable monthly ledger.
"""
import asyncio
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from quota_gate.api.deps import (
    get_admission_controller,
    get_plan_resolver,
    get_request_id,
    get_usage_ledger,
    get_usage_reporter,
)
from quota_gate.integrations.base import PlanResolver, UsageLedger
from quota_gate.models.db.enums import ResourceType
from quota_gate.models.schemas.base import ResponseBase
from quota_gate.models.schemas.ledger import MonthlyUsageRead
from quota_gate.services.admission import AdmissionController
from quota_gate.services.usage_report import MonthlyUsageReporter
from quota_gate.utils import get_logger
from quota_gate.utils.time import billing_month as month_of

router = APIRouter()
logger = get_logger(__name__)

BILLING_MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


@router.get(
    "/{tenant_id}",
    response_model=ResponseBase,
    summary="Current minute/hour/day usage for a tenant"
)
async def get_usage(
    tenant_id: str,
    request: Request,
    plan: Optional[str] = Query(None, description="Plan override"),
    controller: AdmissionController = Depends(get_admission_controller),
    plan_resolver: PlanResolver = Depends(get_plan_resolver),
) -> ResponseBase:
    snapshot = await controller.get_usage_snapshot(tenant_id, plan or plan_resolver.get_plan_for_tenant(tenant_id))
    logger.info(
        "Usage snapshot requested",
        tenant_id=tenant_id,
        plan=snapshot.plan,
        can_proceed=snapshot.can_proceed,
        request_id=get_request_id(request),
    )
    return ResponseBase(data=snapshot.model_dump(mode="json"))


@router.get(
    "/{tenant_id}/monthly",
    response_model=ResponseBase,
    summary="Durable monthly usage record"
)
async def get_monthly_usage(
    tenant_id: str,
    request: Request,
    billing_month: Optional[str] = Query(None, pattern=BILLING_MONTH_PATTERN, description="YYYY-MM, defaults to the current month"),
    controller: AdmissionController = Depends(get_admission_controller),
    plan_resolver: PlanResolver = Depends(get_plan_resolver),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> ResponseBase:
    month = billing_month or month_of(controller.now())
    usage = await asyncio.to_thread(ledger.get_monthly_usage, tenant_id, month)
    policy = controller.policies.resolve(plan_resolver.get_plan_for_tenant(tenant_id))

    body = MonthlyUsageRead(
        tenant_id=tenant_id,
        billing_month=month,
        plan=policy.plan,
        counts=usage.counts if usage else {rt.value: 0 for rt in ResourceType},
        monthly_limits=dict(policy.monthly_limits),
        threshold_crossed=usage.threshold_crossed if usage else {rt.value: False for rt in ResourceType},
        last_updated=usage.last_updated if usage else None,
    )
    logger.info(
        "Monthly usage requested",
        tenant_id=tenant_id,
        billing_month=month,
        found=usage is not None,
        request_id=get_request_id(request),
    )
    return ResponseBase(data=body.model_dump(mode="json"))


@router.get(
    "/{tenant_id}/monthly/check",
    response_model=ResponseBase,
    summary="Would more units fit this month's cap (reporting only)"
)
async def check_monthly_limits(
    tenant_id: str,
    request: Request,
    resource_type: ResourceType = Query(ResourceType.EVENTS),
    amount: int = Query(1, ge=0, le=1_000_000),
    plan: Optional[str] = Query(None, description="Plan override"),
    billing_month: Optional[str] = Query(None, pattern=BILLING_MONTH_PATTERN),
    reporter: MonthlyUsageReporter = Depends(get_usage_reporter),
) -> ResponseBase:
    check = await asyncio.to_thread(
        reporter.check_monthly_limits,
        tenant_id,
        resource_type,
        amount,
        plan=plan,
        billing_month=billing_month,
    )
    logger.info(
        "Monthly limit check requested",
        tenant_id=tenant_id,
        resource_type=resource_type.value,
        allowed=check.allowed,
        request_id=get_request_id(request),
    )
    return ResponseBase(data=check.model_dump(mode="json"))


@router.get(
    "/{tenant_id}/monthly/report",
    response_model=ResponseBase,
    summary="Per-resource monthly headroom with recommendations"
)
async def get_monthly_report(
    tenant_id: str,
    request: Request,
    plan: Optional[str] = Query(None, description="Plan override"),
    billing_month: Optional[str] = Query(None, pattern=BILLING_MONTH_PATTERN),
    reporter: MonthlyUsageReporter = Depends(get_usage_reporter),
) -> ResponseBase:
    report = await asyncio.to_thread(reporter.monthly_report, tenant_id, plan=plan, billing_month=billing_month)
    logger.info(
        "Monthly usage report requested",
        tenant_id=tenant_id,
        billing_month=report.billing_month,
        recommendations=len(report.recommendations),
        request_id=get_request_id(request),
    )
    return ResponseBase(data=report.model_dump(mode="json"))
