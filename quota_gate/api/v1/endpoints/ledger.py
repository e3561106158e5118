"""
Usage ledger sync endpoints (operational visibility and manual controls).
"""
import asyncio
import time
from fastapi import APIRouter, Depends, Query, Request
from quota_gate.api.deps import get_ledger_sync, get_request_id, get_usage_ledger
from quota_gate.api.v1.endpoints.usage import BILLING_MONTH_PATTERN
from quota_gate.integrations.base import UsageLedger
from quota_gate.models.schemas.base import ResponseBase
from quota_gate.models.schemas.ledger import LedgerQueueStatus
from quota_gate.services.ledger_sync import UsageLedgerSync
from quota_gate.utils import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.get(
    "/queue",
    response_model=ResponseBase,
    summary="Ledger sync queue status"
)
async def get_queue_status(
    sync: UsageLedgerSync = Depends(get_ledger_sync),
) -> ResponseBase:
    status_body = LedgerQueueStatus(**sync.snapshot())
    return ResponseBase(data=status_body.model_dump())


@router.post(
    "/flush",
    response_model=ResponseBase,
    summary="Flush queued usage to the monthly ledger now"
)
async def flush_ledger(
    request: Request,
    sync: UsageLedgerSync = Depends(get_ledger_sync),
) -> ResponseBase:
    start_time = time.time()
    applied = await sync.flush(force=True)
    duration_ms = (time.time() - start_time) * 1000
    log_performance(operation="manual_ledger_flush", duration_ms=duration_ms, additional_data={"applied": applied})
    logger.info("Manual ledger flush completed", applied_batches=applied, request_id=get_request_id(request))
    return ResponseBase(
        message=f"Flushed {applied} batch(es)",
        data={"applied_batches": applied, "queue": LedgerQueueStatus(**sync.snapshot()).model_dump()},
    )


@router.post(
    "/{tenant_id}/reset",
    response_model=ResponseBase,
    summary="Reset a tenant's monthly usage record"
)
async def reset_monthly_usage(
    tenant_id: str,
    request: Request,
    billing_month: str = Query(..., pattern=BILLING_MONTH_PATTERN),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> ResponseBase:
    request_id = get_request_id(request)
    await asyncio.to_thread(ledger.reset_monthly_usage, tenant_id, billing_month)
    log_business_event(
        "monthly_usage_reset_requested",
        {"billing_month": billing_month},
        tenant_id=tenant_id,
        request_id=request_id,
    )
    return ResponseBase(message="Monthly usage reset", data={"tenant_id": tenant_id, "billing_month": billing_month})
