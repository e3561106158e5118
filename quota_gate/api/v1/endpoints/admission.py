"""
Admission check endpoint.
"""
import time
from fastapi import APIRouter, Depends, Request, Response
from quota_gate.api.deps import get_admission_controller, get_plan_resolver, get_request_id
from quota_gate.integrations.base import PlanResolver
from quota_gate.models.schemas.admission import AdmissionCheckRequest, AdmissionResult
from quota_gate.models.schemas.base import ResponseBase
from quota_gate.services.admission import AdmissionController
from quota_gate.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)


def rate_limit_headers(result: AdmissionResult) -> dict[str, str]:
    """Minute-window X-RateLimit-* headers for an admission result."""
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


@router.post(
    "/check",
    response_model=ResponseBase,
    summary="Check and admit a tenant operation"
)
async def check_admission(
    payload: AdmissionCheckRequest,
    request: Request,
    response: Response,
    controller: AdmissionController = Depends(get_admission_controller),
    plan_resolver: PlanResolver = Depends(get_plan_resolver),
) -> ResponseBase:
    """Admit the operation or answer 429 (quota/cooldown) / 503 (counter store down).

    The plan comes from the tenant's plan assignment unless given explicitly.
    """
    start_time = time.time()
    request_id = get_request_id(request)
    plan = payload.plan or plan_resolver.get_plan_for_tenant(payload.tenant_id)

    result = await controller.check_and_admit(
        payload.tenant_id,
        plan,
        resource_type=payload.resource_type,
    )
    # Exception handlers read this to add rate limit headers to the 429
    request.state.admission_result = result

    log_performance(
        operation="admission_check",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"allowed": result.allowed, "tenant_id": payload.tenant_id},
    )
    result.raise_for_denial()

    for name, value in rate_limit_headers(result).items():
        response.headers[name] = value
    logger.info(
        "Operation admitted",
        tenant_id=payload.tenant_id,
        plan=result.plan,
        resource_type=payload.resource_type.value,
        request_id=request_id,
    )
    return ResponseBase(
        message="Operation admitted",
        data=result.model_dump(mode="json"),
    )
