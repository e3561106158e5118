"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import admission, usage, ledger

api_router = APIRouter()

api_router.include_router(
    admission.router,
    prefix="/admission",
    tags=["admission"]
)

api_router.include_router(
    usage.router,
    prefix="/usage",
    tags=["usage"]
)

api_router.include_router(
    ledger.router,
    prefix="/ledger",
    tags=["ledger"]
)
