"""Trust API routers."""

from fastapi import APIRouter

from . import assessments, clients, rate_limits, reviews

router = APIRouter()
router.include_router(rate_limits.router)
router.include_router(reviews.router)
router.include_router(assessments.router)
router.include_router(clients.router)

__all__ = ["router"]
