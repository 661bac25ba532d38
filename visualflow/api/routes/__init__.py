"""
API route registry. All routers are mounted under ``settings.API_PREFIX``.
"""

from fastapi import APIRouter

from .executions import router as executions_router
from .pipelines import router as pipelines_router
from .services import router as services_router

router = APIRouter()
router.include_router(pipelines_router)
router.include_router(executions_router)
router.include_router(services_router)

__all__ = ["router"]
