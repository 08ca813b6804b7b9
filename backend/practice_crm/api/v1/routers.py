from fastapi import APIRouter

from .routes.health import router as health_router
from .routes.segments import router as segments_router
from .routes.audience import router as audience_router


api_v1_router = APIRouter()
api_v1_router.include_router(health_router, tags=["health"])
api_v1_router.include_router(segments_router, tags=["segments"])
api_v1_router.include_router(audience_router, tags=["audience"])
