from fastapi import APIRouter

from adaptrain.api.v1.health import router as health_router
from adaptrain.api.v1.training import router as training_router
from adaptrain.api.v1.websocket import router as websocket_router

v1_router = APIRouter()

v1_router.include_router(health_router, tags=["Health"])
v1_router.include_router(training_router, tags=["Training"])
v1_router.include_router(websocket_router, tags=["WebSocket"])
