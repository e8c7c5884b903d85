import time

import structlog
import torch
from fastapi import APIRouter, Depends
from sqlalchemy import text

import adaptrain.core.database as db_module
from adaptrain.dependencies import get_orchestrator
from adaptrain.schemas.health import HealthResponse
from adaptrain.services.monitoring import get_gpu_info
from adaptrain.services.training.orchestrator import TrainingOrchestrator

logger = structlog.get_logger()

router = APIRouter()

_start_time = time.monotonic()


async def _database_ok() -> bool:
    try:
        async with db_module.async_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("health_database_unreachable", error=str(e))
        return False


@router.get("/adaptrain/health")
async def health_check(
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
) -> HealthResponse:
    """Service health check."""
    db_ok = await _database_ok()
    gpus = get_gpu_info()

    return HealthResponse(
        status="ok" if db_ok else "degraded",
        database_status="connected" if db_ok else "disconnected",
        active_sessions=len(orchestrator.active_session_ids),
        torch_version=torch.__version__,
        gpu_count=len(gpus),
        gpus=gpus,
        uptime_seconds=round(time.monotonic() - _start_time, 1),
    )
