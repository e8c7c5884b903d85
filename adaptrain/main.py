from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adaptrain.api.v1.router import v1_router
from adaptrain.config import settings
import adaptrain.core.database as db_module
from adaptrain.core.database import close_db, init_db
from adaptrain.core.exceptions import AdaptrainError, adaptrain_error_handler
from adaptrain.core.middleware import RequestLoggingMiddleware
from adaptrain.services.training.orchestrator import TrainingOrchestrator
from adaptrain.services.training.store import SessionStore

_NAME_TO_LEVEL = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "warn": 30,
    "error": 40,
    "critical": 50,
}

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(ensure_ascii=False),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _NAME_TO_LEVEL.get(settings.adaptrain_log_level.lower(), 20)
    ),
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    await init_db()

    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = TrainingOrchestrator(store=SessionStore(session_factory=db_module.async_session))

    logger.info(
        "adaptrain_backend_starting",
        db_url=settings.adaptrain_db_url,
        dataset=settings.adaptrain_dataset_path or "synthetic",
    )
    yield

    await app.state.orchestrator.shutdown()
    await close_db()
    logger.info("adaptrain_backend_stopping")


app = FastAPI(
    title="Adaptrain Backend",
    description="Training orchestration and parameter-efficient model adaptation",
    version="0.1.0",
    lifespan=lifespan,
)

# Exception handler
app.add_exception_handler(AdaptrainError, adaptrain_error_handler)

# Middleware (Starlette: last-added = outermost)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.adaptrain_cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# Routes
app.include_router(v1_router)


@app.get("/")
async def root():
    return {"service": "adaptrain-backend", "version": "0.1.0"}
