from fastapi import APIRouter, Depends, Response

from adaptrain.core.exceptions import ConfigurationError
from adaptrain.dependencies import get_orchestrator
from adaptrain.schemas.training import (
    CheckpointCreate,
    CheckpointList,
    ClassificationRequest,
    ClassificationResult,
    ModelCheckpoint,
    ModelType,
    TrainingMetrics,
    TrainingSession,
    TrainingSessionCreate,
    TrainingSessionList,
)
from adaptrain.services.adapters.classifier import SequenceClassifierAdapter
from adaptrain.services.adapters.qr import QuantizedRankAdapter
from adaptrain.services.training.orchestrator import TrainingOrchestrator

router = APIRouter()


@router.get("/adaptrain/training/sessions", response_model=TrainingSessionList)
async def list_training_sessions(orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """List all training sessions, newest first."""
    sessions = await orchestrator.list_sessions()
    return TrainingSessionList(sessions=sessions, total=len(sessions))


@router.post("/adaptrain/training/sessions", response_model=TrainingSession, status_code=201)
async def create_training_session(
    data: TrainingSessionCreate,
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
):
    """Create a session in pending status. Nothing runs until it is started."""
    return await orchestrator.create_session(data.name, data.model_type, data.configuration)


@router.get("/adaptrain/training/sessions/{session_id}", response_model=TrainingSession)
async def get_training_session(session_id: str, orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_session(session_id)


@router.delete("/adaptrain/training/sessions/{session_id}", status_code=204)
async def delete_training_session(session_id: str, orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """Delete a session and its checkpoints. Running sessions must be stopped first."""
    await orchestrator.delete(session_id)
    return Response(status_code=204)


@router.post("/adaptrain/training/sessions/{session_id}/start", response_model=TrainingSession)
async def start_training_session(session_id: str, orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """Start a pending session or resume a paused one.

    Progress is streamed on ``/ws/training/{session_id}``.
    """
    return await orchestrator.start(session_id)


@router.post("/adaptrain/training/sessions/{session_id}/stop", response_model=TrainingSession)
async def stop_training_session(session_id: str, orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.stop(session_id)


@router.get("/adaptrain/training/sessions/{session_id}/metrics", response_model=TrainingMetrics)
async def get_training_metrics(session_id: str, orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_metrics(session_id)


# ── Checkpoints ─────────────────────────────────────────────────────────────


@router.get("/adaptrain/training/sessions/{session_id}/checkpoints", response_model=CheckpointList)
async def list_session_checkpoints(session_id: str, orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    checkpoints = await orchestrator.list_checkpoints(session_id)
    return CheckpointList(checkpoints=checkpoints, total=len(checkpoints))


@router.post(
    "/adaptrain/training/sessions/{session_id}/checkpoints",
    response_model=ModelCheckpoint,
    status_code=201,
)
async def create_session_checkpoint(
    session_id: str,
    data: CheckpointCreate | None = None,
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
):
    description = data.description if data else None
    return await orchestrator.create_checkpoint(session_id, description=description)


@router.get(
    "/adaptrain/training/sessions/{session_id}/checkpoints/{checkpoint_id}",
    response_model=ModelCheckpoint,
)
async def get_session_checkpoint(
    session_id: str,
    checkpoint_id: str,
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_checkpoint(session_id, checkpoint_id)


# ── Live adapter views ──────────────────────────────────────────────────────


@router.get("/adaptrain/training/sessions/{session_id}/compression")
async def get_compression_analysis(session_id: str, orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """Per-layer compression of a running quantized-rank session."""
    adapter = orchestrator.get_adapter(session_id)
    if not isinstance(adapter, QuantizedRankAdapter):
        raise ConfigurationError(f"Compression analysis is only available for '{ModelType.QR_ADAPTOR.value}' sessions.")
    return adapter.get_compression_analysis()


@router.post("/adaptrain/training/sessions/{session_id}/classify", response_model=ClassificationResult)
async def classify_text(
    session_id: str,
    data: ClassificationRequest,
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
):
    """Classify text with the live model of a running sequence-classifier session."""
    adapter = orchestrator.get_adapter(session_id)
    if not isinstance(adapter, SequenceClassifierAdapter):
        raise ConfigurationError(f"Classification is only available for '{ModelType.PERSIAN_BERT.value}' sessions.")
    return adapter.classify(data.text)
