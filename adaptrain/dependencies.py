from fastapi import Request

from adaptrain.services.training.orchestrator import TrainingOrchestrator


def get_orchestrator(request: Request) -> TrainingOrchestrator:
    """Return the training orchestrator stored on app state during lifespan."""
    return request.app.state.orchestrator
