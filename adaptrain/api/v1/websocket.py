import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from adaptrain.core.exceptions import NotFoundError
from adaptrain.schemas.training import SessionStatus

logger = structlog.get_logger()

router = APIRouter()

_TERMINAL_EVENTS = {"completed", "error", "paused"}


@router.websocket("/ws/training/{session_id}")
async def training_progress_ws(websocket: WebSocket, session_id: str):
    """Push progress events of one session until it completes, fails or the client leaves."""
    orchestrator = websocket.app.state.orchestrator
    try:
        session = await orchestrator.get_session(session_id)
    except NotFoundError:
        await websocket.close(code=4004, reason="Unknown training session")
        return

    await websocket.accept()
    queue = orchestrator.broadcaster.subscribe(session_id)
    try:
        await websocket.send_json(
            {
                "type": "snapshot",
                "session_id": session_id,
                "status": session.status.value,
                "progress": session.progress.model_dump(),
            }
        )
        if session.status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            await websocket.close()
            return

        while True:
            event = await queue.get()
            await websocket.send_json(event)
            if event.get("type") in _TERMINAL_EVENTS:
                await websocket.close()
                return
    except WebSocketDisconnect:
        logger.debug("training_ws_disconnected", session_id=session_id)
    finally:
        orchestrator.broadcaster.unsubscribe(session_id, queue)
