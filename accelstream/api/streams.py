"""Stream session API endpoints"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from accelstream.api.schemas import StreamRequest
from accelstream.streaming.error_handler import SessionError
from accelstream.streaming.orchestrator import StreamOrchestrator, get_orchestrator
from accelstream.streaming.session_manager import SessionHandle, SessionState, StreamSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/streams", tags=["Streams"])


def _get_session(orchestrator: StreamOrchestrator, session_id: str) -> StreamSession:
    session = orchestrator.sessions.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@router.get("")
async def list_streams(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    """Live sessions."""
    return [s.to_dict() for s in orchestrator.sessions.get_active_sessions()]


@router.post("", status_code=201)
async def create_stream(
    request: StreamRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Select a channel and start opening its pipeline."""
    try:
        handle = await orchestrator.select_channel(
            request.channel_id,
            request.url,
            request.quality,
            replace=request.replace,
            name=request.name,
            hwaccel=request.hwaccel,
        )
    except SessionError as e:
        raise HTTPException(status_code=409, detail=e.to_dict()) from e

    status = orchestrator.get_session_state(handle)
    return {
        **handle.to_dict(),
        "status": status.to_dict() if status else None,
        "stream_url": f"/api/streams/{handle.session_id}/stream",
    }


@router.get("/{session_id}")
async def get_stream(
    session_id: str,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Session details."""
    return _get_session(orchestrator, session_id).to_dict()


@router.delete("/{session_id}")
async def stop_stream(
    session_id: str,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Stop a session and release its pipelines."""
    session = _get_session(orchestrator, session_id)
    await orchestrator.stop_session(SessionHandle(session.session_id, session.channel.channel_id))
    return {"success": True, "status": session.status().to_dict()}


@router.get("/{session_id}/stream")
async def stream_session(
    session_id: str,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Processed MPEG-TS stream; survives pipeline reconfiguration."""
    session = _get_session(orchestrator, session_id)
    if session.state == SessionState.FAILED:
        raise HTTPException(
            status_code=409,
            detail=session.error.to_dict() if session.error else "Session failed",
        )
    if session.state == SessionState.STOPPED:
        raise HTTPException(status_code=410, detail="Session stopped")

    async def generate():
        try:
            async for chunk in session.stream():
                yield chunk
        except Exception as e:
            logger.error(f"Error streaming session {session_id[:8]}: {e}", exc_info=True)
            # Don't raise - let the client handle the connection error gracefully
            return

    return StreamingResponse(
        generate(),
        media_type="video/mp2t",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate, private",
            "X-Accel-Buffering": "no",
        },
    )
