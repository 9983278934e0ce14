from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from core.errors import SpeechFailure

router = APIRouter()


def _resolve_session(request: Request, user_id: Optional[str]):
    """Explicit user, or the first active session."""
    registry = request.app.state.registry
    if user_id is None:
        active = registry.active_user_ids()
        if not active:
            raise HTTPException(status_code=404, detail="No active sessions")
        user_id = active[0]
    session = registry.get(user_id)
    if session is None or session.device is None:
        raise HTTPException(status_code=404, detail=f"No session for user {user_id}")
    return session


@router.get("/audio/active-sessions")
async def active_sessions(request: Request):
    users = request.app.state.registry.active_user_ids()
    return {"count": len(users), "users": users}


@router.post("/audio/tts")
async def tts_only(
    request: Request,
    text: str = Query(default="TTS only diagnostic test"),
    user_id: Optional[str] = None,
):
    """Speak a test utterance through the user's audio lane."""
    session = _resolve_session(request, user_id)
    recorder = request.app.state.recorder
    speech = request.app.state.orchestrator.speech

    recorder.record("diag_tts_start", {"user_id": session.user_id, "text": text})
    try:
        result = await speech.speak(session, text, tag="diag_tts")
    except SpeechFailure as e:
        recorder.record("diag_tts_error", {"user_id": session.user_id}, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True, "user_id": session.user_id, "suppressed": result.suppressed}


@router.post("/audio/chime")
async def chime_only(
    request: Request,
    volume: float = Query(default=1.0),
    user_id: Optional[str] = None,
):
    """Queue the capture chime for the user."""
    session = _resolve_session(request, user_id)
    volume = min(max(volume, 0.0), 1.0)
    config = request.app.state.config_manager.config
    future = request.app.state.orchestrator.speech.play_chime(
        session, config.audio.chime_source, volume, tag="diag_chime"
    )
    if future is None:
        raise HTTPException(status_code=404, detail="No audio device")
    try:
        await future
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True, "user_id": session.user_id, "volume": volume}


@router.post("/events/clear")
async def clear_events(request: Request):
    recorder = request.app.state.recorder
    recorder.clear()
    recorder.record("diag_events_clear")
    return {"ok": True}
