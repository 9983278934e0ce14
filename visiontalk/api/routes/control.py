from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

router = APIRouter()


class ButtonPress(BaseModel):
    user_id: str
    press_type: str = "short"


class StopRequest(BaseModel):
    user_id: str


@router.post("/press")
async def press_button(body: ButtonPress, request: Request):
    """Simulate a button press. A press while busy is dropped, same as on the device."""
    registry = request.app.state.registry
    session = registry.get(body.user_id)
    if session is None or session.device is None:
        raise HTTPException(status_code=404, detail=f"No active session for user {body.user_id}")

    orchestrator = request.app.state.orchestrator
    accepted = orchestrator.press_in_background(body.user_id, body.press_type)
    return {"accepted": accepted, "user_id": body.user_id}


@router.post("/stop")
async def stop_audio(body: StopRequest, request: Request):
    """Stop playback for a user (queued behind what is already playing)."""
    session = request.app.state.registry.get(body.user_id)
    if session is None or session.device is None:
        raise HTTPException(status_code=404, detail=f"No active session for user {body.user_id}")
    await request.app.state.orchestrator.speech.stop(session)
    return {"status": "stopped", "user_id": body.user_id}
