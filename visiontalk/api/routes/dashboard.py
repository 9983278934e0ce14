from fastapi import APIRouter, HTTPException, Query, Request, Response

router = APIRouter()


def _session_or_404(request: Request, user_id: str):
    session = request.app.state.registry.get(user_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for user {user_id}")
    return session


@router.get("/events")
async def get_events(request: Request, limit: int = Query(default=100, ge=0, le=1000)):
    """Pipeline event timeline, oldest first."""
    recorder = request.app.state.recorder
    return {"events": [e.to_dict() for e in recorder.snapshot(limit)]}


@router.get("/sessions")
async def list_sessions(request: Request):
    registry = request.app.state.registry
    sessions = [registry.get(uid) for uid in registry.user_ids()]
    return {"count": len(sessions), "sessions": [s.summary() for s in sessions if s is not None]}


@router.get("/sessions/{user_id}")
async def get_session(user_id: str, request: Request):
    session = _session_or_404(request, user_id)
    summary = session.summary()
    summary["last_events"] = [e.to_dict() for e in request.app.state.recorder.for_user(user_id, 10)]
    return summary


@router.get("/sessions/{user_id}/photos")
async def list_photos(user_id: str, request: Request):
    """Photo history metadata, newest first. No bytes."""
    session = _session_or_404(request, user_id)
    return [p.metadata() for p in reversed(session.photo_history)]


@router.get("/sessions/{user_id}/photos/{request_id}/info")
async def photo_info(user_id: str, request_id: str, request: Request):
    photo = _session_or_404(request, user_id).find_photo(request_id)
    if photo is None:
        raise HTTPException(status_code=404, detail="Photo not found")
    return photo.metadata()


@router.get("/sessions/{user_id}/photos/{request_id}")
async def photo_bytes(user_id: str, request_id: str, request: Request):
    photo = _session_or_404(request, user_id).find_photo(request_id)
    if photo is None:
        raise HTTPException(status_code=404, detail="Photo not found")
    return Response(
        content=photo.data,
        media_type=photo.mime_type,
        headers={"Cache-Control": "no-cache", "ETag": f'"{photo.request_id}"'},
    )


@router.get("/sessions/{user_id}/analysis/latest")
async def latest_analysis(user_id: str, request: Request):
    session = _session_or_404(request, user_id)
    if session.latest_analysis is None:
        raise HTTPException(status_code=404, detail="No analysis yet")
    return session.latest_analysis.to_dict()


@router.get("/sessions/{user_id}/analysis/{request_id}")
async def analysis_for_photo(user_id: str, request_id: str, request: Request):
    session = _session_or_404(request, user_id)
    record = session.analysis_by_request_id.get(request_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No analysis for this photo")
    return {"request_id": request_id, **record.to_dict()}
