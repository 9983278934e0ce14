import hashlib
import uuid

from core.state import PhotoRecord
from vision.device import PhotoPayload

EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}


def new_request_id() -> str:
    return f"photo_req_{uuid.uuid4().hex[:12]}"


def build_photo_record(user_id: str, payload: PhotoPayload) -> PhotoRecord:
    """Freeze a camera payload into the immutable record kept in photo history.

    The sha256 lets diagnostics tell re-sent frames apart from fresh ones.
    """
    request_id = payload.request_id or new_request_id()
    ext = EXTENSIONS.get(payload.mime_type, "bin")
    return PhotoRecord(
        request_id=request_id,
        data=bytes(payload.data),
        timestamp=payload.timestamp,
        mime_type=payload.mime_type,
        size=len(payload.data),
        sha256=hashlib.sha256(payload.data).hexdigest(),
        user_id=user_id,
        filename=payload.filename or f"{request_id}.{ext}",
    )
