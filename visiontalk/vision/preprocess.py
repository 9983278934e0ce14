import asyncio
import io
from typing import Optional

from loguru import logger
from PIL import Image, ImageOps

from core.events import EventRecorder
from core.state import PhotoRecord


class CenterCropPreprocessor:
    """Crops the analysis input to a square in the middle of the frame.

    Glasses cameras see far more than the wearer is looking at; a centered
    square whose side is `factor` of the shorter edge gives the vision model
    the object in focus. Only the bytes sent for analysis change, the cached
    photo stays raw.
    """

    def __init__(self, factor: float = 0.6, quality: int = 90, recorder: Optional[EventRecorder] = None):
        self.factor = min(1.0, max(0.1, factor))
        self.quality = quality
        self.recorder = recorder

    def _record(self, stage: str, detail: Optional[dict] = None, error: Optional[str] = None):
        if self.recorder:
            self.recorder.record(stage, detail, error)

    async def process(self, photo: PhotoRecord) -> tuple[bytes, str]:
        """Return (image_bytes, mime_type) to send for analysis."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._process_sync, photo)

    def _process_sync(self, photo: PhotoRecord) -> tuple[bytes, str]:
        if self.factor >= 1.0:
            self._record("photo_center_crop_skipped", {"reason": "factor_full_frame"})
            return photo.data, photo.mime_type
        try:
            img = Image.open(io.BytesIO(photo.data))
            img = ImageOps.exif_transpose(img)
            w, h = img.size
            if not w or not h:
                self._record("photo_center_crop_skipped", {"reason": "no_dimensions"})
                return photo.data, photo.mime_type

            side = max(1, int(min(w, h) * self.factor))
            left, top = max(0, (w - side) // 2), max(0, (h - side) // 2)
            cropped = img.crop((left, top, left + side, top + side))
            if cropped.mode not in ("RGB", "L"):
                cropped = cropped.convert("RGB")

            buf = io.BytesIO()
            cropped.save(buf, format="JPEG", quality=self.quality)
        except Exception as e:
            logger.warning("Center crop failed ({}). Using the original photo.", e)
            self._record("photo_center_crop_error", {"request_id": photo.request_id}, error=str(e) or type(e).__name__)
            return photo.data, photo.mime_type

        logger.debug("Center crop {}x{} -> {}x{}", w, h, side, side)
        self._record("photo_center_crop_applied", {
            "left": left,
            "top": top,
            "width": side,
            "height": side,
            "factor": self.factor,
        })
        return buf.getvalue(), "image/jpeg"
