import asyncio
import io
import time
from typing import Optional

from loguru import logger
from PIL import Image

from vision.device import CaptureDevice, DeviceCapabilities, PhotoPayload
from vision.photos import new_request_id

SIZE_PRESETS = {
    "small": (640, 480),
    "medium": (1280, 960),
    "large": (2304, 1296),
}


class PiCamera(CaptureDevice):
    """RPi Camera Module 3 interface using picamera2.

    Frames are JPEG-encoded with Pillow so the rest of the pipeline only ever
    sees compressed photo bytes, the same as a remote glasses camera.
    """

    def __init__(self, enabled: bool = True, jpeg_quality: int = 85):
        self.enabled = enabled
        self.jpeg_quality = jpeg_quality
        self._camera = None
        self._resolution: Optional[tuple] = None
        self._import_failed = False

    def capabilities(self) -> DeviceCapabilities:
        has_camera = self.enabled and not self._import_failed
        return DeviceCapabilities(has_camera=has_camera, has_speaker=True, model="rpi-camera-module-3")

    def _ensure_camera(self, resolution: tuple):
        """Lazily initialize (or reconfigure) the camera."""
        if self._camera is not None and self._resolution == resolution:
            return

        try:
            from picamera2 import Picamera2
            from libcamera import controls
        except ImportError:
            self._import_failed = True
            raise RuntimeError("camera unavailable: picamera2 not installed")

        if self._camera is None:
            self._camera = Picamera2()
        else:
            self._camera.stop()

        config = self._camera.create_still_configuration(
            main={"size": resolution, "format": "RGB888"}
        )
        self._camera.configure(config)
        self._camera.start()
        self._resolution = resolution

        # Enable continuous autofocus on RPi Camera Module 3
        try:
            self._camera.set_controls({
                "AfMode": controls.AfModeEnum.Continuous,
                "AfSpeed": controls.AfSpeedEnum.Fast,
            })
        except Exception as e:
            logger.warning("Could not enable autofocus ({}). Camera may not support AF.", e)

        logger.info("Camera initialized: {}x{}", *resolution)

    async def request_photo(self, size_hint: str = "medium") -> PhotoPayload:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._capture_sync, size_hint)

    def _capture_sync(self, size_hint: str) -> PhotoPayload:
        if not self.enabled:
            raise RuntimeError("camera disabled")
        resolution = SIZE_PRESETS.get(size_hint, SIZE_PRESETS["medium"])
        self._ensure_camera(resolution)

        # Trigger autofocus and wait for it to lock
        try:
            from libcamera import controls
            self._camera.set_controls({"AfTrigger": controls.AfTriggerEnum.Start})
            time.sleep(0.5)
        except Exception:
            pass  # AF not available, continue anyway

        frame = self._camera.capture_array()
        logger.debug("Captured frame: shape={}", frame.shape)

        # picamera2 capture_array() returns BGR despite RGB888 config
        img = Image.fromarray(frame[:, :, ::-1])
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=self.jpeg_quality)
        return PhotoPayload(
            data=buf.getvalue(),
            mime_type="image/jpeg",
            request_id=new_request_id(),
        )

    def close(self):
        if self._camera is not None:
            try:
                self._camera.stop()
                self._camera.close()
            except Exception as e:
                logger.debug("Error closing camera: {}", e)
            self._camera = None
            self._resolution = None
