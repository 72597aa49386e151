import asyncio
import base64
import binascii
import logging
import time
from io import BytesIO
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError
from pydantic import BaseModel

import config

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    pass


class CaptureBusyError(CaptureError):
    def __init__(self, message: str = "A photo is already being processed. Please wait a moment."):
        super().__init__(message)


class CapturedImage(BaseModel):
    base64: str
    width: int
    height: int

    @property
    def data_url(self) -> str:
        return f"data:image/jpeg;base64,{self.base64}"


def decode_data_url(value: str) -> bytes:
    payload = value.split(",", 1)[1] if value.startswith("data:") and "," in value else value
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise CaptureError("That image could not be read. Please try another photo.")


def pil_image_to_b64(img: Image.Image, quality: int = config.CAPTURE_JPEG_QUALITY) -> str:
    buf = BytesIO()
    img.save(buf, format='JPEG', quality=quality)
    return base64.b64encode(buf.getvalue()).decode('utf-8')


def encode_still(raw: bytes, max_edge: int = config.CAPTURE_MAX_EDGE_PX) -> CapturedImage:
    """Decode any Pillow-readable image and re-encode it as an upright RGB JPEG."""
    try:
        img = Image.open(BytesIO(raw))
        img = ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, OSError):
        raise CaptureError("That image could not be read. Please try another photo.")
    if img.mode != "RGB":
        img = img.convert("RGB")
    if max(img.size) > max_edge:
        img.thumbnail((max_edge, max_edge), Image.LANCZOS)
    return CapturedImage(base64=pil_image_to_b64(img), width=img.width, height=img.height)


class CaptureProvider:
    """Turns an upload or a camera frame into an encoded still. One capture in flight at a time."""

    def __init__(self, debounce_ms: int = config.CAPTURE_DEBOUNCE_MS):
        self.debounce_ms = debounce_ms
        self._busy = False
        self._last_frame_at: Optional[float] = None

    async def _encode(self, raw: bytes) -> CapturedImage:
        if self._busy:
            raise CaptureBusyError()
        self._busy = True
        try:
            return await asyncio.to_thread(encode_still, raw)
        finally:
            self._busy = False

    async def capture_file(self, raw: bytes) -> CapturedImage:
        if not raw:
            raise CaptureError("No image was received.")
        return await self._encode(raw)

    async def capture_data_url(self, value: str) -> CapturedImage:
        return await self._encode(decode_data_url(value))

    async def capture_frame(self, raw: bytes) -> Optional[CapturedImage]:
        """Camera frames arriving faster than the debounce window are dropped (returns None)."""
        now = time.monotonic()
        if self._busy:
            return None
        if self._last_frame_at is not None and (now - self._last_frame_at) * 1000 < self.debounce_ms:
            return None
        self._last_frame_at = now
        return await self._encode(raw)
