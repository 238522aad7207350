"""Captured still images and the checks they must pass before submission."""
from __future__ import annotations

import base64
import logging
import mimetypes
from dataclasses import dataclass
from typing import Optional

import numpy as np

try:
    import cv2  # type: ignore
except Exception:
    cv2 = None

from .errors import ErrorKind, FileSelectionError, FrameError
from .state import EntryMode

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:"
BASE64_MARKER = ";base64,"


@dataclass(frozen=True)
class CapturedFrame:
    """Still image pending submission, held as a data URL."""

    data_url: str
    mime_type: str
    size_bytes: int
    source: EntryMode
    width: int = 0
    height: int = 0

    @property
    def payload(self) -> str:
        _, _, encoded = self.data_url.partition(BASE64_MARKER)
        return encoded


def to_data_url(content: bytes, mime_type: str) -> str:
    return f"{DATA_URL_PREFIX}{mime_type}{BASE64_MARKER}{base64.b64encode(content).decode('ascii')}"


def encode_still(image: Optional[np.ndarray], *, quality: int = 80, min_payload_chars: int = 100) -> CapturedFrame:
    """Encode a camera frame into a JPEG CapturedFrame.

    Zero-sized images mean the stream has not produced a frame yet and are
    rejected instead of producing a degenerate still.
    """
    if image is None or image.size == 0 or image.shape[0] == 0 or image.shape[1] == 0:
        raise FrameError(ErrorKind.INVALID_FRAME, log_message="surface reported zero dimensions")
    if cv2 is None:
        raise FrameError(ErrorKind.INVALID_FRAME, log_message="OpenCV unavailable for JPEG encoding")

    success, encoded = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not success:
        raise FrameError(
            ErrorKind.INVALID_FRAME,
            "Captured image is empty. Please try again.",
            log_message="cv2.imencode failed",
        )
    content = encoded.tobytes()
    frame = CapturedFrame(
        data_url=to_data_url(content, "image/jpeg"),
        mime_type="image/jpeg",
        size_bytes=len(content),
        source=EntryMode.CAMERA,
        width=int(image.shape[1]),
        height=int(image.shape[0]),
    )
    if len(frame.payload) < min_payload_chars:
        raise FrameError(
            ErrorKind.INVALID_FRAME,
            "Captured image is empty. Please try again.",
            log_message=f"encoded payload too short ({len(frame.payload)} chars)",
        )
    return frame


def frame_from_file(
    content: bytes,
    *,
    content_type: Optional[str],
    filename: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    min_payload_chars: int = 100,
) -> CapturedFrame:
    """Turn a gallery file into a CapturedFrame, rejecting anything that is not a usable image."""
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if not mime and filename:
        mime = (mimetypes.guess_type(filename)[0] or "").lower()
    if not mime.startswith("image/"):
        raise FileSelectionError(ErrorKind.INVALID_FILE_TYPE, log_message=f"rejected content type {mime!r}")

    if len(content) > max_bytes:
        raise FileSelectionError(
            ErrorKind.FILE_TOO_LARGE,
            log_message=f"file is {len(content)} bytes (limit {max_bytes})",
        )

    data_url = to_data_url(content, mime)
    payload = data_url.partition(BASE64_MARKER)[2]
    if len(payload) < min_payload_chars:
        raise FileSelectionError(
            ErrorKind.FILE_READ_FAILURE,
            log_message=f"decoded payload too short ({len(payload)} chars)",
        )

    width = height = 0
    if cv2 is not None:
        try:
            decoded = cv2.imdecode(np.frombuffer(content, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
        except cv2.error as exc:
            raise FileSelectionError(ErrorKind.FILE_READ_FAILURE, log_message=f"imdecode failed: {exc}") from exc
        if decoded is None or decoded.size == 0:
            raise FileSelectionError(ErrorKind.FILE_READ_FAILURE, log_message="image data could not be decoded")
        height, width = int(decoded.shape[0]), int(decoded.shape[1])

    return CapturedFrame(
        data_url=data_url,
        mime_type=mime,
        size_bytes=len(content),
        source=EntryMode.GALLERY,
        width=width,
        height=height,
    )


def validate_frame(frame: Optional[CapturedFrame], *, min_payload_chars: int = 100) -> CapturedFrame:
    """Check a frame is a well-formed image data URL with real content."""
    if frame is None:
        raise FrameError(
            ErrorKind.INVALID_FRAME,
            "No photo to analyze. Please capture or select a photo.",
            log_message="no frame held",
        )
    if not frame.data_url.startswith(f"{DATA_URL_PREFIX}image/") or BASE64_MARKER not in frame.data_url:
        raise FrameError(
            ErrorKind.INVALID_FRAME,
            "Invalid image format. Please capture or select a photo.",
            log_message="frame is not an image data URL",
        )
    if len(frame.payload) < min_payload_chars:
        raise FrameError(
            ErrorKind.INVALID_FRAME,
            "Captured image is empty. Please try again.",
            log_message=f"payload too short ({len(frame.payload)} chars)",
        )
    return frame


__all__ = ["CapturedFrame", "encode_still", "frame_from_file", "validate_frame", "to_data_url"]
