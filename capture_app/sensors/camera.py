"""
Camera stream ownership for the capture flow.

CameraDevice acquires and releases the OpenCV stream (MediaSession) and binds
it to a PreviewSurface, which keeps the latest frame and streams it to the UI
as JPEG.
"""

from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import base64
import itertools
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import numpy as np

# Optional deps
try:
    import cv2  # type: ignore
except Exception:
    cv2 = None

from ..config import CameraSettings
from ..errors import CaptureFlowError, DeviceAccessError, ErrorKind, PlaybackAborted
from ..state import DeviceProfile

logger = logging.getLogger(__name__)

_PLACEHOLDER_JPEG = base64.b64decode(
    b"/9j/4AAQSkZJRgABAQAAAQABAAD/2wBDAAgGBgcGBQgHBwcJCQgKDBQNDAsLDBkSEw8UHRofHh0aHBwgJC4nICIsIxwcKDcpLDAxNDQ0Hyc5PTgyPC4zNDL/2wBDAQkJCQwLDBgNDRgyIRwhMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjIyMjL/wAARCAABAAEDASIAAhEBAxEB/8QAHwAAAQUBAQEBAQEAAAAAAAAAAAECAwQFBgcICQoL/8QAtRAAAgEDAwIEAwUFBAQAAAF9AQIDAAQRBRIhMUEGE1FhByJxFDKBkaEII0KxwRVS0fAkM2JyggkKFhcYGRolJicoKSo0NTY3ODk6Q0RFRkdISUpTVFVWV1hZWmNkZWZnaGlqc3R1dnd4eXqDhIWGh4iJipKTlJWWl5iZmqKjpKWmp6ipqrKztLW2t7i5usLDxMXGx8jJytLT1NXW19jZ2uHi4+Tl5ufo6erx8vP09fb3+Pn6/8QAHwEAAwEBAQEBAQEBAQAAAAAAAAECAwQFBgcICQoL/8QAtREAAgECBAQDBAcFBAQAAQJ3AAECAxEEBSExBhJBUQdhcRMiMoEIFEKRobHBCSMzUvAVYnLRChYkNOEl8RcYGRomJygpKjU2Nzg5OkNERUZHSElKU1RVVldYWVpjZGVmZ2hpanN0dXZ3eHl6goOEhYaHiImKkpOUlZaXmJmaoqOkpaanqKmqsrO0tba3uLm6wsPExcbHyMnK0tPU1dbX2Nna4uPk5ebn6Onq8vP09fb3+Pn6/9oADAMBAAIRAxEAPwD5/ooooA//2Q=="
)

_session_ids = itertools.count(1)


@dataclass(frozen=True)
class CameraConstraints:
    """Requested stream shape. Audio is never requested."""

    width: int
    height: int
    facing_mode: str = "user"
    fps: int = 30
    audio: bool = False

    @classmethod
    def for_profile(cls, settings: CameraSettings, profile: DeviceProfile) -> "CameraConstraints":
        if profile.is_mobile:
            return cls(settings.mobile_width, settings.mobile_height, settings.facing_mode, settings.fps)
        return cls(settings.ideal_width, settings.ideal_height, settings.facing_mode, settings.fps)


# Opens a video source for (camera_id, constraints). The returned object follows the
# cv2.VideoCapture interface: isOpened(), read(), set(), release().
CaptureOpener = Callable[[int, CameraConstraints], Awaitable[Any]]

# Receives (session, exception) when a bound stream stops delivering frames.
StreamFaultHandler = Callable[["MediaSession", Exception], None]


async def open_cv2_capture(camera_id: int, constraints: CameraConstraints) -> Any:
    """Open an OpenCV camera off the event loop."""
    if cv2 is None:
        raise DeviceAccessError(ErrorKind.DEVICE_NOT_SUPPORTED, log_message="OpenCV not available")

    def _open() -> Optional[Any]:
        cap = cv2.VideoCapture(camera_id)
        if not cap.isOpened():
            cap.release()
            return None
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        cap.set(cv2.CAP_PROP_FPS, constraints.fps)
        return cap

    loop = asyncio.get_running_loop()
    cap = await loop.run_in_executor(None, _open)
    if cap is None:
        raise DeviceAccessError(ErrorKind.DEVICE_NOT_FOUND, log_message=f"camera {camera_id} failed to open")
    return cap


def encode_jpeg(image: Optional[np.ndarray], quality: int) -> Optional[bytes]:
    if image is None or cv2 is None:
        return None
    try:
        success, encoded = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
        if not success:
            return None
        return encoded.tobytes()
    except Exception:
        logger.exception("Failed to encode JPEG frame")
        return None


class MediaSession:
    """Live camera stream handle. Owned by exactly one CameraDevice."""

    def __init__(self, capture: Any, constraints: CameraConstraints) -> None:
        self.session_id = next(_session_ids)
        self.constraints = constraints
        self.tracks_enabled = True
        self.surface: Optional["PreviewSurface"] = None
        self.released = False
        self._capture = capture
        # VideoCapture must not be released while another thread is inside read()
        self._io_lock = threading.Lock()

    def read(self) -> Optional[np.ndarray]:
        """Blocking frame read; None while tracks are disabled or the stream is stopped."""
        if self.released or not self.tracks_enabled:
            return None
        with self._io_lock:
            if self.released:
                return None
            ok, frame = self._capture.read()
        if not ok or frame is None:
            return None
        return frame

    def set_tracks_enabled(self, enabled: bool) -> None:
        self.tracks_enabled = enabled

    def stop_tracks(self) -> None:
        """Blocking; waits for an in-flight read before releasing the capture."""
        self.tracks_enabled = False
        with self._io_lock:
            self._capture.release()

    def __repr__(self) -> str:
        state = "released" if self.released else ("live" if self.tracks_enabled else "frozen")
        return f"MediaSession(id={self.session_id}, {self.constraints.width}x{self.constraints.height}, {state})"


class PreviewSurface:
    """Rendering target for a MediaSession: latest frame plus a JPEG preview feed."""

    def __init__(
        self,
        *,
        jpeg_quality: int = 70,
        frame_interval: float = 0.033,
        max_missed_reads: int = 60,
    ) -> None:
        self.jpeg_quality = jpeg_quality
        self.frame_interval = frame_interval
        self.max_missed_reads = max_missed_reads
        self.session: Optional[MediaSession] = None
        self._latest_frame: Optional[np.ndarray] = None
        self._latest_jpeg: Optional[bytes] = None
        self._subscribers: list[asyncio.Queue[bytes]] = []
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._fault_handler: Optional[StreamFaultHandler] = None

    def set_fault_handler(self, handler: Optional[StreamFaultHandler]) -> None:
        """Called once when the live stream of the bound session fails."""
        self._fault_handler = handler

    @property
    def video_width(self) -> int:
        return 0 if self._latest_frame is None else int(self._latest_frame.shape[1])

    @property
    def video_height(self) -> int:
        return 0 if self._latest_frame is None else int(self._latest_frame.shape[0])

    def attach(self, session: MediaSession) -> None:
        self.session = session

    async def play(self) -> None:
        """Pull the first frame and start the preview pump."""
        session = self.session
        if session is None or session.released:
            raise PlaybackAborted("surface has no live session")

        loop = asyncio.get_running_loop()
        frame = await loop.run_in_executor(None, session.read)
        if self.session is not session:
            raise PlaybackAborted("surface detached during playback start")
        if frame is not None:
            self._set_frame(frame)

        if not self._pump_task or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump(), name="preview-pump")

    async def detach(self) -> None:
        """Stop pumping frames. The last frame stays available for the frozen preview."""
        self.session = None
        task = self._pump_task
        self._pump_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping preview pump: %s", e)

    def clear(self) -> None:
        self._latest_frame = None
        self._latest_jpeg = None

    def snapshot(self) -> Optional[np.ndarray]:
        """Copy of the frame currently on screen, like drawing the video element to a canvas."""
        if self._latest_frame is None:
            return None
        return self._latest_frame.copy()

    def _set_frame(self, frame: np.ndarray) -> None:
        self._latest_frame = frame
        self._latest_jpeg = None

    async def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        session: Optional[MediaSession] = None
        missed = 0
        try:
            while self.session is not None:
                session = self.session
                if session.tracks_enabled and not session.released:
                    frame = await loop.run_in_executor(None, session.read)
                    live = self.session is session and session.tracks_enabled and not session.released
                    # a read racing capture must not overwrite the frozen frame
                    if frame is not None and live:
                        self._set_frame(frame)
                        missed = 0
                    elif frame is None and live:
                        missed += 1
                        if self.max_missed_reads and missed >= self.max_missed_reads:
                            raise DeviceAccessError(
                                ErrorKind.UNKNOWN_DEVICE_ERROR,
                                log_message=f"stream returned no frames for {missed} reads",
                            )
                self._broadcast_frame(self._current_jpeg())
                await asyncio.sleep(self.frame_interval)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Preview pump crashed")
            self._report_fault(session, exc)

    def _report_fault(self, session: Optional[MediaSession], exc: Exception) -> None:
        if session is None or self.session is not session or self._fault_handler is None:
            return
        try:
            self._fault_handler(session, exc)
        except Exception:
            logger.exception("Stream fault handler failed")

    def _current_jpeg(self) -> bytes:
        if self._latest_jpeg is None and self._latest_frame is not None:
            self._latest_jpeg = encode_jpeg(self._latest_frame, self.jpeg_quality)
        return self._latest_jpeg or _PLACEHOLDER_JPEG

    def _broadcast_frame(self, frame: bytes) -> None:
        for q in list(self._subscribers):
            if q.full():
                try:
                    q.get_nowait()
                except QueueEmpty:
                    pass
            q.put_nowait(frame)

    async def preview_stream(self) -> AsyncIterator[bytes]:
        """Stream preview frames; starts with whatever is on screen now."""
        q: asyncio.Queue[bytes] = asyncio.Queue(maxsize=2)
        q.put_nowait(self._current_jpeg())
        self._subscribers.append(q)
        try:
            while True:
                frame = await q.get()
                yield frame
        finally:
            self._subscribers.remove(q)


class CameraDevice:
    """Acquires, binds and releases camera streams. At most one session is open."""

    def __init__(self, settings: CameraSettings, *, opener: Optional[CaptureOpener] = None) -> None:
        self.settings = settings
        self._opener = opener or open_cv2_capture
        self._open_session: Optional[MediaSession] = None
        self._pending = False

    @property
    def open_session(self) -> Optional[MediaSession]:
        return self._open_session

    @property
    def busy(self) -> bool:
        return self._pending or self._open_session is not None

    async def acquire(self, constraints: CameraConstraints) -> MediaSession:
        """Request the camera stream. May suspend on an OS permission prompt."""
        if self.busy:
            raise RuntimeError("camera session already pending or open")

        logger.info(
            "Requesting camera %d (%dx%d, facing=%s, audio=%s)",
            self.settings.camera_id,
            constraints.width,
            constraints.height,
            constraints.facing_mode,
            constraints.audio,
        )
        self._pending = True
        started = time.monotonic()
        try:
            capture = await self._opener(self.settings.camera_id, constraints)
        except CaptureFlowError:
            raise
        except PermissionError as exc:
            raise DeviceAccessError(ErrorKind.PERMISSION_DENIED, log_message=str(exc)) from exc
        except Exception as exc:
            raise DeviceAccessError(ErrorKind.UNKNOWN_DEVICE_ERROR, log_message=f"camera open failed: {exc}") from exc
        finally:
            self._pending = False

        session = MediaSession(capture, constraints)
        self._open_session = session
        logger.info("Camera acquired: %r (%.0fms)", session, (time.monotonic() - started) * 1000)
        return session

    async def bind(self, session: MediaSession, surface: PreviewSurface) -> None:
        """Attach the session to a surface and start playback."""
        surface.attach(session)
        session.surface = surface
        try:
            await surface.play()
        except PlaybackAborted as exc:
            logger.info("Playback start aborted for %r: %s", session, exc)
        except CaptureFlowError:
            raise
        except Exception as exc:
            raise DeviceAccessError(
                ErrorKind.UNKNOWN_DEVICE_ERROR,
                log_message=f"playback failed: {exc}",
            ) from exc

    async def release(self, session: Optional[MediaSession]) -> bool:
        """Stop tracks and unbind the surface. Returns False when there was nothing to release."""
        if session is None or session.released:
            return False
        session.released = True

        surface = session.surface
        session.surface = None
        if surface is not None:
            await surface.detach()

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, session.stop_tracks)
        except Exception as e:
            logger.warning("Error stopping camera tracks for %r: %s", session, e)

        if self._open_session is session:
            self._open_session = None
        logger.info("Camera released: %r", session)
        return True


__all__ = [
    "CameraConstraints",
    "CameraDevice",
    "CaptureOpener",
    "MediaSession",
    "PreviewSurface",
    "StreamFaultHandler",
    "encode_jpeg",
    "open_cv2_capture",
]
