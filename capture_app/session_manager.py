"""Capture/upload state machine: camera lifecycle, gallery fallback, preview and submission."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .backend.http_client import AnalysisHttpClient
from .backend.result_store import ResultStore
from .config import Settings, get_settings
from .errors import (
    USER_MESSAGES,
    CaptureFlowError,
    DeviceAccessError,
    ErrorKind,
    FileSelectionError,
    FrameError,
)
from .frames import CapturedFrame, encode_still, frame_from_file, validate_frame
from .navigation import NavigationRequest, Navigator
from .selector import EntryFlags, EntryStrategy, build_entry, resolve_entry_mode
from .sensors.camera import CameraConstraints, CameraDevice, MediaSession, PreviewSurface
from .state import ControllerEvent, DeviceProfile, EntryMode, SessionPhase

logger = logging.getLogger(__name__)

# Asks the UI to open its file picker. Returns False when no picker is mounted.
FilePicker = Callable[[], Awaitable[bool]]

PICKER_UNAVAILABLE_MESSAGE = "Unable to open the photo picker. Please try again."


class CaptureSessionManager:
    """Coordinates the camera, the preview surface, submission and UI state updates.

    One instance per capture screen. The entry mode is decided once by
    `activate()`; `teardown()` or `go_back()` end the instance's lifetime.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        profile: Optional[DeviceProfile] = None,
        camera: Optional[CameraDevice] = None,
        surface: Optional[PreviewSurface] = None,
        http_client: Optional[AnalysisHttpClient] = None,
        store: Optional[ResultStore] = None,
        navigator: Optional[Navigator] = None,
        file_picker: Optional[FilePicker] = None,
        ui_subscribers: Optional[List[asyncio.Queue[ControllerEvent]]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.profile = profile or DeviceProfile()
        self._lock = asyncio.Lock()
        self._phase: SessionPhase = SessionPhase.IDLE
        self._phase_started_at: float = time.time()
        self.phase_history: List[SessionPhase] = [SessionPhase.IDLE]
        self._ui_subscribers = ui_subscribers if ui_subscribers is not None else []

        self._camera = camera or CameraDevice(self.settings.camera)
        self.surface = surface or PreviewSurface(
            jpeg_quality=self.settings.camera.preview_jpeg_quality,
            frame_interval=self.settings.camera.preview_fps_limit,
            max_missed_reads=self.settings.camera.max_missed_reads,
        )
        self.surface.set_fault_handler(self._on_stream_fault)
        self._http_client = http_client or AnalysisHttpClient(self.settings)
        self._store = store if store is not None else ResultStore(self.settings.result_store_dir)
        self.navigator = navigator or Navigator(
            results_route=self.settings.results_route,
            back_route=self.settings.back_route,
        )
        if not self.navigator.has_handler:
            self.navigator.set_handler(self._broadcast_navigation)
        self._file_picker = file_picker

        self._entry: Optional[EntryStrategy] = None
        self._session: Optional[MediaSession] = None
        self._frame: Optional[CapturedFrame] = None
        self._error: Optional[str] = None
        self._inline_error: Optional[str] = None
        self._error_kind: Optional[ErrorKind] = None
        self._acquiring = False
        self._closed = False
        # Bumped on teardown/back so late-resolving work can tell it is stale.
        self._generation = 0
        self._fault_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def entry_mode(self) -> Optional[EntryMode]:
        return self._entry.mode if self._entry else None

    @property
    def frame(self) -> Optional[CapturedFrame]:
        return self._frame

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def inline_error(self) -> Optional[str]:
        return self._inline_error

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self._error_kind

    @property
    def media_session(self) -> Optional[MediaSession]:
        return self._session

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> Dict[str, Any]:
        last = self.navigator.last
        return {
            "phase": self._phase.value,
            "entry_mode": self.entry_mode.value if self.entry_mode else None,
            "device": {"mobile": self.profile.is_mobile},
            "frame": self._frame_summary(),
            "error": self._error,
            "inline_error": self._inline_error,
            "error_kind": self._error_kind.value if self._error_kind else None,
            "closed": self._closed,
            "navigation": {"route": last.route} if last else None,
        }

    # ------------------------------------------------------------
    # UI event fan-out
    # ------------------------------------------------------------

    def register_ui(self, maxsize: int = 8) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=maxsize)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    async def _broadcast(self, event: ControllerEvent) -> None:
        """Broadcast event to all UI subscribers, dropping the oldest when a queue is full."""
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)

    async def _broadcast_navigation(self, request: NavigationRequest) -> None:
        await self._broadcast(
            ControllerEvent(type="navigate", phase=self._phase, data={"route": request.route, "state": request.state})
        )

    async def _advance_phase(
        self,
        phase: SessionPhase,
        *,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        previous = self._phase
        self._phase = phase
        self._phase_started_at = time.time()
        self.phase_history.append(phase)
        logger.info("Phase %s -> %s%s", previous.value, phase.value, f" ({error})" if error else "")
        await self._broadcast(ControllerEvent(type="state", data=data or {}, phase=phase, error=error))

    async def _show_inline_error(self, exc: CaptureFlowError) -> None:
        """Report an error without leaving the current phase."""
        self._inline_error = exc.user_message
        self._error_kind = exc.kind
        await self._broadcast(
            ControllerEvent(
                type="inline_error",
                phase=self._phase,
                data={"kind": exc.kind.value},
                error=exc.user_message,
            )
        )

    async def _show_error(self, message: str, kind: Optional[ErrorKind]) -> None:
        """Full-screen error with Try Again / Go Back."""
        self._error = message
        self._error_kind = kind
        await self._advance_phase(
            SessionPhase.ERROR,
            error=message,
            data={"kind": kind.value if kind else None},
        )

    def _stale(self, generation: int) -> bool:
        return self._closed or generation != self._generation

    def _frame_summary(self) -> Optional[Dict[str, Any]]:
        frame = self._frame
        if frame is None:
            return None
        return {
            "mime_type": frame.mime_type,
            "size_bytes": frame.size_bytes,
            "source": frame.source.value,
            "width": frame.width,
            "height": frame.height,
        }

    # ------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------

    async def activate(self, mode_hint: Optional[str] = None, flags: Optional[EntryFlags] = None) -> EntryMode:
        """Pick the entry mode once and run its first transition."""
        if self._entry is not None:
            logger.info("Capture session already activated (%s); ignoring", self._entry.mode.value)
            return self._entry.mode
        if self._closed:
            raise RuntimeError("capture session already closed")

        mode = resolve_entry_mode(mode_hint, flags)
        self._entry = build_entry(mode)
        logger.info("Capture session activated (mode=%s, mobile=%s)", mode.value, self.profile.is_mobile)
        await self._entry.start(self)
        return mode

    async def start_camera(self) -> bool:
        """Idle/Error -> Loading, then acquire and bind the camera."""
        async with self._lock:
            if self._closed:
                return False
            if self._acquiring or self._camera.busy:
                logger.info("Camera acquisition already pending or open; ignoring")
                return False
            if self._phase not in (SessionPhase.IDLE, SessionPhase.ERROR):
                logger.warning("Cannot start camera from phase %s", self._phase.value)
                return False
            self._acquiring = True
            self._error = None
            self._inline_error = None
            self._error_kind = None
            generation = self._generation
            await self._advance_phase(SessionPhase.LOADING)

        try:
            await self._acquire_and_bind(generation)
        finally:
            self._acquiring = False
        return self._phase == SessionPhase.LIVE_PREVIEW

    async def _acquire_and_bind(self, generation: int) -> None:
        constraints = CameraConstraints.for_profile(self.settings.camera, self.profile)
        try:
            session = await self._camera.acquire(constraints)
        except DeviceAccessError as exc:
            if self._stale(generation):
                logger.info("Camera acquisition failed after teardown: %s", exc)
                return
            logger.error("Camera access failed: %s", exc)
            async with self._lock:
                await self._show_error(exc.user_message, exc.kind)
            return

        if self._stale(generation):
            logger.warning("Camera resolved after teardown; releasing %r", session)
            await self._camera.release(session)
            return
        self._session = session

        warmup = self.settings.phases.camera_warmup_ms / 1000.0
        if warmup > 0:
            await asyncio.sleep(warmup)
        if self._stale(generation) or self._session is not session:
            await self._camera.release(session)
            return

        try:
            await self._camera.bind(session, self.surface)
        except DeviceAccessError as exc:
            logger.error("Camera playback failed: %s", exc)
            await self._release_session()
            if not self._stale(generation):
                async with self._lock:
                    await self._show_error(exc.user_message, exc.kind)
            return

        async with self._lock:
            if self._stale(generation) or self._session is not session:
                await self._camera.release(session)
                return
            if self._phase == SessionPhase.LOADING:
                await self._advance_phase(
                    SessionPhase.LIVE_PREVIEW,
                    data={"width": self.surface.video_width, "height": self.surface.video_height},
                )

    async def open_gallery(self) -> bool:
        """Ask the UI to open its file picker after a deferred tick."""
        defer = self.settings.phases.picker_defer_ms / 1000.0
        await asyncio.sleep(defer)
        if self._closed:
            return False

        opened = False
        if self._file_picker is not None:
            try:
                opened = await self._file_picker()
            except Exception:
                logger.exception("File picker request failed")
                opened = False

        if opened:
            logger.info("File picker opened; waiting for selection")
            return True

        logger.error("File picker unavailable; returning to previous screen")
        async with self._lock:
            await self._show_error(PICKER_UNAVAILABLE_MESSAGE, ErrorKind.FILE_READ_FAILURE)
        await self.go_back()
        return False

    async def request_picker(self) -> bool:
        """Tell connected UIs to open their file input. The selection arrives through select_file()."""
        if self._closed:
            return False
        await self._broadcast(ControllerEvent(type="picker", phase=self._phase, data={"action": "open"}))
        return True

    def _on_stream_fault(self, session: MediaSession, exc: Exception) -> None:
        self._fault_task = asyncio.create_task(self._handle_stream_fault(session, exc), name="stream-fault")

    async def _handle_stream_fault(self, session: MediaSession, exc: Exception) -> None:
        """Live stream died: release it and show the error view."""
        async with self._lock:
            if self._closed or self._session is not session:
                return
            if self._phase not in (SessionPhase.LOADING, SessionPhase.LIVE_PREVIEW):
                return
            if isinstance(exc, CaptureFlowError):
                message, kind = exc.user_message, exc.kind
            else:
                message, kind = USER_MESSAGES[ErrorKind.UNKNOWN_DEVICE_ERROR], ErrorKind.UNKNOWN_DEVICE_ERROR
            logger.error("Camera stream lost (%s): %s", kind.value, exc)
            await self._release_session()
            await self._show_error(message, kind)

    # ------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------

    async def select_file(
        self,
        content: bytes,
        *,
        content_type: Optional[str],
        filename: Optional[str] = None,
    ) -> bool:
        """Gallery selection: (Idle|Loading) -> CapturedPreview."""
        async with self._lock:
            if self._closed:
                return False
            if self.entry_mode is not EntryMode.GALLERY:
                logger.warning("File selection outside gallery mode; ignoring")
                return False
            if self._phase not in (SessionPhase.IDLE, SessionPhase.LOADING):
                logger.warning("Ignoring file selection in phase %s", self._phase.value)
                return False
            try:
                frame = frame_from_file(
                    content,
                    content_type=content_type,
                    filename=filename,
                    max_bytes=self.settings.upload.max_file_bytes,
                    min_payload_chars=self.settings.upload.min_payload_chars,
                )
            except FileSelectionError as exc:
                logger.warning("Gallery file rejected (%s): %s", exc.kind.value, exc)
                await self._show_inline_error(exc)
                return False

            self._frame = frame
            self._inline_error = None
            self._error_kind = None
            logger.info("Gallery image selected (%s, %d bytes)", frame.mime_type, frame.size_bytes)
            await self._advance_phase(SessionPhase.CAPTURED_PREVIEW, data=self._frame_summary())
            return True

    async def capture(self) -> bool:
        """LivePreview -> CapturedPreview. Tracks are disabled, not released, so the frame stays frozen."""
        async with self._lock:
            if self._phase != SessionPhase.LIVE_PREVIEW or self._session is None:
                logger.warning("Capture ignored in phase %s", self._phase.value)
                return False

            session = self._session
            try:
                if self.surface.video_width == 0 or self.surface.video_height == 0:
                    raise FrameError(ErrorKind.INVALID_FRAME, log_message="surface reported zero dimensions")
                # freeze first so the preview keeps showing exactly the still being encoded
                session.set_tracks_enabled(False)
                image = self.surface.snapshot()
                loop = asyncio.get_running_loop()
                frame = await loop.run_in_executor(
                    None,
                    functools.partial(
                        encode_still,
                        image,
                        quality=self.settings.camera.jpeg_quality,
                        min_payload_chars=self.settings.upload.min_payload_chars,
                    ),
                )
            except FrameError as exc:
                logger.warning("Capture rejected: %s", exc)
                session.set_tracks_enabled(True)
                await self._show_inline_error(exc)
                return False

            self._frame = frame
            self._inline_error = None
            self._error_kind = None
            logger.info("Frame captured (%dx%d, %d bytes)", frame.width, frame.height, frame.size_bytes)
            await self._advance_phase(SessionPhase.CAPTURED_PREVIEW, data=self._frame_summary())
            return True

    async def proceed(self) -> bool:
        """CapturedPreview -> Uploading -> navigate to results, or back to CapturedPreview on failure."""
        async with self._lock:
            if self._phase == SessionPhase.UPLOADING:
                logger.info("Submission already in flight; ignoring proceed")
                return False
            if self._phase != SessionPhase.CAPTURED_PREVIEW or self._closed:
                logger.warning("Proceed ignored in phase %s", self._phase.value)
                return False
            try:
                frame = validate_frame(self._frame, min_payload_chars=self.settings.upload.min_payload_chars)
            except FrameError as exc:
                logger.warning("Proceed rejected: %s", exc)
                await self._show_inline_error(exc)
                return False

            self._error = None
            self._inline_error = None
            self._error_kind = None
            generation = self._generation
            await self._advance_phase(SessionPhase.UPLOADING, data=self._frame_summary())
            # The still is all that is needed from here on.
            await self._release_session()

        try:
            result = await self._http_client.submit(frame)
        except CaptureFlowError as exc:
            logger.error("Submission failed (%s): %s", exc.kind.value, exc)
            return await self._submission_failed(generation, exc.user_message, exc.kind)
        except Exception as exc:
            logger.exception("Unexpected submission error: %s", exc)
            return await self._submission_failed(generation, "Analysis failed. Please try again.", ErrorKind.SERVICE_ERROR)

        timestamp = datetime.now(timezone.utc).isoformat()
        await self._store.save(result.data, timestamp)

        async with self._lock:
            if self._stale(generation):
                logger.warning("Analysis finished after the session closed; dropping result")
                return False
            self._closed = True
            self._generation += 1
        logger.info("Analysis complete; handing off to results view")
        await self.navigator.to_results(result.data, timestamp=timestamp, source=frame.source.value)
        return True

    async def _submission_failed(self, generation: int, message: str, kind: ErrorKind) -> bool:
        async with self._lock:
            if self._stale(generation):
                return False
            self._error = message
            self._error_kind = kind
            await self._advance_phase(
                SessionPhase.CAPTURED_PREVIEW,
                error=message,
                data={**(self._frame_summary() or {}), "kind": kind.value},
            )
        return False

    async def retry(self) -> bool:
        """Error -> Loading: re-run camera acquisition."""
        if self._phase != SessionPhase.ERROR or self._closed:
            logger.warning("Retry ignored in phase %s", self._phase.value)
            return False
        await self._release_session()
        return await self.start_camera()

    async def go_back(self) -> None:
        """Release everything and navigate to the previous screen."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            self._generation += 1
            await self._release_session()
            self._frame = None
            self.surface.clear()
        logger.info("Leaving capture screen")
        await self.navigator.back()

    async def teardown(self) -> None:
        """Screen is going away: release the camera. Safe to call repeatedly."""
        async with self._lock:
            already_closed = self._closed
            self._closed = True
            self._generation += 1
            await self._release_session()
        if not already_closed:
            logger.info("Capture session torn down in phase %s", self._phase.value)

    async def _release_session(self) -> None:
        session = self._session
        self._session = None
        if session is not None:
            await self._camera.release(session)


__all__ = ["CaptureSessionManager", "FilePicker"]
