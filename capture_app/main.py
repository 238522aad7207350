"""FastAPI entry-point for the capture controller."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from fastapi import FastAPI, File, Header, Query, Request, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from .backend.http_client import AnalysisHttpClient
from .backend.result_store import ResultStore
from .config import Settings, get_settings
from .logging_config import configure_logging
from .selector import EntryFlags
from .session_manager import CaptureSessionManager
from .state import ControllerEvent, DeviceProfile

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
app = FastAPI(title="capture-controller", version="0.1.0")

http_client = AnalysisHttpClient(settings)
store = ResultStore(settings.result_store_dir)
entry_flags = EntryFlags()
ui_subscribers: List[asyncio.Queue[ControllerEvent]] = []

manager: Optional[CaptureSessionManager] = None
_session_task: Optional[asyncio.Task[None]] = None


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors gracefully."""
    logger.warning(f"Validation error in {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)}
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    logger.info("Capture controller started (analysis endpoint: %s)", settings.analysis_api_url)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    try:
        if manager is not None:
            await manager.teardown()
        await http_client.aclose()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")


def _no_session() -> JSONResponse:
    return JSONResponse({"status": "error", "message": "No active capture session"}, status_code=404)


async def _open_file_picker() -> bool:
    """The UI's file input receives this event; the selection comes back via /session/upload."""
    if manager is None:
        return False
    return await manager.request_picker()


def _run_in_background(coro, name: str) -> None:
    global _session_task

    async def _runner() -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background session step %s crashed", name)

    _session_task = asyncio.create_task(_runner(), name=name)


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "phase": manager.phase.value if manager else None})


class ActivateRequest(BaseModel):
    mode: Optional[str] = None
    viewport_width: Optional[int] = None


@app.post("/session/gallery-flag")
async def set_gallery_flag() -> JSONResponse:
    """One-shot hint from the previous screen: open the gallery on the next activation."""
    entry_flags.set()
    return JSONResponse({"status": "ok", "gallery_flag": True})


@app.post("/session")
async def activate_session(
    payload: Optional[ActivateRequest] = None,
    mode: Optional[str] = Query(default=None),
    user_agent: Optional[str] = Header(default=None),
) -> JSONResponse:
    """Open the capture screen. Any previous session is torn down first."""
    global manager
    payload = payload or ActivateRequest()

    if manager is not None:
        await manager.teardown()

    profile = DeviceProfile.from_request(user_agent, payload.viewport_width)
    manager = CaptureSessionManager(
        settings=settings,
        profile=profile,
        http_client=http_client,
        store=store,
        file_picker=_open_file_picker,
        ui_subscribers=ui_subscribers,
    )
    _run_in_background(manager.activate(mode or payload.mode, entry_flags), name="capture-activate")
    await asyncio.sleep(0)
    return JSONResponse(manager.snapshot())


@app.get("/session")
async def session_state() -> JSONResponse:
    if manager is None:
        return _no_session()
    return JSONResponse(manager.snapshot())


@app.post("/session/capture")
async def capture_frame() -> JSONResponse:
    if manager is None:
        return _no_session()
    captured = await manager.capture()
    return JSONResponse({"captured": captured, **manager.snapshot()})


@app.post("/session/upload")
async def upload_file(file: UploadFile = File(...)) -> JSONResponse:
    if manager is None:
        return _no_session()
    content = await file.read()
    accepted = await manager.select_file(content, content_type=file.content_type, filename=file.filename)
    return JSONResponse({"accepted": accepted, **manager.snapshot()})


@app.post("/session/proceed")
async def proceed() -> JSONResponse:
    if manager is None:
        return _no_session()
    submitted = await manager.proceed()
    body = {"submitted": submitted, **manager.snapshot()}
    last = manager.navigator.last
    if submitted and last is not None:
        body["navigation"] = {"route": last.route, "state": last.state}
    return JSONResponse(body)


@app.post("/session/retry")
async def retry() -> JSONResponse:
    if manager is None:
        return _no_session()
    _run_in_background(manager.retry(), name="capture-retry")
    await asyncio.sleep(0)
    return JSONResponse(manager.snapshot())


@app.post("/session/back")
async def go_back() -> JSONResponse:
    if manager is None:
        return _no_session()
    await manager.go_back()
    return JSONResponse(manager.snapshot())


@app.delete("/session")
async def teardown_session() -> JSONResponse:
    if manager is None:
        return _no_session()
    await manager.teardown()
    return JSONResponse(manager.snapshot())


@app.get("/results/latest")
async def latest_result() -> JSONResponse:
    stored = await store.load()
    if stored is None:
        return JSONResponse({"status": "empty"}, status_code=404)
    return JSONResponse(stored)


@app.get("/preview")
async def preview_stream() -> StreamingResponse:
    """MJPEG stream of the current capture surface."""
    boundary = "frame"
    current = manager

    async def frame_iterator() -> AsyncIterator[bytes]:
        if current is None:
            return
        try:
            async for frame in current.surface.preview_stream():
                header = (
                    f"--{boundary}\r\n"
                    f"Content-Type: image/jpeg\r\n"
                    f"Content-Length: {len(frame)}\r\n\r\n"
                ).encode("ascii")
                yield header + frame + b"\r\n"
        except Exception as e:
            logger.error(f"Preview stream error: {e}")

    media_type = f"multipart/x-mixed-replace; boundary={boundary}"
    return StreamingResponse(frame_iterator(), media_type=media_type)


@app.websocket("/ws/ui")
async def ui_socket(ws: WebSocket) -> None:
    await ws.accept()
    queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=8)
    ui_subscribers.append(queue)
    try:
        while True:
            try:
                event = await queue.get()
            except asyncio.CancelledError:
                break

            payload = {
                "type": event.type,
                "phase": event.phase.value,
                "data": event.data,
            }
            if event.error:
                payload["error"] = event.error

            try:
                await ws.send_json(payload)
            except Exception as e:
                logger.debug(f"WebSocket send failed (client disconnected): {e}")
                break
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"Unexpected error in UI websocket: {e}")
    finally:
        if queue in ui_subscribers:
            ui_subscribers.remove(queue)
        try:
            await ws.close()
        except Exception:
            pass
