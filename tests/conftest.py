from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Optional

import httpx
import numpy as np
import pytest

try:
    import cv2  # type: ignore
except Exception:
    cv2 = None

from capture_app.backend.http_client import AnalysisHttpClient
from capture_app.backend.result_store import ResultStore
from capture_app.config import PhaseDurations, Settings
from capture_app.sensors.camera import CameraDevice
from capture_app.session_manager import CaptureSessionManager

ANALYSIS_URL = "https://analysis.test/analyze"


def noise_image(width: int = 64, height: int = 48, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 255, size=(height, width, 3), dtype=np.uint8)


def png_bytes(width: int = 24, height: int = 24) -> bytes:
    """Small real PNG (a couple of KB of noise)."""
    ok, encoded = cv2.imencode(".png", noise_image(width, height, seed=7))
    assert ok
    return encoded.tobytes()


class FakeCapture:
    """Stands in for cv2.VideoCapture."""

    def __init__(self, frame: Optional[np.ndarray] = None) -> None:
        self.frame = frame
        self.release_calls = 0
        self.read_calls = 0

    def isOpened(self) -> bool:
        return True

    def read(self):
        self.read_calls += 1
        if self.frame is None:
            return False, None
        return True, self.frame.copy()

    def set(self, prop: int, value: Any) -> bool:
        return True

    def release(self) -> None:
        self.release_calls += 1


class FakeOpener:
    """Async camera opener with controllable outcome and timing."""

    def __init__(
        self,
        *,
        frame: Optional[np.ndarray] = None,
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        blank: bool = False,
        capture_factory: Optional[Callable[[Optional[np.ndarray]], FakeCapture]] = None,
    ) -> None:
        self.frame = None if blank else (frame if frame is not None else noise_image())
        self.error = error
        self.gate = gate
        self.capture_factory = capture_factory or FakeCapture
        self.calls = 0
        self.constraints: List[Any] = []
        self.captures: List[FakeCapture] = []

    async def __call__(self, camera_id: int, constraints: Any) -> FakeCapture:
        self.calls += 1
        self.constraints.append(constraints)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        capture = self.capture_factory(self.frame)
        self.captures.append(capture)
        return capture

    @property
    def capture(self) -> FakeCapture:
        return self.captures[-1]


def ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"data": {"race": {"asian": 0.6}, "age": {"20-29": 0.7}}})


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        analysis_api_url=ANALYSIS_URL,
        result_store_dir=tmp_path / "store",
        log_directory=tmp_path / "logs",
        phases=PhaseDurations(camera_warmup_ms=0, picker_defer_ms=0),
    )


@pytest.fixture
async def make_manager(settings, tmp_path):
    created: List[CaptureSessionManager] = []
    clients: List[AnalysisHttpClient] = []

    def _make(
        *,
        opener: Optional[FakeOpener] = None,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        file_picker=None,
        store: Optional[ResultStore] = None,
        profile=None,
    ) -> CaptureSessionManager:
        camera = CameraDevice(settings.camera, opener=opener or FakeOpener())
        client = AnalysisHttpClient(settings, transport=transport or httpx.MockTransport(handler or ok_handler))
        clients.append(client)
        manager = CaptureSessionManager(
            settings=settings,
            profile=profile,
            camera=camera,
            http_client=client,
            store=store if store is not None else ResultStore(tmp_path / "store"),
            file_picker=file_picker,
        )
        created.append(manager)
        return manager

    yield _make

    for manager in created:
        await manager.teardown()
    for client in clients:
        await client.aclose()
