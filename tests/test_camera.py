import pytest

from capture_app.config import CameraSettings
from capture_app.errors import DeviceAccessError, ErrorKind, PlaybackAborted
from capture_app.sensors import camera as camera_module
from capture_app.sensors.camera import CameraConstraints, CameraDevice, PreviewSurface
from capture_app.state import DeviceProfile

from conftest import FakeOpener, noise_image

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
DESKTOP_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


def test_device_profile_detects_mobile_once():
    assert DeviceProfile.from_request(IPHONE_UA).is_mobile
    assert not DeviceProfile.from_request(DESKTOP_UA).is_mobile
    assert DeviceProfile.from_request(DESKTOP_UA, viewport_width=390).is_mobile
    assert not DeviceProfile.from_request(None).is_mobile


def test_constraints_follow_device_profile():
    settings = CameraSettings()
    desktop = CameraConstraints.for_profile(settings, DeviceProfile(is_mobile=False))
    mobile = CameraConstraints.for_profile(settings, DeviceProfile(is_mobile=True))

    assert (desktop.width, desktop.height) == (1280, 720)
    assert (mobile.width, mobile.height) == (1920, 1080)
    assert desktop.facing_mode == "user"
    assert desktop.audio is False


@pytest.mark.parametrize(
    "error, kind",
    [
        (PermissionError("denied by user"), ErrorKind.PERMISSION_DENIED),
        (DeviceAccessError(ErrorKind.DEVICE_NOT_FOUND), ErrorKind.DEVICE_NOT_FOUND),
        (DeviceAccessError(ErrorKind.DEVICE_NOT_SUPPORTED), ErrorKind.DEVICE_NOT_SUPPORTED),
        (OSError("driver exploded"), ErrorKind.UNKNOWN_DEVICE_ERROR),
    ],
)
async def test_acquire_classifies_failures(error, kind):
    device = CameraDevice(CameraSettings(), opener=FakeOpener(error=error))

    with pytest.raises(DeviceAccessError) as excinfo:
        await device.acquire(CameraConstraints(1280, 720))

    assert excinfo.value.kind is kind
    assert not device.busy


async def test_only_one_session_open_at_a_time():
    device = CameraDevice(CameraSettings(), opener=FakeOpener())
    session = await device.acquire(CameraConstraints(1280, 720))

    with pytest.raises(RuntimeError):
        await device.acquire(CameraConstraints(1280, 720))

    await device.release(session)
    second = await device.acquire(CameraConstraints(1280, 720))
    assert second is not session
    await device.release(second)


async def test_release_is_idempotent():
    opener = FakeOpener()
    device = CameraDevice(CameraSettings(), opener=opener)
    surface = PreviewSurface(frame_interval=0.01)
    session = await device.acquire(CameraConstraints(1280, 720))
    await device.bind(session, surface)

    assert await device.release(session) is True
    assert await device.release(session) is False
    assert await device.release(None) is False

    assert opener.capture.release_calls == 1
    assert surface.session is None
    assert session.surface is None
    assert device.open_session is None


async def test_bind_starts_playback_with_first_frame():
    device = CameraDevice(CameraSettings(), opener=FakeOpener(frame=noise_image(80, 60)))
    surface = PreviewSurface(frame_interval=0.01)
    session = await device.acquire(CameraConstraints(1280, 720))

    await device.bind(session, surface)

    assert (surface.video_width, surface.video_height) == (80, 60)
    snap = surface.snapshot()
    assert snap is not None and snap.shape == (60, 80, 3)
    await device.release(session)
    # the last frame stays on screen after release
    assert surface.video_width == 80


async def test_bind_with_no_frames_reports_zero_dimensions():
    device = CameraDevice(CameraSettings(), opener=FakeOpener(blank=True))
    surface = PreviewSurface(frame_interval=0.01)
    session = await device.acquire(CameraConstraints(1280, 720))

    await device.bind(session, surface)

    assert surface.video_width == 0 and surface.video_height == 0
    await device.release(session)


class _AbortingSurface(PreviewSurface):
    async def play(self) -> None:
        raise PlaybackAborted("interrupted")


class _BrokenSurface(PreviewSurface):
    async def play(self) -> None:
        raise RuntimeError("decoder missing")


async def test_aborted_playback_is_benign():
    device = CameraDevice(CameraSettings(), opener=FakeOpener())
    session = await device.acquire(CameraConstraints(1280, 720))

    await device.bind(session, _AbortingSurface())
    await device.release(session)


async def test_other_playback_failures_surface_as_device_errors():
    device = CameraDevice(CameraSettings(), opener=FakeOpener())
    session = await device.acquire(CameraConstraints(1280, 720))

    with pytest.raises(DeviceAccessError) as excinfo:
        await device.bind(session, _BrokenSurface())
    assert excinfo.value.kind is ErrorKind.UNKNOWN_DEVICE_ERROR
    await device.release(session)


async def test_missing_opencv_means_unsupported(monkeypatch):
    monkeypatch.setattr(camera_module, "cv2", None)
    device = CameraDevice(CameraSettings())

    with pytest.raises(DeviceAccessError) as excinfo:
        await device.acquire(CameraConstraints(1280, 720))
    assert excinfo.value.kind is ErrorKind.DEVICE_NOT_SUPPORTED


async def test_preview_stream_yields_current_frame():
    device = CameraDevice(CameraSettings(), opener=FakeOpener())
    surface = PreviewSurface(frame_interval=0.01)
    session = await device.acquire(CameraConstraints(1280, 720))
    await device.bind(session, surface)

    stream = surface.preview_stream()
    first = await stream.__anext__()
    assert first[:2] == b"\xff\xd8"
    await stream.aclose()
    await device.release(session)
