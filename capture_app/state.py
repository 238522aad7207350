"""Shared controller state definitions for the capture flow."""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

_MOBILE_UA = re.compile(r"Android|iPhone|iPad|iPod|Mobile|webOS|BlackBerry|Opera Mini|IEMobile", re.IGNORECASE)
_MOBILE_MAX_VIEWPORT = 768


class SessionPhase(str, enum.Enum):
    """
    Capture session phases:

    1. IDLE              - Activated, nothing acquired yet (gallery waits here for the picker)
    2. LOADING           - Requesting the camera stream ("setting up camera")
    3. LIVE_PREVIEW      - Live camera feed, capture enabled
    4. CAPTURED_PREVIEW  - Still image shown, proceed/back enabled
    5. UPLOADING         - Submission in flight ("preparing your analysis")
    6. ERROR             - Full-screen error with Try Again / Go Back
    """
    IDLE = "idle"
    LOADING = "loading"
    LIVE_PREVIEW = "live_preview"
    CAPTURED_PREVIEW = "captured_preview"
    UPLOADING = "uploading"
    ERROR = "error"


class EntryMode(str, enum.Enum):
    CAMERA = "camera"
    GALLERY = "gallery"


@dataclass(frozen=True)
class DeviceProfile:
    """Device capabilities, resolved once when the session is built."""

    is_mobile: bool = False
    user_agent: str = ""
    viewport_width: Optional[int] = None

    @classmethod
    def from_request(cls, user_agent: Optional[str], viewport_width: Optional[int] = None) -> "DeviceProfile":
        ua = user_agent or ""
        mobile = bool(_MOBILE_UA.search(ua))
        if viewport_width is not None and viewport_width < _MOBILE_MAX_VIEWPORT:
            mobile = True
        return cls(is_mobile=mobile, user_agent=ua, viewport_width=viewport_width)


@dataclass
class ControllerEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    data: Dict[str, Any]
    phase: SessionPhase
    error: Optional[str] = None


__all__ = ["SessionPhase", "EntryMode", "DeviceProfile", "ControllerEvent"]
