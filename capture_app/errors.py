"""Error taxonomy for the capture/upload flow."""
from __future__ import annotations

import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    # acquisition
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_NOT_SUPPORTED = "device_not_supported"
    UNKNOWN_DEVICE_ERROR = "unknown_device_error"
    # capture
    INVALID_FRAME = "invalid_frame"
    # gallery
    INVALID_FILE_TYPE = "invalid_file_type"
    FILE_TOO_LARGE = "file_too_large"
    FILE_READ_FAILURE = "file_read_failure"
    # submission
    NETWORK_FAILURE = "network_failure"
    RESPONSE_PARSE_FAILURE = "response_parse_failure"
    SERVICE_ERROR = "service_error"
    EMPTY_RESULT = "empty_result"


USER_MESSAGES = {
    ErrorKind.PERMISSION_DENIED: "Camera access denied. Please allow camera access and try again.",
    ErrorKind.DEVICE_NOT_FOUND: "No camera found. Please connect a camera.",
    ErrorKind.DEVICE_NOT_SUPPORTED: "Camera not supported on this device.",
    ErrorKind.UNKNOWN_DEVICE_ERROR: "Failed to access camera. Please try again.",
    ErrorKind.INVALID_FRAME: "Camera is not ready yet. Please wait a moment and try again.",
    ErrorKind.INVALID_FILE_TYPE: "Please select an image file.",
    ErrorKind.FILE_TOO_LARGE: "Image is too large. Please select an image under 10MB.",
    ErrorKind.FILE_READ_FAILURE: "Failed to read the selected image. Please try another file.",
    ErrorKind.NETWORK_FAILURE: "Network error. Please check your connection and try again.",
    ErrorKind.RESPONSE_PARSE_FAILURE: "Received an invalid response from the analysis service.",
    ErrorKind.SERVICE_ERROR: "Analysis failed. Please try again.",
    ErrorKind.EMPTY_RESULT: "Analysis returned no results. Please try again.",
}


class CaptureFlowError(RuntimeError):
    """Raised when a recoverable capture step fails."""

    def __init__(
        self,
        kind: ErrorKind,
        user_message: Optional[str] = None,
        *,
        log_message: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.user_message = user_message or USER_MESSAGES[kind]
        super().__init__(log_message or self.user_message)


class DeviceAccessError(CaptureFlowError):
    """Camera stream could not be acquired or played."""


class FrameError(CaptureFlowError):
    """A captured frame is missing, empty or degenerate."""


class FileSelectionError(CaptureFlowError):
    """A gallery file was rejected."""


class SubmissionError(CaptureFlowError):
    """The analysis request failed."""


class PlaybackAborted(RuntimeError):
    """Playback start was interrupted because the surface went away."""


__all__ = [
    "ErrorKind",
    "USER_MESSAGES",
    "CaptureFlowError",
    "DeviceAccessError",
    "FrameError",
    "FileSelectionError",
    "SubmissionError",
    "PlaybackAborted",
]
