"""Central configuration for the capture controller service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class CameraSettings(BaseModel):
    """Camera stream configuration."""
    camera_id: int = Field(0, description="OpenCV device index")
    ideal_width: int = Field(1280, description="Preferred stream width on desktop (pixels)")
    ideal_height: int = Field(720, description="Preferred stream height on desktop (pixels)")
    mobile_width: int = Field(1920, description="Preferred stream width on mobile profiles (pixels)")
    mobile_height: int = Field(1080, description="Preferred stream height on mobile profiles (pixels)")
    facing_mode: str = Field("user", description="Requested camera facing mode")
    fps: int = Field(30, description="Requested capture frame rate")
    jpeg_quality: int = Field(80, description="JPEG quality for captured stills (0-100)")
    preview_jpeg_quality: int = Field(70, description="JPEG quality for preview frames (0-100)")
    preview_fps_limit: float = Field(0.033, description="Minimum time between preview frames (seconds)")
    max_missed_reads: int = Field(60, description="Consecutive empty reads before the live stream counts as lost")


class UploadSettings(BaseModel):
    """Captured frame and gallery file limits."""
    max_file_bytes: int = Field(10 * 1024 * 1024, description="Largest accepted gallery file (bytes)")
    min_payload_chars: int = Field(100, description="Shortest base64 payload treated as a real image")


class PhaseDurations(BaseModel):
    """UI phase timing configuration."""
    camera_warmup_ms: int = Field(2000, description="Delay between stream acquisition and live preview (ms)")
    picker_defer_ms: int = Field(100, description="Deferred tick before opening the file picker (ms)")


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    # Analysis service
    analysis_api_url: str = Field(
        "https://us-central1-api-skinstric-ai.cloudfunctions.net/skinstricPhaseTwo",
        description="Image analysis endpoint receiving POST {image}",
    )
    analysis_timeout_s: float = Field(30.0, description="Timeout for the analysis request (seconds)")

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Navigation
    results_route: str = Field("/select", description="Route shown after a successful analysis")
    back_route: str = Field("/result", description="Route shown when the user leaves the capture screen")

    # Transient result store
    result_store_dir: Optional[Path] = Field(ROOT_DIR / "session_store", description="Directory for the latest analysis result")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Camera stream settings")
    upload: UploadSettings = Field(default_factory=UploadSettings, description="Frame and file limits")
    phases: PhaseDurations = Field(default_factory=PhaseDurations, description="UI phase timing")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "INFO"
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
