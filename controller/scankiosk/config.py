"""Central configuration for the scan kiosk controller."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class ScanSettings(BaseModel):
    """Scan protocol tuning."""
    frame_pacing_ms: int = Field(20, description="Delay before re-issuing a frame credit (ms)")
    max_passes: int = Field(2, description="Scan passes before the service starts analysis")
    connect_timeout_seconds: float = Field(10.0, description="Max wait for the scan channel to open")
    auto_start: bool = Field(True, description="Open a scan session as soon as the controller starts")

    @field_validator("frame_pacing_ms")
    @classmethod
    def _non_negative_pacing(cls, value: int) -> int:
        if value < 0:
            raise ValueError("frame_pacing_ms must be >= 0")
        return value

    @field_validator("max_passes")
    @classmethod
    def _positive_passes(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_passes must be >= 1")
        return value


class PerformanceSettings(BaseModel):
    """Queue tuning for renderer subscriptions."""
    ui_event_queue_size: int = Field(8, description="Max buffered UI events per subscriber")
    preview_queue_size: int = Field(2, description="Max buffered preview JPEG frames")
    preview_fps_limit: float = Field(0.033, description="Minimum time between preview frames (seconds)")


class Settings(BaseSettings):
    """Environment-driven settings for the kiosk controller."""

    # Remote scan service
    scan_service_ws_url: str = Field(
        "ws://127.0.0.1:8000/ws",
        description="Scan service WebSocket base URL; the session id is appended as the last path segment",
    )

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    scan: ScanSettings = Field(default_factory=ScanSettings, description="Scan protocol settings")
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings, description="Performance tuning")

    @field_validator("scan_service_ws_url")
    @classmethod
    def _check_ws_scheme(cls, value: str) -> str:
        parsed = value.strip()
        if not parsed.lower().startswith(("ws://", "wss://")):
            raise ValueError("SCAN_SERVICE_WS_URL must use the ws:// or wss:// scheme")
        return parsed

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
