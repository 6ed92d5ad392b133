"""Test doubles and payload builders shared by the controller suites."""
from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Dict, List, Optional, Union

from scankiosk.config import PerformanceSettings, ScanSettings, Settings
from scankiosk.session_manager import SessionManager


class FakeChannel:
    """In-memory stand-in for ScanChannel; tests push messages through it."""

    def __init__(self, *, fail_connect: Optional[Exception] = None) -> None:
        self.fail_connect = fail_connect
        self.sent: List[str] = []
        self.session_id: Optional[str] = None
        self.disconnected = False
        self._open = False
        self._closing = False
        self._handler = None
        self._on_closed = None

    @property
    def is_open(self) -> bool:
        return self._open and not self._closing

    @property
    def credits(self) -> int:
        return self.sent.count("next")

    async def connect(self, session_id, handler, on_closed) -> None:
        if self.fail_connect is not None:
            raise self.fail_connect
        self.session_id = session_id
        self._handler = handler
        self._on_closed = on_closed
        self._open = True

    def mark_closing(self) -> None:
        self._closing = True

    async def disconnect(self) -> None:
        self.mark_closing()
        self._open = False
        self.disconnected = True

    async def send_text(self, text: str) -> bool:
        if not self.is_open:
            return False
        self.sent.append(text)
        return True

    async def deliver(self, payload: Union[Dict[str, Any], str, bytes]) -> None:
        raw = payload if isinstance(payload, (str, bytes)) else json.dumps(payload)
        await self._handler(raw)

    async def drop(self, reason: str = "closed by server") -> None:
        self._open = False
        await self._on_closed(reason)

def video_feed(
    scan_pass: int = 1,
    progress: float = 50.0,
    face_straight: bool = True,
    distance_ok: bool = True,
    lighting_ok: bool = True,
    **extra: Any,
) -> Dict[str, Any]:
    conditions = {
        "face_straight": face_straight,
        "distance_ok": distance_ok,
        "lighting_ok": lighting_ok,
    }
    payload = {
        "type": "video_feed",
        "data": "aGVsbG8=",
        "conditions_status": conditions,
        "conditions_met": face_straight and distance_ok and lighting_ok,
        "scan_progress": progress,
        "scan_pass": scan_pass,
    }
    payload.update(extra)
    return payload

async def settle(seconds: float = 0.02) -> None:
    """Let pacing timers fire."""
    await asyncio.sleep(seconds)

def make_settings(tmp_path, *, pacing_ms: int = 0) -> Settings:
    return Settings(
        log_directory=tmp_path / "logs",
        scan=ScanSettings(frame_pacing_ms=pacing_ms, auto_start=False),
        performance=PerformanceSettings(ui_event_queue_size=64, preview_fps_limit=0.0),
    )

class ManagerHarness:
    def __init__(self, settings: Settings) -> None:
        self.channels: List[FakeChannel] = []
        self.fail_next_connect: Optional[Exception] = None
        counter = itertools.count(1)
        self.manager = SessionManager(
            settings=settings,
            channel_factory=self._make_channel,
            session_id_factory=lambda: f"session-{next(counter)}",
        )

    def _make_channel(self) -> FakeChannel:
        channel = FakeChannel(fail_connect=self.fail_next_connect)
        self.fail_next_connect = None
        self.channels.append(channel)
        return channel

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]
