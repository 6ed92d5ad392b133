"""Credit-based frame flow control.

The service only sends a frame after receiving a credit, so the pump is the
single place that decides when the next frame may arrive. At most one credit
is outstanding and at most one pacing timer is armed.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from .protocol import CREDIT_TOKEN

logger = logging.getLogger(__name__)


class CreditSink(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_text(self, text: str) -> bool: ...


class FramePump:
    def __init__(self, channel: CreditSink, pacing_ms: int = 20) -> None:
        self._channel = channel
        self.pacing_ms = pacing_ms
        self._timer: Optional[asyncio.Task[None]] = None
        self.credits_sent = 0

    @property
    def armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def request_next(self) -> bool:
        """Send one credit if the channel is open; no-op while a close is in flight."""
        if not self._channel.is_open:
            logger.debug("Skipping frame credit - channel not open")
            return False
        sent = await self._channel.send_text(CREDIT_TOKEN)
        if sent:
            self.credits_sent += 1
        return sent

    def schedule_next(self, delay_ms: Optional[int] = None) -> None:
        """Arm the one-shot pacing timer, replacing any armed one."""
        delay = self.pacing_ms if delay_ms is None else delay_ms
        if self.armed:
            logger.debug("Re-arming frame timer that was still pending")
        self.cancel()
        self._timer = asyncio.create_task(self._fire(delay / 1000.0), name="scan-frame-pacer")

    def cancel(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done():
            timer.cancel()

    async def _fire(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Disarm before sending so cancel() never interrupts a send mid-frame.
        if self._timer is asyncio.current_task():
            self._timer = None
        try:
            await self.request_next()
        except Exception:
            logger.exception("Frame credit request failed")


__all__ = ["FramePump", "CreditSink"]
