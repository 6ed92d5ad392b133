"""Realtime channel to the remote scan/recognition service."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK

from ..config import Settings

logger = logging.getLogger(__name__)

IncomingHandler = Callable[[Union[str, bytes]], Awaitable[None]]
ClosedHandler = Callable[[str], Awaitable[None]]


class ScanChannel:
    """One websocket connection for one scan session.

    The channel is never reused: after ``disconnect`` (or an unexpected close)
    the session manager builds a fresh instance for the next session.
    ``on_closed`` fires only for closes this side did not ask for.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._conn: Optional[ClientConnection] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._handler: Optional[IncomingHandler] = None
        self._on_closed: Optional[ClosedHandler] = None
        self._closing = False
        self.session_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None and not self._closing

    async def connect(self, session_id: str, handler: IncomingHandler, on_closed: ClosedHandler) -> None:
        if self._conn is not None or self._closing:
            raise RuntimeError("scan channel already used; build a new one per session")
        uri = self._build_uri(session_id)
        logger.info("Connecting to scan service %s", uri)
        self.session_id = session_id
        self._handler = handler
        self._on_closed = on_closed
        try:
            self._conn = await connect(
                uri,
                ping_interval=None,
                ping_timeout=None,
                open_timeout=self.settings.scan.connect_timeout_seconds,
            )
        except Exception as e:
            logger.error("Failed to connect to scan service: %s", e)
            self._handler = None
            self._on_closed = None
            raise
        self._listener_task = asyncio.create_task(self._listen(), name=f"scan-ws-listener-{session_id}")

    def mark_closing(self) -> None:
        """Stop accepting sends and suppress ``on_closed`` before the close handshake."""
        self._closing = True

    async def disconnect(self) -> None:
        self.mark_closing()
        task = self._listener_task
        self._listener_task = None
        # Teardown may be triggered from inside a message handler, i.e. from
        # the listener task itself; that task exits on its own once closed.
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during listener task cleanup: %s", e)
        conn = self._conn
        self._conn = None
        if conn is not None:
            try:
                await conn.close()
            except Exception as e:
                logger.warning("Error closing scan websocket: %s", e)
        self._handler = None
        self._on_closed = None

    async def send_text(self, text: str) -> bool:
        if not self.is_open:
            logger.debug("Not sending %r - scan channel not open", text)
            return False
        assert self._conn is not None
        try:
            await self._conn.send(text)
            return True
        except ConnectionClosed:
            logger.warning("Cannot send %r - scan websocket closed", text)
        except Exception as e:
            logger.error("Failed to send on scan websocket: %s", e)
        return False

    async def _listen(self) -> None:
        assert self._conn is not None
        reason: Optional[str] = None
        try:
            async for message in self._conn:
                if self._closing:
                    break
                if self._handler:
                    try:
                        await self._handler(message)
                    except Exception as e:
                        logger.exception("Error in scan message handler: %s", e)
            else:
                reason = "closed by server"
        except asyncio.CancelledError:  # cooperative cancel
            raise
        except ConnectionClosedOK:
            logger.info("Scan websocket closed cleanly")
            reason = "closed by server"
        except ConnectionClosedError as exc:
            logger.warning("Scan websocket closed: %s", exc)
            reason = f"connection error: {exc}"
        except Exception as exc:
            logger.exception("Scan websocket listener crashed")
            reason = f"connection error: {exc}"

        if reason is not None and not self._closing:
            self._closing = True
            callback = self._on_closed
            if callback is not None:
                try:
                    await callback(reason)
                except Exception as e:
                    logger.exception("Error in scan channel close handler: %s", e)

    def _build_uri(self, session_id: str) -> str:
        base = self.settings.scan_service_ws_url.rstrip('/')
        return f"{base}/{session_id}"


__all__ = ["ScanChannel", "IncomingHandler", "ClosedHandler"]
