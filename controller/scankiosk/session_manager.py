"""Scan session orchestration against the remote recognition service."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import base64
import binascii
import functools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Union

from .backend.ws_client import ScanChannel
from .conditions import ConditionTracker
from .config import Settings, get_settings
from .progress import ScanProgressTracker
from .protocol import (
    AnalysisComplete,
    AnalysisError,
    InboundMessage,
    ProtocolError,
    RecognitionFrame,
    ScanFrame,
    UnknownMessage,
    parse_message,
)
from .pump import FramePump
from .resolver import (
    resolve_analysis_error,
    resolve_connection_lost,
    resolve_detections,
    resolve_recognition,
)
from .state import AnalysisOutcome, ControllerEvent, SessionPhase, SessionView

logger = logging.getLogger(__name__)

STATUS_IDLE = "Idle"
STATUS_CONNECTING = "Connecting..."
STATUS_CONNECTED = "Connected"
STATUS_DISCONNECTED = "Disconnected"
STATUS_CONNECTION_ERROR = "Connection Error"
STATUS_ANALYSIS_FAILED = "Analysis Failed"
STATUS_SCAN_COMPLETE = "Scan Complete"

ChannelFactory = Callable[[], ScanChannel]


@dataclass
class SessionContext:
    session_id: Optional[str] = None
    started_at: Optional[float] = None
    connection_status: str = STATUS_IDLE
    image: Optional[str] = None
    frames_received: int = 0
    outcome: Optional[AnalysisOutcome] = None


class SessionFlowError(RuntimeError):
    """Raised when a session step fails in a way the operator must see."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class SessionLease:
    """Channel and frame pump owned by exactly one session.

    Both are acquired together in ``SessionManager.start`` and released
    together by ``release``; the timer is cancelled and the channel marked
    closed before the first await, so no credit can leave once release starts.
    """

    def __init__(self, channel: ScanChannel, pump: FramePump) -> None:
        self.channel = channel
        self.pump = pump
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.pump.cancel()
        self.channel.mark_closing()
        try:
            await self.channel.disconnect()
        except Exception as e:
            logger.warning("Error disconnecting scan channel: %s", e)


class SessionManager:
    """Drives one scan session at a time and publishes its state to renderers.

    Renderers observe through ``register_ui`` / ``snapshot`` and command
    through ``start`` and ``reset``; everything else reacts to channel events.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        channel_factory: Optional[ChannelFactory] = None,
        session_id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._channel_factory: ChannelFactory = channel_factory or (lambda: ScanChannel(self.settings))
        self._session_id_factory = session_id_factory or (lambda: uuid.uuid4().hex)
        self._lock = asyncio.Lock()
        self._phase: SessionPhase = SessionPhase.IDLE
        self._phase_started_at: float = time.time()
        self._ui_subscribers: List[asyncio.Queue[ControllerEvent]] = []
        self._preview_subscribers: List[asyncio.Queue[bytes]] = []
        self._last_preview_ts: float = 0.0
        self._current_session = SessionContext()
        self._lease: Optional[SessionLease] = None
        self._conditions = ConditionTracker()
        self._progress = ScanProgressTracker(max_passes=self.settings.scan.max_passes)

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def phase_age_seconds(self) -> float:
        return time.time() - self._phase_started_at

    @property
    def session_id(self) -> Optional[str]:
        return self._current_session.session_id

    @property
    def outcome(self) -> Optional[AnalysisOutcome]:
        return self._current_session.outcome

    @property
    def credits_sent(self) -> int:
        return self._lease.pump.credits_sent if self._lease else 0

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open a fresh session; an existing one is torn down first."""
        async with self._lock:
            if self._phase != SessionPhase.IDLE:
                logger.info("start() in %s - tearing down previous session", self._phase.value)
                await self._reset_locked()

            session_id = self._session_id_factory()
            channel = self._channel_factory()
            lease = SessionLease(channel, FramePump(channel, pacing_ms=self.settings.scan.frame_pacing_ms))
            self._lease = lease
            self._current_session = SessionContext(
                session_id=session_id,
                started_at=time.time(),
                connection_status=STATUS_CONNECTING,
            )
            logger.info("🎬 [SESSION_START] Opening scan session %s", session_id)
            await self._advance_phase(SessionPhase.CONNECTING)

            try:
                await self._connect_channel(lease, session_id)
                await self._on_open(lease)
            except asyncio.CancelledError:
                await lease.release()
                raise
            except SessionFlowError as exc:
                logger.error("❌ Session failed: %s", exc)
                cause = exc.__cause__
                detail = (str(cause) or type(cause).__name__) if cause else None
                await self._finish(lease, resolve_connection_lost(detail), SessionPhase.FAILED, STATUS_CONNECTION_ERROR)
            except Exception as exc:
                logger.exception("❌ Unexpected session error: %s", exc)
                await self._finish(lease, resolve_connection_lost(str(exc)), SessionPhase.FAILED, STATUS_CONNECTION_ERROR)

    async def reset(self) -> None:
        """Discard the current session (and its outcome) and return to IDLE."""
        async with self._lock:
            await self._reset_locked()

    async def stop(self) -> None:
        """External shutdown: release any live session without a new one."""
        logger.info("Stopping session manager")
        async with self._lock:
            await self._reset_locked()
        logger.info("Session manager stopped")

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def register_ui(self) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=self.settings.performance.ui_event_queue_size)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    def snapshot(self) -> SessionView:
        pending = self._phase == SessionPhase.ANALYSIS_PENDING
        return SessionView(
            phase=self._phase,
            session_id=self._current_session.session_id,
            connection_status=self._current_session.connection_status,
            status_text=self._conditions.status_text(
                analysis_pending=pending,
                scan_complete=self._phase == SessionPhase.COMPLETE,
                percent=self._progress.percent,
            ),
            conditions=self._conditions.conditions,
            conditions_met=self._conditions.conditions_met,
            scan_pass=self._progress.scan_pass,
            scan_percent=self._progress.percent,
            overall_percent=self._progress.overall_percent,
            analysis_pending=pending,
            image=self._current_session.image,
            outcome=self._current_session.outcome,
        )

    async def preview_frames(self) -> AsyncIterator[bytes]:
        """Yield decoded JPEG frames as they arrive from the service."""
        queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=self.settings.performance.preview_queue_size)
        self._preview_subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            if queue in self._preview_subscribers:
                self._preview_subscribers.remove(queue)

    # ------------------------------------------------------------------
    # Channel events
    # ------------------------------------------------------------------

    async def _connect_channel(self, lease: SessionLease, session_id: str) -> None:
        try:
            await lease.channel.connect(
                session_id,
                functools.partial(self._on_channel_message, lease),
                functools.partial(self._on_channel_closed, lease),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise SessionFlowError("Connection lost", log_message=f"scan channel failed to open: {exc}") from exc

    async def _on_open(self, lease: SessionLease) -> None:
        self._current_session.connection_status = STATUS_CONNECTED
        await self._advance_phase(SessionPhase.STREAMING)
        await lease.pump.request_next()

    async def _on_channel_message(self, lease: SessionLease, raw: Union[str, bytes]) -> None:
        try:
            message = parse_message(raw)
        except ProtocolError as exc:
            logger.warning("Dropping malformed scan message: %s", exc)
            return

        async with self._lock:
            if lease is not self._lease or lease.released:
                if isinstance(message, (RecognitionFrame, AnalysisComplete, AnalysisError)):
                    logger.warning(
                        "Rejecting %s received after session %s resolved",
                        message.type,
                        lease.channel.session_id,
                    )
                else:
                    logger.debug("Ignoring %s for a released session", message.type)
                return
            await self._dispatch(lease, message)

    async def _on_channel_closed(self, lease: SessionLease, reason: str) -> None:
        async with self._lock:
            if lease is not self._lease or lease.released:
                return
            if not self._phase.is_live:
                await lease.release()
                return
            logger.warning("⚠️ Scan channel lost in %s: %s", self._phase.value, reason)
            status = STATUS_CONNECTION_ERROR if reason.startswith("connection error") else STATUS_DISCONNECTED
            await self._finish(lease, resolve_connection_lost(reason), SessionPhase.FAILED, status)

    async def _dispatch(self, lease: SessionLease, message: InboundMessage) -> None:
        # RecognitionFrame subclasses ScanFrame, so it must be matched first.
        if isinstance(message, RecognitionFrame):
            await self._handle_recognition(lease, message)
        elif isinstance(message, ScanFrame):
            await self._handle_frame(lease, message)
        elif isinstance(message, AnalysisComplete):
            await self._handle_analysis_complete(lease, message)
        elif isinstance(message, AnalysisError):
            await self._handle_analysis_error(lease, message)
        elif isinstance(message, UnknownMessage):
            logger.info("Ignoring unknown scan message type %r", message.type)
        else:  # pragma: no cover - parse_message only yields the classes above
            logger.warning("Unhandled scan message class %s", type(message).__name__)

    async def _handle_frame(self, lease: SessionLease, frame: ScanFrame) -> None:
        if self._phase not in {SessionPhase.STREAMING, SessionPhase.ANALYSIS_PENDING}:
            logger.debug("Ignoring frame in %s", self._phase.value)
            return

        gate_open = self._apply_frame(frame)
        if self._phase == SessionPhase.ANALYSIS_PENDING:
            # Late frames still refresh the picture but never earn a credit.
            await self._broadcast_frame()
            return

        if self._progress.observe(frame.scan_pass, frame.scan_progress, gate_open=gate_open):
            lease.pump.cancel()
            logger.info("📸 Scan passes complete, waiting for recognition")
            await self._advance_phase(SessionPhase.ANALYSIS_PENDING)
            return

        lease.pump.schedule_next()
        await self._broadcast_frame()

    async def _handle_recognition(self, lease: SessionLease, frame: RecognitionFrame) -> None:
        if self._phase not in {SessionPhase.STREAMING, SessionPhase.ANALYSIS_PENDING}:
            logger.debug("Ignoring recognition frame in %s", self._phase.value)
            return
        self._apply_frame(frame)
        outcome = resolve_recognition(frame)
        logger.info("🎉 Recognition complete: %s", frame.recognition_result)
        await self._finish(lease, outcome, SessionPhase.COMPLETE, STATUS_SCAN_COMPLETE)

    async def _handle_analysis_complete(self, lease: SessionLease, message: AnalysisComplete) -> None:
        if self._phase not in {SessionPhase.STREAMING, SessionPhase.ANALYSIS_PENDING}:
            logger.debug("Ignoring analysis_complete in %s", self._phase.value)
            return
        if self._phase == SessionPhase.STREAMING:
            logger.info("analysis_complete arrived before the final scan pass")
        self._current_session.image = message.data
        logger.info("🎉 Analysis complete: %d prediction(s)", len(message.predictions))
        await self._finish(lease, resolve_detections(message), SessionPhase.COMPLETE, STATUS_SCAN_COMPLETE)

    async def _handle_analysis_error(self, lease: SessionLease, message: AnalysisError) -> None:
        if self._phase not in {SessionPhase.STREAMING, SessionPhase.ANALYSIS_PENDING}:
            logger.debug("Ignoring analysis_error in %s", self._phase.value)
            return
        logger.error("❌ Analysis failed: %s", message.message)
        await self._finish(lease, resolve_analysis_error(message), SessionPhase.FAILED, STATUS_ANALYSIS_FAILED)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_frame(self, frame: ScanFrame) -> bool:
        self._current_session.frames_received += 1
        self._current_session.image = frame.data
        gate_open = self._conditions.update(frame.conditions_status, frame.conditions_met)
        self._publish_preview(frame.data)
        return gate_open

    async def _finish(
        self,
        lease: SessionLease,
        outcome: AnalysisOutcome,
        phase: SessionPhase,
        connection_status: str,
    ) -> None:
        if self._current_session.outcome is not None:
            logger.warning(
                "Rejecting second outcome %s for session %s (already %s)",
                outcome.kind.value,
                self._current_session.session_id,
                self._current_session.outcome.kind.value,
            )
            await lease.release()
            return
        self._current_session.outcome = outcome
        self._current_session.connection_status = connection_status
        await lease.release()
        await self._advance_phase(phase, error=outcome.reason if phase == SessionPhase.FAILED else None)
        logger.info(
            "🏁 [SESSION_END] Session %s ended in %s (%d frame(s), %d credit(s))",
            self._current_session.session_id,
            phase.value,
            self._current_session.frames_received,
            lease.pump.credits_sent,
        )

    async def _reset_locked(self) -> None:
        lease = self._lease
        self._lease = None
        if lease is not None:
            await lease.release()
        self._current_session = SessionContext()
        self._conditions.reset()
        self._progress.reset()
        if self._phase != SessionPhase.IDLE:
            await self._advance_phase(SessionPhase.IDLE)
            logger.info("🔄 Session reset, back to IDLE")

    def _publish_preview(self, data: str) -> None:
        if not self._preview_subscribers:
            return
        now = time.time()
        if now - self._last_preview_ts < self.settings.performance.preview_fps_limit:
            return
        try:
            frame = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            logger.debug("Skipping preview for undecodable frame: %s", exc)
            return
        self._last_preview_ts = now
        for queue in list(self._preview_subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except QueueEmpty:
                    pass
            queue.put_nowait(frame)

    async def _broadcast_frame(self) -> None:
        await self._broadcast(
            ControllerEvent(
                type="frame",
                phase=self._phase,
                data=self.snapshot().to_dict(include_image=True),
            )
        )

    async def _broadcast(self, event: ControllerEvent) -> None:
        """Broadcast event to all UI subscribers, dropping the oldest when full."""
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)

    async def _advance_phase(self, phase: SessionPhase, *, error: Optional[str] = None) -> None:
        previous = self._phase
        self._phase = phase
        self._phase_started_at = time.time()
        if previous != phase:
            logger.info("Phase %s -> %s", previous.value, phase.value)
        await self._broadcast(
            ControllerEvent(type="state", phase=phase, data=self.snapshot().to_dict(), error=error)
        )


__all__ = ["SessionManager", "SessionLease", "SessionContext", "SessionFlowError"]
