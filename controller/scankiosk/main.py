"""FastAPI entry-point for the scan kiosk controller."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

import psutil
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .config import Settings, get_settings
from .logging_config import configure_logging
from .session_manager import SessionManager
from .state import ControllerEvent

logger = logging.getLogger(__name__)


def _event_payload(event: ControllerEvent) -> dict:
    payload = {
        "type": event.type,
        "phase": event.phase.value,
        "data": event.data,
    }
    if event.error:
        payload["error"] = event.error
    return payload


def create_app(settings: Optional[Settings] = None, manager: Optional[SessionManager] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
    manager = manager or SessionManager(settings=settings)

    app = FastAPI(title="scan-kiosk-controller", version="0.1.0")
    app.state.settings = settings
    app.state.manager = manager
    app.state.start_task = None

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """Catch-all exception handler to prevent application crashes."""
        logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
        return PlainTextResponse(
            f"Internal server error: {str(exc)}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation errors gracefully."""
        logger.warning(f"Validation error in {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)}
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def on_startup() -> None:
        if not settings.scan.auto_start:
            logger.info("Application started; waiting for an explicit session start")
            return
        # Connecting can take up to the connect timeout; do not hold up startup.
        app.state.start_task = asyncio.create_task(manager.start(), name="initial-scan-session")
        logger.info("Application started; initial scan session scheduled")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        try:
            task = app.state.start_task
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            await manager.stop()
            logger.info("Application shutdown complete")
        except Exception as e:
            logger.exception(f"Error during shutdown: {e}")

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "phase": manager.phase.value,
            "phase_age_seconds": round(manager.phase_age_seconds, 3),
        })

    @app.get("/session")
    async def session_state() -> JSONResponse:
        return JSONResponse(manager.snapshot().to_dict())

    @app.post("/session/start")
    async def session_start() -> JSONResponse:
        """Open a fresh scan session (tears down any previous one)."""
        await manager.start()
        view = manager.snapshot()
        logger.info(f"🔧 Session start requested -> {view.phase.value}")
        return JSONResponse(view.to_dict())

    @app.post("/session/reset")
    async def session_reset() -> JSONResponse:
        """Drop the current outcome and return to idle."""
        await manager.reset()
        return JSONResponse(manager.snapshot().to_dict())

    @app.get("/debug/performance")
    async def debug_performance() -> JSONResponse:
        """Get real-time CPU and memory usage."""
        try:
            cpu_percent = psutil.cpu_percent(interval=0.1)
            memory = psutil.virtual_memory()

            return JSONResponse({
                "cpu_percent": round(cpu_percent, 1),
                "memory_percent": round(memory.percent, 1),
                "memory_used_mb": round(memory.used / (1024 * 1024), 1),
                "memory_total_mb": round(memory.total / (1024 * 1024), 1),
                "credits_sent": manager.credits_sent,
            })
        except Exception as e:
            logger.error(f"Performance monitoring error: {e}")
            return JSONResponse(
                {"error": str(e)},
                status_code=500
            )

    @app.get("/preview")
    async def preview_stream() -> StreamingResponse:
        """Stream the scan service's frames as multipart JPEG."""
        boundary = "frame"

        async def frame_iterator() -> AsyncIterator[bytes]:
            try:
                async for frame in manager.preview_frames():
                    header = (
                        f"--{boundary}\r\n"
                        f"Content-Type: image/jpeg\r\n"
                        f"Content-Length: {len(frame)}\r\n\r\n"
                    ).encode("ascii")
                    yield header + frame + b"\r\n"
            except Exception as e:
                logger.error(f"Preview stream error: {e}")

        media_type = f"multipart/x-mixed-replace; boundary={boundary}"
        return StreamingResponse(frame_iterator(), media_type=media_type)

    @app.websocket("/ws/ui")
    async def ui_socket(ws: WebSocket) -> None:
        await ws.accept()
        queue = manager.register_ui()
        try:
            view = manager.snapshot()
            await ws.send_json({"type": "snapshot", "phase": view.phase.value, "data": view.to_dict(include_image=True)})
            while True:
                try:
                    event = await queue.get()
                except asyncio.CancelledError:
                    break

                try:
                    await ws.send_json(_event_payload(event))
                except Exception as e:
                    logger.debug(f"WebSocket send failed (client disconnected): {e}")
                    break
        except WebSocketDisconnect:
            pass
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Unexpected error in UI websocket: {e}")
        finally:
            manager.unregister_ui(queue)
            try:
                await ws.close()
            except Exception:
                pass

    return app


app = create_app()
