"""Control-plane WebSocket endpoint.

Frames in both directions are JSON envelopes ``{"event": ..., "args": [...]}``.
Every inbound command runs in its own task so a ``newTrack`` waiting for its
session never blocks the ``initialize`` that creates it. Closing the socket
is treated as the control plane's ``disconnect``.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from services.common.structured_logging import get_logger

from .config import ControlPlaneConfig
from .models import ControlMessage, OutboundEvent
from .synchronizer import CommandSynchronizer


logger = get_logger(__name__, service_name="music")


class ControlPlaneConnection:
    """Outbound side of one control-plane socket."""

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self.id = connection_id or f"control-{uuid.uuid4().hex[:12]}"
        self._websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_closed(self) -> None:
        self._closed = True

    async def emit(self, event: OutboundEvent, *args: Any) -> None:
        name = event.value if isinstance(event, OutboundEvent) else str(event)
        if self._closed:
            logger.debug("control.emit_dropped", connection_id=self.id, event=name)
            return
        payload = ControlMessage(event=name, args=list(args)).model_dump_json()
        try:
            async with self._send_lock:
                await self._websocket.send_text(payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            self._closed = True
            logger.warning(
                "control.emit_failed",
                connection_id=self.id,
                event=name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return
        logger.debug("control.event_emitted", connection_id=self.id, event=name)


def create_app(
    synchronizer: CommandSynchronizer, config: ControlPlaneConfig
) -> FastAPI:
    """Build the FastAPI app serving the control-plane socket."""
    app = FastAPI(title="music-voice", version="1.0.0")
    app.state.synchronizer = synchronizer

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "sessions": synchronizer.session_count}

    @app.websocket(config.path)
    async def control_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        connection = ControlPlaneConnection(websocket)
        pending: set[asyncio.Task[None]] = set()
        logger.info("control.connected", connection_id=connection.id)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = ControlMessage.model_validate_json(raw)
                except ValidationError as exc:
                    logger.warning(
                        "control.invalid_message",
                        connection_id=connection.id,
                        error=str(exc),
                    )
                    continue
                task = asyncio.create_task(synchronizer.dispatch(connection, message))
                pending.add(task)
                task.add_done_callback(pending.discard)
        except WebSocketDisconnect as exc:
            logger.info(
                "control.disconnected", connection_id=connection.id, code=exc.code
            )
        finally:
            connection.mark_closed()
            for task in list(pending):
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await synchronizer.disconnect(connection)

    return app
