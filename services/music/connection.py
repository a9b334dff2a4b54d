"""Voice session connection state machine.

A ``VoiceSession`` owns one voice transport and turns its raw state
transitions into bounded outcomes:

* a ``4014`` close gets a short grace period to show up as a channel move
  (back to Connecting), otherwise the session is destroyed;
* any other disconnect is rejoined with linear backoff until the attempt
  budget is spent, then the session is destroyed;
* Signalling/Connecting must reach Ready within a deadline, guarded so only
  one readiness timer runs at a time.

Transition handlers run as tracked tasks on the event loop and are cancelled
when the session is destroyed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from services.common.structured_logging import get_logger

from .config import SessionConfig
from .errors import TransportDisconnect


logger = get_logger(__name__, service_name="music")

WEBSOCKET_CLOSE_REMOVED = 4014


class ConnectionStatus(Enum):
    SIGNALLING = "signalling"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


class DisconnectReason(Enum):
    WEBSOCKET_CLOSE = "websocket_close"
    ADAPTER_UNAVAILABLE = "adapter_unavailable"
    ENDPOINT_REMOVED = "endpoint_removed"
    MANUAL = "manual"


@dataclass(frozen=True, slots=True)
class ConnectionState:
    status: ConnectionStatus
    reason: DisconnectReason | None = None
    close_code: int | None = None


class VoiceTransport(Protocol):
    """Underlying voice connection driven by a ``VoiceSession``."""

    async def rejoin(self) -> None: ...

    async def disconnect(self) -> None: ...


DestroyListener = Callable[[], Awaitable[None]]


class VoiceSession:
    """One voice membership with its reconnection policy."""

    def __init__(
        self,
        transport: VoiceTransport,
        config: SessionConfig,
        *,
        session_id: str,
        guild_id: int | None = None,
    ) -> None:
        self.session_id = session_id
        self.guild_id = guild_id
        self.rejoin_attempts = 0
        self.last_disconnect: TransportDisconnect | None = None
        self._transport = transport
        self._config = config
        self._state = ConnectionState(ConnectionStatus.SIGNALLING)
        self._ready_wait_pending = False
        self._waiters: list[tuple[ConnectionStatus, asyncio.Future[bool]]] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._destroy_listeners: list[DestroyListener] = []
        self._finalized = False
        self._logger = logger.bind(session_id=session_id, guild_id=guild_id)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def transport(self) -> VoiceTransport:
        return self._transport

    @property
    def ready_wait_pending(self) -> bool:
        return self._ready_wait_pending

    def add_destroy_listener(self, listener: DestroyListener) -> None:
        self._destroy_listeners.append(listener)

    def transition(
        self,
        status: ConnectionStatus,
        *,
        reason: DisconnectReason | None = None,
        close_code: int | None = None,
    ) -> None:
        """Record a transport transition and schedule its handling."""
        if self._state.status is ConnectionStatus.DESTROYED:
            self._logger.debug(
                "voice.transition_ignored", status=status.value, reason="destroyed"
            )
            return
        old_state = self._state
        new_state = ConnectionState(status, reason, close_code)
        self._state = new_state
        self._logger.info(
            "voice.state_changed",
            old_status=old_state.status.value,
            new_status=status.value,
            reason=reason.value if reason else None,
            close_code=close_code,
            rejoin_attempts=self.rejoin_attempts,
        )
        if status is ConnectionStatus.READY:
            self.rejoin_attempts = 0
        self._resolve_waiters()
        self._spawn(self._on_state_change(new_state))

    async def wait_for_status(self, status: ConnectionStatus, timeout: float) -> bool:
        """Wait until the session enters ``status``; False on timeout or destruction."""
        if self.status is status:
            return True
        if self.status is ConnectionStatus.DESTROYED:
            return False
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        entry = (status, future)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            return False
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    async def rejoin(self) -> None:
        if self.status is ConnectionStatus.DESTROYED:
            return
        if self.rejoin_attempts >= self._config.max_rejoin_attempts:
            await self.destroy()
            return
        self.rejoin_attempts += 1
        self._logger.info("voice.rejoin_attempt", attempt=self.rejoin_attempts)
        self.transition(ConnectionStatus.SIGNALLING)
        await self._transport.rejoin()

    async def destroy(self) -> None:
        """Tear the session down; idempotent."""
        if self.status is ConnectionStatus.DESTROYED:
            return
        self.transition(ConnectionStatus.DESTROYED, reason=DisconnectReason.MANUAL)
        await self._finalize()

    async def _on_state_change(self, state: ConnectionState) -> None:
        if state.status is ConnectionStatus.DISCONNECTED:
            await self._handle_disconnect(state)
        elif state.status is ConnectionStatus.DESTROYED:
            await self._finalize()
        elif (
            state.status in (ConnectionStatus.CONNECTING, ConnectionStatus.SIGNALLING)
            and not self._ready_wait_pending
        ):
            await self._await_ready()

    async def _handle_disconnect(self, state: ConnectionState) -> None:
        if (
            state.reason is DisconnectReason.WEBSOCKET_CLOSE
            and state.close_code == WEBSOCKET_CLOSE_REMOVED
        ):
            moved = await self.wait_for_status(
                ConnectionStatus.CONNECTING, self._config.move_grace_seconds
            )
            if moved:
                self._logger.info("voice.channel_moved")
            else:
                error = self._record_disconnect(
                    state, "Removed from the voice channel", recoverable=False
                )
                self._logger.warning(
                    "voice.removed_from_channel", close_code=error.close_code
                )
                await self.destroy()
        elif self.rejoin_attempts < self._config.max_rejoin_attempts:
            delay = (self.rejoin_attempts + 1) * self._config.rejoin_backoff_seconds
            error = self._record_disconnect(
                state, "Voice connection lost", recoverable=True
            )
            self._logger.warning(
                "voice.disconnected",
                reason=state.reason.value if state.reason else None,
                close_code=error.close_code,
                rejoin_attempts=self.rejoin_attempts,
                retry_delay_seconds=delay,
            )
            await asyncio.sleep(delay)
            if self.status is ConnectionStatus.DISCONNECTED:
                await self.rejoin()
        else:
            error = self._record_disconnect(
                state,
                f"Voice connection lost after {self.rejoin_attempts} rejoin attempts",
                recoverable=False,
            )
            self._logger.warning(
                "voice.rejoin_exhausted",
                rejoin_attempts=self.rejoin_attempts,
                error=str(error),
            )
            await self.destroy()

    def _record_disconnect(
        self, state: ConnectionState, message: str, *, recoverable: bool
    ) -> TransportDisconnect:
        error = TransportDisconnect(
            message, close_code=state.close_code, recoverable=recoverable
        )
        self.last_disconnect = error
        return error

    async def _await_ready(self) -> None:
        self._ready_wait_pending = True
        try:
            ready = await self.wait_for_status(
                ConnectionStatus.READY, self._config.ready_timeout_seconds
            )
            if not ready and self.status is not ConnectionStatus.DESTROYED:
                self._logger.warning(
                    "voice.ready_timeout",
                    timeout_seconds=self._config.ready_timeout_seconds,
                    status=self.status.value,
                )
                await self.destroy()
        finally:
            self._ready_wait_pending = False

    async def _finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        try:
            await self._transport.disconnect()
        except Exception as exc:
            self._logger.warning(
                "voice.transport_disconnect_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
        for listener in list(self._destroy_listeners):
            try:
                await listener()
            except Exception:
                self._logger.exception("voice.destroy_listener_failed")
        self._logger.info("voice.session_destroyed")

    def _resolve_waiters(self) -> None:
        status = self._state.status
        for wanted, future in list(self._waiters):
            if future.done():
                continue
            if wanted is status:
                future.set_result(True)
            elif status is ConnectionStatus.DESTROYED:
                future.set_result(False)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "voice.transition_handler_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def join(self) -> None:
        """Wait for outstanding transition handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
