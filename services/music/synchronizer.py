"""Control-plane command handling for voice sessions.

Commands from one control-plane connection operate on that connection's
session. ``newTrack`` may arrive before the ``initialize`` that creates the
session; it waits on a registry barrier that ``initialize`` fulfils.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import discord
from pydantic import ValidationError

from services.common.structured_logging import correlation_context, get_logger

from .config import SessionConfig
from .connection import ConnectionStatus, VoiceSession
from .errors import (
    ChannelResolutionError,
    MusicServiceError,
    ReadinessTimeout,
    SessionLimitError,
    SynchronizationTimeout,
)
from .models import ControlMessage, InboundEvent, OutboundEvent, Track
from .pipeline import PipelineFactory
from .player import PlaybackController
from .voice_transport import DiscordVoiceTransport


logger = get_logger(__name__, service_name="music")


class ControlPlaneLink(Protocol):
    """One control-plane connection able to receive outbound events."""

    id: str

    async def emit(self, event: OutboundEvent, *args: Any) -> None: ...


class ChannelResolver(Protocol):
    """Chat-platform lookups needed to open a voice session."""

    async def resolve_channels(
        self, voice_channel_id: int, text_channel_id: int
    ) -> tuple[discord.VoiceChannel, discord.abc.Messageable]: ...

    def create_transport(self, channel: discord.VoiceChannel) -> DiscordVoiceTransport: ...


@dataclass(slots=True)
class SessionHandle:
    key: str
    session: VoiceSession
    controller: PlaybackController
    transport: DiscordVoiceTransport
    text_channel: discord.abc.Messageable


class SessionRegistry:
    """Live sessions keyed by control-plane connection id."""

    def __init__(self, max_sessions: int = 1) -> None:
        self._max_sessions = max_sessions
        self._handles: dict[str, SessionHandle] = {}
        self._barriers: dict[str, asyncio.Future[SessionHandle | None]] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def get(self, key: str) -> SessionHandle | None:
        return self._handles.get(key)

    def for_guild(self, guild_id: int) -> SessionHandle | None:
        for handle in self._handles.values():
            if handle.session.guild_id == guild_id:
                return handle
        return None

    def handles(self) -> list[SessionHandle]:
        return list(self._handles.values())

    def check_capacity(self, key: str, guild_id: int) -> None:
        if key not in self._handles and len(self._handles) >= self._max_sessions:
            raise SessionLimitError(
                f"Session limit reached ({self._max_sessions} active)"
            )
        owner = self.for_guild(guild_id)
        if owner is not None and owner.key != key:
            raise SessionLimitError(f"Guild {guild_id} already has a voice session")

    def register(self, handle: SessionHandle) -> None:
        self._handles[handle.key] = handle
        barrier = self._barriers.pop(handle.key, None)
        if barrier is not None and not barrier.done():
            barrier.set_result(handle)

    def remove(
        self, key: str, handle: SessionHandle | None = None
    ) -> SessionHandle | None:
        current = self._handles.get(key)
        if current is None or (handle is not None and current is not handle):
            return None
        return self._handles.pop(key)

    def forget(self, key: str) -> None:
        """Release anything still waiting for ``key`` to get a session."""
        barrier = self._barriers.pop(key, None)
        if barrier is not None and not barrier.done():
            barrier.set_result(None)

    async def wait_for(self, key: str, timeout: float) -> SessionHandle | None:
        handle = self._handles.get(key)
        if handle is not None:
            return handle
        barrier = self._barriers.get(key)
        if barrier is None or barrier.done():
            barrier = asyncio.get_running_loop().create_future()
            self._barriers[key] = barrier
        try:
            return await asyncio.wait_for(asyncio.shield(barrier), timeout=timeout)
        except TimeoutError:
            return None


CommandHandler = Callable[[ControlPlaneLink, list[Any]], Awaitable[None]]


def _snowflake(value: Any) -> int:
    try:
        return int(str(value))
    except ValueError as exc:
        raise ChannelResolutionError(f"Invalid channel id: {value!r}") from exc


class CommandSynchronizer:
    """Applies control-plane commands to sessions and their controllers."""

    def __init__(
        self,
        resolver: ChannelResolver,
        factory: PipelineFactory,
        config: SessionConfig,
        registry: SessionRegistry | None = None,
    ) -> None:
        self._resolver = resolver
        self._factory = factory
        self._config = config
        self._registry = registry or SessionRegistry(config.max_sessions)
        self._handlers: dict[str, CommandHandler] = {
            InboundEvent.INITIALIZE.value: self.initialize,
            InboundEvent.NEW_TRACK.value: self.new_track,
            InboundEvent.MUSIC_SKIP.value: self.music_skip,
            InboundEvent.MUSIC_PAUSE.value: self.music_pause,
            InboundEvent.MUSIC_RESUME.value: self.music_resume,
            InboundEvent.DESTROY.value: self.destroy,
        }

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def session_count(self) -> int:
        return len(self._registry)

    async def dispatch(self, link: ControlPlaneLink, message: ControlMessage) -> None:
        """Run one inbound command; failures are logged, never raised."""
        with correlation_context(link.id):
            handler = self._handlers.get(message.event)
            if handler is None:
                logger.warning("control.unknown_event", event=message.event)
                return
            logger.info(
                "control.command_received", event=message.event, args=message.args
            )
            try:
                await handler(link, message.args)
            except MusicServiceError as exc:
                logger.warning(
                    "control.command_failed",
                    event=message.event,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            except Exception:
                logger.exception("control.command_crashed", event=message.event)

    async def initialize(self, link: ControlPlaneLink, args: list[Any]) -> None:
        if len(args) < 2:
            raise ChannelResolutionError("initialize needs voice and text channel ids")
        voice_channel_id = _snowflake(args[0])
        text_channel_id = _snowflake(args[1])

        previous = self._registry.remove(link.id)
        if previous is not None:
            logger.info("control.session_replaced", session_id=previous.key)
            await previous.controller.destroy()

        voice_channel, text_channel = await self._resolver.resolve_channels(
            voice_channel_id, text_channel_id
        )
        guild_id = voice_channel.guild.id
        self._registry.check_capacity(link.id, guild_id)

        transport = self._resolver.create_transport(voice_channel)
        session = VoiceSession(
            transport, self._config, session_id=link.id, guild_id=guild_id
        )
        transport.attach(session)

        async def notify_error(content: str) -> None:
            await text_channel.send(content)

        controller = PlaybackController(
            session, transport, self._factory, link.emit, notify_error
        )
        handle = SessionHandle(
            key=link.id,
            session=session,
            controller=controller,
            transport=transport,
            text_channel=text_channel,
        )

        async def unregister() -> None:
            if self._registry.remove(handle.key, handle) is not None:
                logger.info("control.session_unregistered", session_id=handle.key)

        session.add_destroy_listener(unregister)
        self._registry.register(handle)
        logger.info(
            "control.session_created",
            guild_id=guild_id,
            voice_channel_id=voice_channel_id,
            text_channel_id=text_channel_id,
        )
        await transport.connect()

    async def new_track(self, link: ControlPlaneLink, args: list[Any]) -> None:
        try:
            track = Track.model_validate(args[0] if args else {})
        except ValidationError as exc:
            logger.warning("control.invalid_track", error=str(exc))
            await link.emit(OutboundEvent.UNLOCK_QUEUE)
            await link.emit(OutboundEvent.DELETE_ERROR_TRACK)
            return

        wait_timeout = self._config.session_wait_timeout_seconds
        handle = await self._registry.wait_for(link.id, wait_timeout)
        if handle is None:
            error = SynchronizationTimeout(
                f"No session within {wait_timeout:g}s of newTrack"
            )
            logger.warning("control.session_wait_timeout", error=str(error))
            await link.emit(OutboundEvent.E_PLAYER_CLASS)
            return

        ready_timeout = self._config.ready_timeout_seconds
        ready = await handle.session.wait_for_status(
            ConnectionStatus.READY, ready_timeout
        )
        if not ready and not self._config.play_on_readiness_timeout:
            await handle.controller.reject_track(track, ReadinessTimeout(ready_timeout))
            return
        if not ready:
            logger.warning("control.playing_without_ready", timeout=ready_timeout)
        await handle.controller.play_track(track)

    async def music_skip(self, link: ControlPlaneLink, args: list[Any]) -> None:
        handle = self._registry.get(link.id)
        if handle is not None:
            await handle.controller.stop()

    async def music_pause(self, link: ControlPlaneLink, args: list[Any]) -> None:
        handle = self._registry.get(link.id)
        if handle is not None:
            await handle.controller.pause()

    async def music_resume(self, link: ControlPlaneLink, args: list[Any]) -> None:
        handle = self._registry.get(link.id)
        if handle is not None:
            await handle.controller.resume()

    async def destroy(self, link: ControlPlaneLink, args: list[Any]) -> None:
        handle = self._registry.remove(link.id)
        if handle is not None:
            await handle.controller.destroy()

    async def disconnect(self, link: ControlPlaneLink) -> None:
        """Transport-level disconnect of the control plane."""
        with correlation_context(link.id):
            logger.info("control.link_closed")
            self._registry.forget(link.id)
            await self.destroy(link, [])

    async def shutdown(self) -> None:
        for handle in self._registry.handles():
            self._registry.remove(handle.key, handle)
            await handle.controller.destroy()

    def handle_voice_state(
        self,
        guild_id: int,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        handle = self._registry.for_guild(guild_id)
        if handle is not None:
            handle.transport.handle_voice_state(before, after)
