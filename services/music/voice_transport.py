"""discord.py voice transport feeding a ``VoiceSession``.

The transport connects with discord.py's own reconnect logic disabled so
that the session state machine alone decides when to rejoin or give up. It
also serves as the controller's audio output, delegating to whichever
``discord.VoiceClient`` is current after rejoins.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import discord

from services.common.structured_logging import get_logger

from .connection import (
    WEBSOCKET_CLOSE_REMOVED,
    ConnectionStatus,
    DisconnectReason,
    VoiceSession,
)


logger = get_logger(__name__, service_name="music")

_MOVE_CHECK_INTERVAL_SECONDS = 0.5


class DiscordVoiceTransport:
    """Voice connection to one channel, reported into a session."""

    def __init__(
        self,
        channel: discord.VoiceChannel,
        *,
        connect_timeout: float,
        self_deaf: bool = True,
    ) -> None:
        self.channel = channel
        self.voice_client: discord.VoiceClient | None = None
        self._connect_timeout = connect_timeout
        self._self_deaf = self_deaf
        self._session: VoiceSession | None = None
        self._tearing_down = False
        self._move_task: asyncio.Task[None] | None = None
        self._logger = logger.bind(guild_id=channel.guild.id, channel_id=channel.id)

    @property
    def guild_id(self) -> int:
        return self.channel.guild.id

    def attach(self, session: VoiceSession) -> None:
        self._session = session

    async def connect(self) -> None:
        """Join the channel, reporting Connecting and then Ready or Disconnected."""
        self._report(ConnectionStatus.CONNECTING)
        self._logger.info("voice.connect_attempt", timeout=self._connect_timeout)
        try:
            self.voice_client = await self.channel.connect(
                timeout=self._connect_timeout,
                reconnect=False,
                self_deaf=self._self_deaf,
                self_mute=False,
            )
        except discord.ConnectionClosed as exc:
            self._logger.warning(
                "voice.connect_closed", close_code=exc.code, error=str(exc)
            )
            self._report(
                ConnectionStatus.DISCONNECTED,
                reason=DisconnectReason.WEBSOCKET_CLOSE,
                close_code=exc.code,
            )
            return
        except (TimeoutError, discord.ClientException, OSError) as exc:
            self._logger.warning(
                "voice.connect_failed", error=str(exc), error_type=type(exc).__name__
            )
            self._report(
                ConnectionStatus.DISCONNECTED,
                reason=DisconnectReason.ADAPTER_UNAVAILABLE,
            )
            return
        self._logger.info("voice.connected")
        self._report(ConnectionStatus.READY)

    async def rejoin(self) -> None:
        await self._drop_voice_client()
        await self.connect()

    async def disconnect(self) -> None:
        if self._move_task is not None:
            self._move_task.cancel()
            self._move_task = None
        await self._drop_voice_client()

    def handle_voice_state(
        self, before: discord.VoiceState, after: discord.VoiceState
    ) -> None:
        """Translate a voice-state update for the bot's own member."""
        if self._tearing_down or self.voice_client is None:
            return
        if after.channel is None:
            self._logger.warning(
                "voice.channel_left",
                previous_channel_id=before.channel.id if before.channel else None,
            )
            self._report(
                ConnectionStatus.DISCONNECTED,
                reason=DisconnectReason.WEBSOCKET_CLOSE,
                close_code=WEBSOCKET_CLOSE_REMOVED,
            )
            return
        if before.channel is not None and before.channel.id != after.channel.id:
            self._logger.info(
                "voice.channel_move",
                from_channel_id=before.channel.id,
                to_channel_id=after.channel.id,
            )
            if isinstance(after.channel, discord.VoiceChannel):
                self.channel = after.channel
            self._report(ConnectionStatus.CONNECTING)
            if self._move_task is not None:
                self._move_task.cancel()
            self._move_task = asyncio.get_running_loop().create_task(
                self._confirm_move()
            )

    async def _confirm_move(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._connect_timeout
        while loop.time() < deadline:
            voice_client = self.voice_client
            if voice_client is not None and voice_client.is_connected():
                self._report(ConnectionStatus.READY)
                return
            await asyncio.sleep(_MOVE_CHECK_INTERVAL_SECONDS)
        self._logger.warning("voice.move_unconfirmed", timeout=self._connect_timeout)

    async def _drop_voice_client(self) -> None:
        voice_client = self.voice_client or self.channel.guild.voice_client
        self.voice_client = None
        if voice_client is None:
            return
        self._tearing_down = True
        try:
            with suppress(discord.ClientException, OSError, TimeoutError):
                await voice_client.disconnect(force=True)
        finally:
            self._tearing_down = False

    def _report(
        self,
        status: ConnectionStatus,
        *,
        reason: DisconnectReason | None = None,
        close_code: int | None = None,
    ) -> None:
        if self._session is not None:
            self._session.transition(status, reason=reason, close_code=close_code)

    def _require_client(self) -> discord.VoiceClient:
        voice_client = self.voice_client
        if voice_client is None or not voice_client.is_connected():
            raise discord.ClientException("Not connected to voice.")
        return voice_client

    def play(
        self,
        source: discord.AudioSource,
        *,
        after: Callable[[Exception | None], Any] | None = None,
    ) -> None:
        self._require_client().play(source, after=after)

    def pause(self) -> None:
        if self.voice_client is not None:
            self.voice_client.pause()

    def resume(self) -> None:
        if self.voice_client is not None:
            self.voice_client.resume()

    def stop(self) -> None:
        if self.voice_client is not None:
            self.voice_client.stop()
