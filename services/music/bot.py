"""Discord client wiring for the music voice service."""

from __future__ import annotations

from collections.abc import Callable

import discord

from services.common.structured_logging import get_logger

from .config import DiscordConfig
from .errors import ChannelResolutionError
from .voice_transport import DiscordVoiceTransport


VoiceStateListener = Callable[[int, discord.VoiceState, discord.VoiceState], None]

_MESSAGEABLE_CHANNELS = (
    discord.TextChannel,
    discord.VoiceChannel,
    discord.StageChannel,
    discord.Thread,
)


class MusicBot(discord.Client):
    """Discord client that resolves channels and routes the bot's voice-state updates."""

    def __init__(self, config: DiscordConfig) -> None:
        super().__init__(intents=self._build_intents(config.intents))
        self.config = config
        self.voice_state_listener: VoiceStateListener | None = None
        self._logger = get_logger(__name__, service_name="music")

    async def on_ready(self) -> None:
        self._logger.info(
            "discord.ready",
            user=str(self.user),
            guilds=[guild.id for guild in self.guilds],
        )

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if self.user is None or member.id != self.user.id:
            return
        if self.voice_state_listener is not None:
            self.voice_state_listener(member.guild.id, before, after)

    async def resolve_channels(
        self, voice_channel_id: int, text_channel_id: int
    ) -> tuple[discord.VoiceChannel, discord.abc.Messageable]:
        await self.wait_until_ready()
        voice_channel = await self._resolve_channel(voice_channel_id)
        if not isinstance(voice_channel, discord.VoiceChannel):
            raise ChannelResolutionError(
                f"Channel {voice_channel_id} is not a voice channel"
            )
        text_channel = await self._resolve_channel(text_channel_id)
        if not isinstance(text_channel, _MESSAGEABLE_CHANNELS):
            raise ChannelResolutionError(
                f"Channel {text_channel_id} does not support text messages"
            )
        return voice_channel, text_channel

    def create_transport(self, channel: discord.VoiceChannel) -> DiscordVoiceTransport:
        return DiscordVoiceTransport(
            channel,
            connect_timeout=self.config.voice_connect_timeout_seconds,
            self_deaf=self.config.self_deaf,
        )

    async def _resolve_channel(self, channel_id: int) -> object:
        channel = self.get_channel(channel_id)
        if channel is not None:
            return channel
        self._logger.debug("discord.channel_not_cached", channel_id=channel_id)
        try:
            return await self.fetch_channel(channel_id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException) as exc:
            raise ChannelResolutionError(
                f"Channel {channel_id} could not be fetched: {exc}"
            ) from exc

    @staticmethod
    def _build_intents(names: list[str]) -> discord.Intents:
        intents = discord.Intents.none()
        intent_aliases = {
            "guild_voice_states": "voice_states",
        }
        for raw_name in names:
            name = intent_aliases.get(raw_name, raw_name)
            if hasattr(intents, name):
                setattr(intents, name, True)
        return intents
