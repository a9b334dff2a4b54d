"""Tests for the Discord client wiring."""

from unittest.mock import AsyncMock, Mock, PropertyMock, patch

import discord
import pytest

from services.music.bot import MusicBot
from services.music.config import DiscordConfig
from services.music.errors import ChannelResolutionError
from services.music.voice_transport import DiscordVoiceTransport


@pytest.fixture
def bot() -> MusicBot:
    bot = MusicBot(DiscordConfig(token="token-123"))
    bot.wait_until_ready = AsyncMock()
    return bot


@pytest.mark.unit
def test_build_intents_enables_named_flags() -> None:
    intents = MusicBot._build_intents(["guilds", "guild_voice_states", "bogus"])

    assert intents.guilds
    assert intents.voice_states
    assert not intents.message_content


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_channels_uses_cache(bot: MusicBot) -> None:
    voice_channel = Mock(spec=discord.VoiceChannel)
    text_channel = Mock(spec=discord.TextChannel)
    channels = {1: voice_channel, 2: text_channel}

    with patch.object(bot, "get_channel", side_effect=channels.get):
        resolved = await bot.resolve_channels(1, 2)

    assert resolved == (voice_channel, text_channel)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_channels_fetches_uncached(bot: MusicBot) -> None:
    voice_channel = Mock(spec=discord.VoiceChannel)
    text_channel = Mock(spec=discord.TextChannel)

    with patch.object(bot, "get_channel", return_value=None), patch.object(
        bot, "fetch_channel", AsyncMock(side_effect=[voice_channel, text_channel])
    ):
        resolved = await bot.resolve_channels(1, 2)

    assert resolved == (voice_channel, text_channel)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_channels_rejects_non_voice(bot: MusicBot) -> None:
    with patch.object(bot, "get_channel", return_value=Mock(spec=discord.TextChannel)):
        with pytest.raises(ChannelResolutionError):
            await bot.resolve_channels(1, 2)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resolve_channels_wraps_fetch_errors(bot: MusicBot) -> None:
    not_found = discord.NotFound(Mock(status=404, reason="Not Found"), "Unknown Channel")

    with patch.object(bot, "get_channel", return_value=None), patch.object(
        bot, "fetch_channel", AsyncMock(side_effect=not_found)
    ):
        with pytest.raises(ChannelResolutionError):
            await bot.resolve_channels(1, 2)


@pytest.mark.unit
def test_create_transport_uses_config(bot: MusicBot) -> None:
    channel = Mock(spec=discord.VoiceChannel)
    channel.id = 5
    channel.guild = Mock(id=7)

    transport = bot.create_transport(channel)

    assert isinstance(transport, DiscordVoiceTransport)
    assert transport.guild_id == 7


@pytest.mark.unit
@pytest.mark.asyncio
async def test_voice_state_updates_filtered_to_bot_member(bot: MusicBot) -> None:
    listener = Mock()
    bot.voice_state_listener = listener
    me = Mock(id=99)
    member = Mock(id=99)
    member.guild.id = 7
    stranger = Mock(id=100)
    before, after = Mock(), Mock()

    with patch.object(type(bot), "user", new_callable=PropertyMock, return_value=me):
        await bot.on_voice_state_update(stranger, before, after)
        await bot.on_voice_state_update(member, before, after)

    listener.assert_called_once_with(7, before, after)
