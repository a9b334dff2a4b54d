"""Music service configuration built on the shared config library."""

from __future__ import annotations

from dataclasses import dataclass

from services.common.config import (
    BaseConfig,
    FieldDefinition,
    LoggingConfig,
    load_config_from_env,
)


class DiscordConfig(BaseConfig):
    """Discord bot configuration."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="token",
                field_type=str,
                required=True,
                description="Discord bot token",
                env_var="DISCORD_BOT_TOKEN",
            ),
            FieldDefinition(
                name="intents",
                field_type=list,
                default=["guilds", "voice_states", "guild_messages"],
                description="Gateway intents enabled for the bot",
                env_var="DISCORD_INTENTS",
            ),
            FieldDefinition(
                name="self_deaf",
                field_type=bool,
                default=True,
                description="Join voice channels self-deafened",
                env_var="DISCORD_SELF_DEAF",
            ),
            FieldDefinition(
                name="voice_connect_timeout_seconds",
                field_type=float,
                default=15.0,
                description="Timeout for a single voice connect attempt",
                env_var="DISCORD_VOICE_CONNECT_TIMEOUT",
                min_value=1.0,
                max_value=120.0,
            ),
        ]


class ControlPlaneConfig(BaseConfig):
    """Control-plane WebSocket listener configuration."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="host",
                field_type=str,
                default="0.0.0.0",
                description="Listen address for the control-plane socket",
                env_var="CONTROL_PLANE_HOST",
            ),
            FieldDefinition(
                name="port",
                field_type=int,
                default=4000,
                description="Listen port for the control-plane socket",
                env_var="CONTROL_PLANE_PORT",
                min_value=1,
                max_value=65535,
            ),
            FieldDefinition(
                name="path",
                field_type=str,
                default="/ws",
                description="WebSocket route for control-plane events",
                env_var="CONTROL_PLANE_PATH",
                pattern=r"^/",
            ),
        ]


class SessionConfig(BaseConfig):
    """Voice session lifecycle bounds."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="max_sessions",
                field_type=int,
                default=1,
                description="Maximum number of simultaneous voice sessions",
                env_var="MUSIC_MAX_SESSIONS",
                min_value=1,
                max_value=100,
            ),
            FieldDefinition(
                name="max_rejoin_attempts",
                field_type=int,
                default=5,
                description="Rejoin attempts before a disconnected session is destroyed",
                env_var="MUSIC_MAX_REJOIN_ATTEMPTS",
                min_value=0,
                max_value=20,
            ),
            FieldDefinition(
                name="rejoin_backoff_seconds",
                field_type=float,
                default=5.0,
                description="Linear backoff step between rejoin attempts",
                env_var="MUSIC_REJOIN_BACKOFF",
                min_value=0.0,
                max_value=60.0,
            ),
            FieldDefinition(
                name="move_grace_seconds",
                field_type=float,
                default=5.0,
                description="Wait for a channel move after a 4014 close before destroying",
                env_var="MUSIC_MOVE_GRACE",
                min_value=0.0,
                max_value=60.0,
            ),
            FieldDefinition(
                name="ready_timeout_seconds",
                field_type=float,
                default=20.0,
                description="Maximum time a session may spend signalling/connecting",
                env_var="MUSIC_READY_TIMEOUT",
                min_value=0.0,
                max_value=300.0,
            ),
            FieldDefinition(
                name="session_wait_timeout_seconds",
                field_type=float,
                default=4.1,
                description="How long newTrack waits for initialize to create a session",
                env_var="MUSIC_SESSION_WAIT_TIMEOUT",
                min_value=0.0,
                max_value=120.0,
            ),
            FieldDefinition(
                name="play_on_readiness_timeout",
                field_type=bool,
                default=False,
                description="Attempt playback even if the session never became ready",
                env_var="MUSIC_PLAY_ON_READINESS_TIMEOUT",
            ),
        ]


class PipelineConfig(BaseConfig):
    """Media extraction and transcoding configuration."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="extractor_executable",
                field_type=str,
                default="yt-dlp",
                description="Media extractor executable",
                env_var="MUSIC_EXTRACTOR",
            ),
            FieldDefinition(
                name="transcoder_executable",
                field_type=str,
                default="ffmpeg",
                description="Transcoder executable",
                env_var="MUSIC_TRANSCODER",
            ),
            FieldDefinition(
                name="audio_format",
                field_type=str,
                default="bestaudio[ext=webm+acodec=opus+asr=48000]/bestaudio",
                description="Extractor format selector",
                env_var="MUSIC_AUDIO_FORMAT",
            ),
            FieldDefinition(
                name="rate_limit",
                field_type=str,
                default="100K",
                description="Extractor download rate limit",
                env_var="MUSIC_RATE_LIMIT",
                pattern=r"^\d+(\.\d+)?[KMG]?$",
            ),
            FieldDefinition(
                name="input_container",
                field_type=str,
                default="webm",
                description="Container the transcoder expects on stdin",
                env_var="MUSIC_INPUT_CONTAINER",
            ),
            FieldDefinition(
                name="input_codec",
                field_type=str,
                default="opus",
                description="Codec the transcoder expects on stdin",
                env_var="MUSIC_INPUT_CODEC",
            ),
            FieldDefinition(
                name="bitrate_kbps",
                field_type=int,
                default=128,
                description="Output Opus bitrate",
                env_var="MUSIC_BITRATE_KBPS",
                min_value=16,
                max_value=512,
            ),
            FieldDefinition(
                name="build_timeout_seconds",
                field_type=float,
                default=60.0,
                description="Upper bound on producing the first audio packet",
                env_var="MUSIC_BUILD_TIMEOUT",
                min_value=1.0,
                max_value=600.0,
            ),
        ]


@dataclass(slots=True)
class MusicConfig:
    """Aggregate configuration for the music service."""

    discord: DiscordConfig
    control_plane: ControlPlaneConfig
    session: SessionConfig
    pipeline: PipelineConfig
    logging: LoggingConfig


def load_config() -> MusicConfig:
    """Load every configuration section from the environment."""
    return MusicConfig(
        discord=load_config_from_env(DiscordConfig),
        control_plane=load_config_from_env(ControlPlaneConfig),
        session=load_config_from_env(SessionConfig),
        pipeline=load_config_from_env(PipelineConfig),
        logging=load_config_from_env(LoggingConfig),
    )


__all__ = [
    "ControlPlaneConfig",
    "DiscordConfig",
    "LoggingConfig",
    "MusicConfig",
    "PipelineConfig",
    "SessionConfig",
    "load_config",
]
