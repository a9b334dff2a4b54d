"""Tests for the extractor -> transcoder pipeline factory."""

import asyncio
import io
import subprocess
import threading
from typing import IO
from unittest.mock import Mock, patch

import discord
import pytest

from services.music.config import PipelineConfig
from services.music.errors import PipelineFailure
from services.music.models import Track
from services.music.pipeline import PipelineFactory, PrimedAudioSource, release_extractor


class FakeProcess:
    """Minimal ``subprocess.Popen`` double for the extractor."""

    def __init__(self, stdout: IO[bytes] | None) -> None:
        self.stdout = stdout
        self.returncode: int | None = None
        self.killed = False
        self.args: list[str] = []
        self.kwargs: dict = {}

    def poll(self) -> int | None:
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int | None:
        return self.returncode


class FakeTranscoder(discord.AudioSource):
    def __init__(self, packets: list[bytes], *, block: bool = False) -> None:
        self.packets = list(packets)
        self.cleaned = threading.Event()
        self.reading = threading.Event()
        self.block = block
        self.stream: IO[bytes] | None = None

    def read(self) -> bytes:
        self.reading.set()
        if self.block:
            self.cleaned.wait(timeout=5.0)
            return b""
        return self.packets.pop(0) if self.packets else b""

    def is_opus(self) -> bool:
        return True

    def cleanup(self) -> None:
        self.cleaned.set()


class _Spawner:
    def __init__(self, process: FakeProcess | None = None, error: Exception | None = None):
        self.process = process
        self.error = error
        self.calls: list[tuple[list[str], dict]] = []

    def __call__(self, args: list[str], **kwargs) -> FakeProcess:
        self.calls.append((args, kwargs))
        if self.error is not None:
            raise self.error
        assert self.process is not None
        return self.process


def _factory(
    config: PipelineConfig, spawner: _Spawner, transcoder: FakeTranscoder | Exception
) -> PipelineFactory:
    def make_transcoder(stream: IO[bytes], track: Track) -> discord.AudioSource:
        if isinstance(transcoder, Exception):
            raise transcoder
        transcoder.stream = stream
        return transcoder

    return PipelineFactory(config, spawner=spawner, transcoder_factory=make_transcoder)


@pytest.mark.unit
def test_extractor_args_follow_configuration(
    pipeline_config: PipelineConfig, track: Track
) -> None:
    factory = PipelineFactory(pipeline_config)

    args = factory.extractor_args(track)

    assert args[0] == "yt-dlp"
    assert args[args.index("-f") + 1] == "bestaudio[ext=webm+acodec=opus+asr=48000]/bestaudio"
    assert args[args.index("-r") + 1] == "100K"
    assert args[args.index("-o") + 1] == "-"
    assert args[-2:] == ["--", track.locator]


@pytest.mark.unit
def test_locator_starting_with_dash_stays_positional(pipeline_config: PipelineConfig) -> None:
    factory = PipelineFactory(pipeline_config)

    args = factory.extractor_args(Track(locator="--exec=rm", loudness_db=0.0))

    assert args[-2:] == ["--", "--exec=rm"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_build_returns_primed_source(
    pipeline_config: PipelineConfig, track: Track, fake_stdout: io.BytesIO
) -> None:
    process = FakeProcess(fake_stdout)
    spawner = _Spawner(process)
    transcoder = FakeTranscoder([b"packet-1", b"packet-2"])
    factory = _factory(pipeline_config, spawner, transcoder)

    source = await factory.build(track)

    assert isinstance(source, PrimedAudioSource)
    assert source.is_opus()
    assert source.read() == b"packet-1"
    assert source.read() == b"packet-2"
    assert transcoder.stream is fake_stdout
    args, kwargs = spawner.calls[0]
    assert args[-1] == track.locator
    assert kwargs["stdout"] == subprocess.PIPE
    assert kwargs["stdin"] == subprocess.DEVNULL
    assert not process.killed

    source.cleanup()

    assert transcoder.cleaned.is_set()
    assert process.killed
    assert fake_stdout.closed


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_extractor_binary_fails_extract_stage(
    pipeline_config: PipelineConfig, track: Track
) -> None:
    spawner = _Spawner(error=FileNotFoundError("yt-dlp"))
    factory = _factory(pipeline_config, spawner, FakeTranscoder([b"x"]))

    with pytest.raises(PipelineFailure) as exc_info:
        await factory.build(track)

    assert exc_info.value.stage == "extract"
    assert exc_info.value.locator == track.locator
    assert isinstance(exc_info.value.__cause__, FileNotFoundError)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_extractor_without_stdout_is_killed(
    pipeline_config: PipelineConfig, track: Track
) -> None:
    process = FakeProcess(None)
    factory = _factory(pipeline_config, _Spawner(process), FakeTranscoder([b"x"]))

    with pytest.raises(PipelineFailure) as exc_info:
        await factory.build(track)

    assert exc_info.value.stage == "extract"
    assert process.killed


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transcoder_failure_releases_extractor(
    pipeline_config: PipelineConfig, track: Track, fake_stdout: io.BytesIO
) -> None:
    process = FakeProcess(fake_stdout)
    factory = _factory(
        pipeline_config,
        _Spawner(process),
        discord.ClientException("ffmpeg was not found."),
    )

    with pytest.raises(PipelineFailure) as exc_info:
        await factory.build(track)

    assert exc_info.value.stage == "transcode"
    assert "ffmpeg was not found" in str(exc_info.value)
    assert process.killed
    assert fake_stdout.closed


@pytest.mark.unit
@pytest.mark.asyncio
async def test_no_audio_fails_prime_stage(
    pipeline_config: PipelineConfig, track: Track, fake_stdout: io.BytesIO
) -> None:
    process = FakeProcess(fake_stdout)
    transcoder = FakeTranscoder([])
    factory = _factory(pipeline_config, _Spawner(process), transcoder)

    with pytest.raises(PipelineFailure) as exc_info:
        await factory.build(track)

    assert exc_info.value.stage == "prime"
    assert transcoder.cleaned.is_set()
    assert process.killed
    assert fake_stdout.closed


@pytest.mark.unit
@pytest.mark.asyncio
async def test_build_timeout_aborts_pipeline(track: Track, fake_stdout: io.BytesIO) -> None:
    config = PipelineConfig(build_timeout_seconds=1.0)
    process = FakeProcess(fake_stdout)
    transcoder = FakeTranscoder([], block=True)
    factory = _factory(config, _Spawner(process), transcoder)

    with pytest.raises(PipelineFailure) as exc_info:
        await factory.build(track)

    assert exc_info.value.stage == "timeout"
    assert transcoder.cleaned.is_set()
    assert process.killed


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancelled_build_releases_processes(
    pipeline_config: PipelineConfig, track: Track, fake_stdout: io.BytesIO
) -> None:
    process = FakeProcess(fake_stdout)
    transcoder = FakeTranscoder([], block=True)
    factory = _factory(pipeline_config, _Spawner(process), transcoder)

    build = asyncio.create_task(factory.build(track))
    await asyncio.to_thread(transcoder.reading.wait, 5.0)
    assert transcoder.reading.is_set()

    build.cancel()
    with pytest.raises(asyncio.CancelledError):
        await build

    assert process.killed
    assert transcoder.cleaned.is_set()


@pytest.mark.unit
def test_release_extractor_leaves_finished_process_alone(fake_stdout: io.BytesIO) -> None:
    process = FakeProcess(fake_stdout)
    process.returncode = 0

    release_extractor(process)
    release_extractor(None)

    assert not process.killed
    assert fake_stdout.closed


@pytest.mark.unit
def test_ffmpeg_source_applies_volume_filter(
    pipeline_config: PipelineConfig, fake_stdout: io.BytesIO
) -> None:
    factory = PipelineFactory(pipeline_config)
    track = Track(locator="https://media.example/a", loudness_db=-7.5)

    with patch("services.music.pipeline.discord.FFmpegOpusAudio") as opus_audio:
        opus_audio.return_value = Mock(spec=discord.AudioSource)
        factory.create_transcoder(fake_stdout, track)

    args, kwargs = opus_audio.call_args
    assert args == (fake_stdout,)
    assert kwargs["pipe"] is True
    assert kwargs["executable"] == "ffmpeg"
    assert kwargs["bitrate"] == 128
    assert kwargs["before_options"] == "-nostdin -f webm -acodec opus"
    assert kwargs["options"] == "-filter:a volume=-7.5dB"
