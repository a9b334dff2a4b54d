"""Media extraction and transcoding pipeline.

A track is turned into a playable Discord audio source by piping an
extractor process (yt-dlp) into a transcoder (ffmpeg via
``discord.FFmpegOpusAudio``) that applies the track's volume filter.

A build only succeeds once the transcoder has produced its first Opus
packet. Every failure path kills the extractor and closes its stdout
before ``PipelineFailure`` reaches the caller.
"""

from __future__ import annotations

import asyncio
import subprocess
import threading
from collections.abc import Callable
from contextlib import suppress
from typing import IO, Any

import discord

from services.common.structured_logging import get_logger

from .config import PipelineConfig
from .errors import PipelineFailure
from .models import Track


logger = get_logger(__name__, service_name="music")

ProcessSpawner = Callable[..., "subprocess.Popen[bytes]"]
TranscoderFactory = Callable[[IO[bytes], Track], discord.AudioSource]

_PROCESS_WAIT_SECONDS = 5.0


def release_extractor(process: subprocess.Popen[bytes] | None) -> None:
    """Kill the extractor if it is still running and discard its output pipe."""
    if process is None:
        return
    if process.poll() is None:
        with suppress(ProcessLookupError):
            process.kill()
    stream = process.stdout
    if stream is not None and not stream.closed:
        with suppress(OSError, ValueError):
            stream.close()
    with suppress(subprocess.TimeoutExpired):
        process.wait(timeout=_PROCESS_WAIT_SECONDS)


class PrimedAudioSource(discord.AudioSource):
    """Transcoder output with its first packet already read.

    The first packet is replayed on the first ``read`` so no audio is lost;
    ``cleanup`` tears down both the transcoder and the extractor feeding it.
    """

    def __init__(
        self,
        inner: discord.AudioSource,
        first_packet: bytes,
        extractor: subprocess.Popen[bytes],
    ) -> None:
        self._inner = inner
        self._first_packet: bytes | None = first_packet
        self._extractor: subprocess.Popen[bytes] | None = extractor

    def read(self) -> bytes:
        if self._first_packet is not None:
            packet, self._first_packet = self._first_packet, None
            return packet
        return self._inner.read()

    def is_opus(self) -> bool:
        return self._inner.is_opus()

    def cleanup(self) -> None:
        self._inner.cleanup()
        extractor, self._extractor = self._extractor, None
        release_extractor(extractor)


class _PipelineBuild:
    """One extractor -> transcoder chain, run on a worker thread."""

    def __init__(self, factory: PipelineFactory, track: Track) -> None:
        self._factory = factory
        self.track = track
        self.stage = "extract"
        self.extractor: subprocess.Popen[bytes] | None = None
        self.transcoder: discord.AudioSource | None = None
        self._aborted = False
        self._lock = threading.Lock()

    def run(self) -> PrimedAudioSource:
        try:
            self.extractor = self._factory.spawn_extractor(self.track)
            stream = self.extractor.stdout
            if stream is None:
                raise self._failure("Extractor has no stdout")

            self.stage = "transcode"
            self.transcoder = self._factory.create_transcoder(stream, self.track)

            self.stage = "prime"
            first_packet = self.transcoder.read()
            if not first_packet:
                raise self._failure("Transcoder produced no audio")
            with self._lock:
                if self._aborted:
                    raise self._failure("Build aborted")
                return PrimedAudioSource(self.transcoder, first_packet, self.extractor)
        except PipelineFailure:
            self.abort()
            raise
        except Exception as exc:
            self.abort()
            raise self._failure(str(exc) or type(exc).__name__) from exc

    def abort(self) -> None:
        with self._lock:
            self._aborted = True
            transcoder, self.transcoder = self.transcoder, None
            extractor, self.extractor = self.extractor, None
        if transcoder is not None:
            with suppress(Exception):
                transcoder.cleanup()
        release_extractor(extractor)

    def _failure(self, message: str) -> PipelineFailure:
        return PipelineFailure(message, stage=self.stage, locator=self.track.locator)


class PipelineFactory:
    """Builds playable audio sources for tracks."""

    def __init__(
        self,
        config: PipelineConfig,
        *,
        spawner: ProcessSpawner | None = None,
        transcoder_factory: TranscoderFactory | None = None,
    ) -> None:
        self._config = config
        self._spawner: ProcessSpawner = spawner or subprocess.Popen
        self._transcoder_factory = transcoder_factory or self._ffmpeg_opus_source

    def extractor_args(self, track: Track) -> list[str]:
        return [
            self._config.extractor_executable,
            "-o",
            "-",
            "-q",
            "-f",
            self._config.audio_format,
            "-r",
            self._config.rate_limit,
            "--",
            track.locator,
        ]

    def spawn_extractor(self, track: Track) -> subprocess.Popen[bytes]:
        return self._spawner(
            self.extractor_args(track),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )

    def create_transcoder(self, stream: IO[bytes], track: Track) -> discord.AudioSource:
        return self._transcoder_factory(stream, track)

    def _ffmpeg_opus_source(self, stream: IO[bytes], track: Track) -> discord.AudioSource:
        kwargs: dict[str, Any] = {
            "pipe": True,
            "executable": self._config.transcoder_executable,
            "bitrate": self._config.bitrate_kbps,
            "before_options": (
                f"-nostdin -f {self._config.input_container} "
                f"-acodec {self._config.input_codec}"
            ),
            "options": f"-filter:a volume={track.loudness_db}dB",
        }
        return discord.FFmpegOpusAudio(stream, **kwargs)

    async def build(self, track: Track) -> discord.AudioSource:
        """Produce a playable source for ``track`` or raise ``PipelineFailure``."""
        job = _PipelineBuild(self, track)
        timeout = self._config.build_timeout_seconds
        logger.info(
            "pipeline.build_started",
            locator=track.locator,
            loudness_db=track.loudness_db,
        )
        try:
            source = await asyncio.wait_for(asyncio.to_thread(job.run), timeout=timeout)
        except TimeoutError as exc:
            job.abort()
            logger.error(
                "pipeline.build_timeout",
                locator=track.locator,
                stage=job.stage,
                timeout_seconds=timeout,
            )
            raise PipelineFailure(
                f"No audio within {timeout:g}s", stage="timeout", locator=track.locator
            ) from exc
        except asyncio.CancelledError:
            job.abort()
            raise
        except PipelineFailure as exc:
            logger.error(
                "pipeline.build_failed",
                locator=track.locator,
                stage=exc.stage,
                error=str(exc),
                error_type=type(exc.__cause__ or exc).__name__,
            )
            raise
        logger.info("pipeline.build_ready", locator=track.locator)
        return source
