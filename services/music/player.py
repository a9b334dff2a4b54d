"""Single-slot playback controller bound to one voice session."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import discord

from services.common.structured_logging import get_logger

from .connection import VoiceSession
from .errors import MusicServiceError
from .models import OutboundEvent, Track
from .pipeline import PipelineFactory


logger = get_logger(__name__, service_name="music")


class PlaybackState(Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"


class AudioOutput(Protocol):
    """The subset of ``discord.VoiceClient`` the controller drives."""

    def play(
        self,
        source: discord.AudioSource,
        *,
        after: Callable[[Exception | None], Any] | None = None,
    ) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...


UpstreamEmitter = Callable[[OutboundEvent], Awaitable[None]]
ErrorNotifier = Callable[[str], Awaitable[None]]


class PlaybackController:
    """Owns the audio-output slot of one session.

    Only one track may be loading or playing at a time. Entering Idle from any
    other state asks the control plane for the next track.
    """

    def __init__(
        self,
        session: VoiceSession,
        output: AudioOutput,
        factory: PipelineFactory,
        emit: UpstreamEmitter,
        notify_error: ErrorNotifier | None = None,
    ) -> None:
        self.state = PlaybackState.IDLE
        self._session = session
        self._output = output
        self._factory = factory
        self._emit = emit
        self._notify_error = notify_error
        self._generation = 0
        self._build: asyncio.Future[discord.AudioSource] | None = None
        self._play_token: object | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logger.bind(session_id=session.session_id)
        session.add_destroy_listener(self.stop)

    @property
    def session(self) -> VoiceSession:
        return self._session

    async def play_track(self, track: Track) -> None:
        """Build and start ``track`` if nothing is loading or playing."""
        if self.state is not PlaybackState.IDLE:
            self._logger.warning(
                "player.track_rejected", state=self.state.value, locator=track.locator
            )
            await self._emit(OutboundEvent.UNLOCK_QUEUE)
            return

        generation = self._generation
        self.state = PlaybackState.BUFFERING
        build = asyncio.ensure_future(self._factory.build(track))
        self._build = build
        try:
            source = await build
        except asyncio.CancelledError:
            superseded = generation != self._generation
            if not superseded:
                self.state = PlaybackState.IDLE
            current = asyncio.current_task()
            if not superseded or (current is not None and current.cancelling()):
                raise
            self._logger.info("player.build_cancelled", locator=track.locator)
            await self._emit(OutboundEvent.UNLOCK_QUEUE)
            return
        except MusicServiceError as exc:
            if generation != self._generation:
                self._logger.info(
                    "player.stale_build_failed", locator=track.locator, error=str(exc)
                )
                await self._emit(OutboundEvent.UNLOCK_QUEUE)
                return
            self.state = PlaybackState.IDLE
            await self._fail(exc)
            return
        finally:
            if self._build is build:
                self._build = None

        if generation != self._generation:
            self._logger.info("player.stale_build_discarded", locator=track.locator)
            source.cleanup()
            await self._emit(OutboundEvent.UNLOCK_QUEUE)
            return

        try:
            self._start(source)
        except (discord.ClientException, OSError) as exc:
            source.cleanup()
            self.state = PlaybackState.IDLE
            await self._fail(exc)
            return
        # Entered before yielding so an immediate end of playback lands on Playing.
        self._set_state(PlaybackState.PLAYING)
        await self._emit(OutboundEvent.UNLOCK_QUEUE)

    async def reject_track(self, track: Track, error: Exception) -> None:
        """Report ``track`` as unplayable without attempting it."""
        self._logger.warning(
            "player.track_not_attempted", locator=track.locator, error=str(error)
        )
        await self._fail(error)

    async def pause(self) -> None:
        if self.state is not PlaybackState.PLAYING:
            return
        self._output.pause()
        await self._transition(PlaybackState.PAUSED)

    async def resume(self) -> None:
        if self.state is not PlaybackState.PAUSED:
            return
        self._output.resume()
        await self._transition(PlaybackState.PLAYING)

    async def stop(self) -> None:
        """Force Idle, cancelling any in-flight build."""
        self._generation += 1
        build, self._build = self._build, None
        if build is not None and not build.done():
            build.cancel()
            await asyncio.wait({build})
        token, self._play_token = self._play_token, None
        if token is not None:
            self._output.stop()
        await self._transition(PlaybackState.IDLE)

    async def destroy(self) -> None:
        """Tear down the owning session; its Destroyed path stops playback."""
        await self._session.destroy()

    def on_start(self) -> None:
        self._logger.info("player.started")

    def on_finish(self) -> None:
        self._logger.info("player.finished")

    async def on_error(self, error: BaseException) -> None:
        self._logger.warning(
            "player.error", error=str(error), error_type=type(error).__name__
        )
        if self._notify_error is None:
            return
        try:
            await self._notify_error(f"Error: {error}")
        except Exception as exc:
            self._logger.warning(
                "player.error_notification_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _fail(self, error: BaseException) -> None:
        await self._emit(OutboundEvent.UNLOCK_QUEUE)
        await self.on_error(error)
        await self._emit(OutboundEvent.DELETE_ERROR_TRACK)

    def _start(self, source: discord.AudioSource) -> None:
        self._loop = asyncio.get_running_loop()
        token = object()
        self._output.play(source, after=self._after_playback(token))
        self._play_token = token

    def _after_playback(self, token: object) -> Callable[[Exception | None], None]:
        # Called from the audio player thread.
        def after(error: Exception | None) -> None:
            loop = self._loop
            if loop is None or loop.is_closed():
                return
            loop.call_soon_threadsafe(self._spawn_playback_end, token, error)

        return after

    def _spawn_playback_end(self, token: object, error: Exception | None) -> None:
        task = asyncio.get_running_loop().create_task(
            self._on_playback_end(token, error)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_playback_end(self, token: object, error: Exception | None) -> None:
        if error is not None:
            await self.on_error(error)
        if token is not self._play_token:
            return
        self._play_token = None
        await self._transition(PlaybackState.IDLE)

    def _set_state(self, new_state: PlaybackState) -> bool:
        old_state = self.state
        if old_state is new_state:
            return False
        self.state = new_state
        self._logger.debug(
            "player.state_changed",
            old_state=old_state.value,
            new_state=new_state.value,
        )
        if new_state is PlaybackState.PLAYING:
            self.on_start()
        return True

    async def _transition(self, new_state: PlaybackState) -> None:
        if not self._set_state(new_state):
            return
        if new_state is PlaybackState.IDLE:
            await self._emit(OutboundEvent.REQ_TRACK)
            self.on_finish()
