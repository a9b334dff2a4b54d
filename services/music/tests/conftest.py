"""Shared fixtures for the music service tests."""

from __future__ import annotations

import io
import os

import pytest

from services.music.config import PipelineConfig, SessionConfig
from services.music.errors import PipelineFailure
from services.music.models import Track


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        max_sessions=1,
        max_rejoin_attempts=5,
        rejoin_backoff_seconds=5.0,
        move_grace_seconds=0.05,
        ready_timeout_seconds=0.2,
        session_wait_timeout_seconds=0.2,
    )


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(build_timeout_seconds=1.0)


@pytest.fixture
def track() -> Track:
    return Track(locator="https://media.example/watch?v=abc", loudness_db=-10.0)


@pytest.fixture
def pipeline_failure() -> PipelineFailure:
    return PipelineFailure("extractor exited", stage="prime", locator="L")


@pytest.fixture
def fake_stdout() -> io.BytesIO:
    return io.BytesIO(b"webm-bytes")


_ENV_PREFIXES = ("MUSIC_", "DISCORD_", "CONTROL_PLANE_", "LOG_")


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Environment variables override config kwargs; keep them out of tests."""
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES) or name == "SERVICE_NAME":
            monkeypatch.delenv(name, raising=False)
