"""Tests for the shared structlog configuration."""

import io
import json
import logging

import pytest

from services.common.structured_logging import (
    configure_logging,
    correlation_context,
    get_logger,
)


@pytest.fixture
def log_stream():
    stream = io.StringIO()
    configure_logging("DEBUG", json_logs=True, service_name="music", stream=stream)
    yield stream
    configure_logging("INFO", json_logs=False, service_name="music")


def _records(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


@pytest.mark.unit
def test_json_logs_carry_service_and_event(log_stream: io.StringIO) -> None:
    get_logger("services.music.test").info("voice.state_changed", new_status="ready")

    record = _records(log_stream)[-1]
    assert record["event"] == "voice.state_changed"
    assert record["new_status"] == "ready"
    assert record["service"] == "music"
    assert record["level"] == "info"


@pytest.mark.unit
def test_correlation_context_binds_id(log_stream: io.StringIO) -> None:
    logger = get_logger("services.music.test")

    with correlation_context("control-abc"):
        logger.info("control.command_received")
    logger.info("control.link_closed")

    inside, outside = _records(log_stream)[-2:]
    assert inside["correlation_id"] == "control-abc"
    assert "correlation_id" not in outside


@pytest.mark.unit
def test_noisy_discord_loggers_are_clamped(log_stream: io.StringIO) -> None:
    assert logging.getLogger("discord.http").getEffectiveLevel() == logging.WARNING
    assert logging.getLogger("discord.gateway").getEffectiveLevel() == logging.INFO
