"""Pydantic models and event names for the control-plane protocol."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class InboundEvent(str, Enum):
    """Commands issued by the control plane."""

    INITIALIZE = "initialize"
    NEW_TRACK = "newTrack"
    MUSIC_SKIP = "musicSkip"
    MUSIC_PAUSE = "musicPause"
    MUSIC_RESUME = "musicResume"
    DESTROY = "destroy"


class OutboundEvent(str, Enum):
    """Lifecycle signals relayed back to the control plane."""

    REQ_TRACK = "reqTrack"
    UNLOCK_QUEUE = "unlockQueue"
    DELETE_ERROR_TRACK = "deleteErrorTrack"
    E_PLAYER_CLASS = "E_PlayerClass"


class Track(BaseModel):
    """A playback request: where to fetch media and how much to attenuate it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    locator: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("locator", "url"),
        description="Media URL understood by the extractor",
    )
    loudness_db: float = Field(
        ...,
        validation_alias=AliasChoices("loudnessDb", "loudnessDB", "loudness_db"),
        description="Volume adjustment in decibels; expected to be negative",
    )


class ControlMessage(BaseModel):
    """Envelope for one event frame on the control-plane socket."""

    event: str = Field(..., min_length=1, description="Event name")
    args: list[Any] = Field(default_factory=list, description="Positional arguments")
