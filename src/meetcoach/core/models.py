"""
MeetCoach Core Domain Models

Keys, samples and feedback events shared by the pipeline, the aggregator and
the delivery layer.
"""

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, NamedTuple

from pydantic import BaseModel, Field


# ══════════════════════════════════════════════════════════════
# Keys
# ══════════════════════════════════════════════════════════════


class TrackKey(NamedTuple):
    """Identifies one audio source within a meeting."""

    meeting_id: str
    participant_id: str
    track_id: str

    def __str__(self) -> str:
        return f"{self.meeting_id}/{self.participant_id}/{self.track_id}"


# ══════════════════════════════════════════════════════════════
# Enums
# ══════════════════════════════════════════════════════════════


class ParticipantRole(str, Enum):
    """Participant role resolved from call-platform metadata."""

    HOST = "host"
    GUEST = "guest"
    UNKNOWN = "unknown"


class FeedbackType(str, Enum):
    """Coaching feedback types."""

    # Signal quality
    VOLUME_LOW = "volume_low"
    VOLUME_HIGH = "volume_high"
    PROLONGED_SILENCE = "prolonged_silence"

    # Turn-taking
    SPEECH_OVERLAP = "speech_overlap"
    PROLONGED_MONOLOGUE = "prolonged_monologue"
    FREQUENT_INTERRUPTIONS = "frequent_interruptions"
    POST_INTERRUPTION_DIP = "post_interruption_dip"

    # Emotion model
    HOSTILITY = "hostility"
    BOREDOM = "boredom"
    FRUSTRATION = "frustration"
    CONFUSION = "confusion"
    POSITIVE_ENGAGEMENT = "positive_engagement"

    # Prosody
    HIGH_ENTHUSIASM = "high_enthusiasm"
    PROSODIC_MONOTONY = "prosodic_monotony"
    ACCELERATED_PACE = "accelerated_pace"
    PAUSED_PACE = "paused_pace"

    # Group
    GROUP_LOW_ENERGY = "group_low_energy"
    EMOTIONAL_POLARIZATION = "emotional_polarization"


class FeedbackSeverity(str, Enum):
    """Feedback severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


GROUP_PARTICIPANT_ID = "group"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ══════════════════════════════════════════════════════════════
# Ingestion
# ══════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Sample:
    """One analysis point for a participant, produced per segment or per model response."""

    timestamp_ms: int
    speech_detected: bool
    valence: float | None = None
    arousal: float | None = None
    rms_dbfs: float | None = None
    emotions: dict[str, float] | None = None


@dataclass(frozen=True, slots=True)
class IngestionEvent:
    """A sample attributed to a track, as emitted by the prosody bridge."""

    key: TrackKey
    role: ParticipantRole
    sample: Sample
    source: Literal["local", "model"] = "local"
    warnings: tuple[str, ...] = field(default_factory=tuple)
    raw_preview: str = ""
    raw_hash: str = ""

    @property
    def meeting_id(self) -> str:
        return self.key.meeting_id

    @property
    def participant_id(self) -> str:
        return self.key.participant_id


# ══════════════════════════════════════════════════════════════
# Feedback
# ══════════════════════════════════════════════════════════════


class MeetCoachModel(BaseModel):
    """Base model with common configuration."""

    model_config = {"from_attributes": True, "populate_by_name": True}


class FeedbackWindow(MeetCoachModel):
    """Time window (epoch ms) a feedback event was computed over."""

    start: int
    end: int


class FeedbackMetadata(MeetCoachModel):
    """Numeric context attached to a feedback event."""

    rms_dbfs: float | None = None
    speech_coverage: float | None = None
    valence_ema: float | None = None
    arousal_ema: float | None = None


def make_event_id(ts_ms: int | None = None) -> str:
    """Opaque, unique event id: hex timestamp plus a random suffix."""
    ts = now_ms() if ts_ms is None else ts_ms
    return f"{ts:x}-{secrets.token_hex(4)}"


class FeedbackEvent(MeetCoachModel):
    """A coaching event delivered to meeting hosts. Write-once."""

    model_config = {"from_attributes": True, "populate_by_name": True, "frozen": True}

    id: str = Field(default_factory=make_event_id)
    type: FeedbackType
    severity: FeedbackSeverity
    ts: int
    meeting_id: str
    participant_id: str
    participant_name: str | None = None
    window: FeedbackWindow
    message: str
    tips: list[str] = Field(default_factory=list)
    metadata: FeedbackMetadata = Field(default_factory=FeedbackMetadata)

    @property
    def is_group(self) -> bool:
        return self.participant_id == GROUP_PARTICIPANT_ID
