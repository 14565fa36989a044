"""Core domain models."""

from .models import (
    FeedbackEvent,
    FeedbackMetadata,
    FeedbackSeverity,
    FeedbackType,
    FeedbackWindow,
    IngestionEvent,
    ParticipantRole,
    Sample,
    TrackKey,
)

__all__ = [
    "FeedbackEvent",
    "FeedbackMetadata",
    "FeedbackSeverity",
    "FeedbackType",
    "FeedbackWindow",
    "IngestionEvent",
    "ParticipantRole",
    "Sample",
    "TrackKey",
]
