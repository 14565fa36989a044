"""
Realtime WebSocket Protocol

Message envelopes for the feedback subscription socket and control frames on
the audio ingestion socket.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RealtimeMessageType(str, Enum):
    """WebSocket message types."""

    # Client -> Server
    PING = "ping"

    # Server -> Client
    SUBSCRIPTION_CONFIRMED = "subscription.confirmed"
    FEEDBACK = "feedback"
    ERROR = "error"
    PONG = "pong"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RealtimeMessage(BaseModel):
    """Base WebSocket message format."""

    model_config = {"use_enum_values": True}

    type: RealtimeMessageType
    timestamp: datetime = Field(default_factory=_utcnow)
    meeting_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class SubscriptionConfirmedPayload(BaseModel):
    """Payload for subscription.confirmed."""

    channel: str
    subscriber_id: str


class ErrorPayload(BaseModel):
    """Payload for error messages."""

    code: str
    message: str
    recoverable: bool = True


class MuteFrame(BaseModel):
    """Text control frame on the audio ingestion socket."""

    muted: bool
