"""
MeetCoach Realtime Module

Participant identity and the WebSocket protocol for feedback subscribers.
"""

from .identity import IdentityIndex
from .protocol import (
    ErrorPayload,
    MuteFrame,
    RealtimeMessage,
    RealtimeMessageType,
    SubscriptionConfirmedPayload,
)

__all__ = [
    # Identity
    "IdentityIndex",
    # Protocol
    "ErrorPayload",
    "MuteFrame",
    "RealtimeMessage",
    "RealtimeMessageType",
    "SubscriptionConfirmedPayload",
]
