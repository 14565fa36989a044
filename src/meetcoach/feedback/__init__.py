"""
MeetCoach Feedback Engine

Rolling per-participant state, heuristic detectors, and delivery of the
resulting coaching events to meeting hosts.
"""

from .aggregator import FeedbackAggregator
from .delivery import FeedbackDelivery, channel_name
from .repository import FeedbackRepository
from .state import MeetingState, ParticipantWindowState, WindowStats

__all__ = [
    "FeedbackAggregator",
    "FeedbackDelivery",
    "FeedbackRepository",
    "MeetingState",
    "ParticipantWindowState",
    "WindowStats",
    "channel_name",
]
