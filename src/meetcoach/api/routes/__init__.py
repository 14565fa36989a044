"""API Route modules."""

from . import feedback, health, meetings, realtime

__all__ = ["feedback", "health", "meetings", "realtime"]
