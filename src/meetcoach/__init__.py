"""
MeetCoach

Real-time audio aggregation and heuristic coaching feedback for live calls.
"""

__version__ = "0.1.0"
