"""
MeetCoach Audio Pipeline

Turns raw per-track PCM into WAV segments, streams them to the prosody model
and normalizes the model's responses into ingestion samples.
"""

from .prosody import ConnectionState, ProsodyBridge, ProsodyConnection
from .scoring import ProsodyReading, interpret_message
from .segments import AudioChunkMeta, SegmentBuffer

__all__ = [
    # Buffering
    "AudioChunkMeta",
    "SegmentBuffer",
    # Streaming
    "ConnectionState",
    "ProsodyBridge",
    "ProsodyConnection",
    # Parsing
    "ProsodyReading",
    "interpret_message",
]
