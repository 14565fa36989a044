"""
Coaching Engine

Wires the audio pipeline to the feedback engine for the running service:
segment buffer -> prosody bridge -> aggregator -> delivery.
"""

from typing import Any

import structlog

from meetcoach.core.models import FeedbackEvent, IngestionEvent, TrackKey
from meetcoach.feedback import FeedbackAggregator, FeedbackDelivery, FeedbackRepository
from meetcoach.pipeline import AudioChunkMeta, ProsodyBridge, SegmentBuffer
from meetcoach.realtime import IdentityIndex

logger = structlog.get_logger()


class CoachingEngine:
    """Owns one instance of every component and the hand-offs between them."""

    def __init__(
        self,
        identity: IdentityIndex | None = None,
        repository: FeedbackRepository | None = None,
        delivery: FeedbackDelivery | None = None,
        aggregator: FeedbackAggregator | None = None,
        bridge: ProsodyBridge | None = None,
        buffer: SegmentBuffer | None = None,
    ) -> None:
        self.identity = identity or IdentityIndex()
        self.repository = repository or FeedbackRepository()
        self.delivery = delivery or FeedbackDelivery(repository=self.repository)
        self.aggregator = aggregator or FeedbackAggregator(name_resolver=self.identity.get_name)
        self.bridge = bridge or ProsodyBridge(
            sink=self.handle_ingestion,
            role_resolver=self.identity.get_role,
        )
        self.buffer = buffer or SegmentBuffer(dispatch=self.bridge.send)

    async def start(self) -> None:
        await self.delivery.start()
        logger.info("Coaching engine started")

    async def stop(self) -> None:
        """Close prosody streams and let in-flight work finish."""
        await self.bridge.close_all()
        await self.buffer.drain()
        await self.delivery.stop()
        logger.info("Coaching engine stopped")

    def enqueue_audio(self, key: TrackKey, meta: AudioChunkMeta, chunk: bytes) -> bool:
        return self.buffer.enqueue(key, meta, chunk)

    async def end_track(self, key: TrackKey) -> None:
        self.buffer.clear(key)
        await self.bridge.close(key)

    async def handle_ingestion(self, event: IngestionEvent) -> list[FeedbackEvent]:
        """Run the aggregator on one sample and publish whatever it produced."""
        events = self.aggregator.ingest(
            event.sample,
            meeting_id=event.meeting_id,
            participant_id=event.participant_id,
            role=event.role,
        )
        for feedback in events:
            await self.delivery.publish(event.meeting_id, feedback)
        return events

    async def end_meeting(self, meeting_id: str) -> None:
        """Forget identities, rolling state and the broadcast channel of a meeting."""
        self.aggregator.clear_meeting(meeting_id)
        self.identity.clear_meeting(meeting_id)
        await self.delivery.close_channel(meeting_id)
        logger.info("Meeting ended", meeting_id=meeting_id)

    def get_stats(self) -> dict[str, Any]:
        return {
            "buffer": self.buffer.get_stats(),
            "prosody": self.bridge.get_stats(),
            "aggregator": self.aggregator.get_stats(),
            "delivery": self.delivery.get_stats(),
        }


# Global instance
engine = CoachingEngine()


async def get_engine() -> CoachingEngine:
    """Dependency injection for the coaching engine."""
    return engine
