"""
Feedback Repository

Redis-backed history of delivered feedback events. Each event is stored under
its own key with a TTL and indexed per meeting in a sorted set scored by
expiry time, so expired ids can be purged by score.
"""

from typing import Awaitable, Callable

import redis.asyncio as redis
import structlog

from meetcoach.config import settings
from meetcoach.core.models import FeedbackEvent, now_ms
from meetcoach.db.redis import get_redis

logger = structlog.get_logger()

EVENT_KEY = "feedback:event:{event_id}"
MEETING_INDEX_KEY = "feedback:meeting:{meeting_id}"


def event_key(event_id: str) -> str:
    return EVENT_KEY.format(event_id=event_id)


def meeting_index_key(meeting_id: str) -> str:
    return MEETING_INDEX_KEY.format(meeting_id=meeting_id)


class FeedbackRepository:
    """Persists feedback events with a time-to-live."""

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[redis.Redis]] = get_redis,
        ttl_seconds: int | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._client_factory = client_factory
        self.ttl_seconds = settings.feedback_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock

    async def save_event(self, event: FeedbackEvent, ttl_seconds: int | None = None) -> int:
        """
        Store an event and index it under its meeting.

        Returns the expiry time in epoch milliseconds.
        """
        ttl = ttl_seconds or self.ttl_seconds
        expires_at = event.ts + ttl * 1000
        client = await self._client_factory()

        index = meeting_index_key(event.meeting_id)
        await client.set(event_key(event.id), event.model_dump_json(), ex=ttl)
        await client.zadd(index, {event.id: expires_at})
        await client.expire(index, ttl)

        try:
            purged = await client.zremrangebyscore(index, "-inf", self._clock())
            if purged:
                logger.debug("Purged expired feedback ids", meeting_id=event.meeting_id, count=purged)
        except Exception as e:
            logger.warning("Feedback purge failed", meeting_id=event.meeting_id, error=str(e))

        return expires_at

    async def list_events(self, meeting_id: str, limit: int | None = None) -> list[FeedbackEvent]:
        """Unexpired events for a meeting, oldest first."""
        client = await self._client_factory()
        ids = await client.zrangebyscore(meeting_index_key(meeting_id), self._clock(), "+inf")
        if not ids:
            return []

        raw = await client.mget([event_key(event_id) for event_id in ids])
        events = []
        for value in raw:
            if value is None:
                continue
            try:
                events.append(FeedbackEvent.model_validate_json(value))
            except ValueError as e:
                logger.warning("Skipping unreadable feedback event", meeting_id=meeting_id, error=str(e))

        events.sort(key=lambda e: e.ts)
        if limit is not None:
            events = events[-limit:]
        return events
