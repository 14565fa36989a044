"""
Feedback Delivery

Broadcasts feedback events to the subscribers of a meeting's channel,
persists a copy in the background and keeps per-meeting delivery metrics.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog

from meetcoach.config import settings
from meetcoach.core.models import FeedbackEvent, now_ms
from meetcoach.realtime.protocol import RealtimeMessage, RealtimeMessageType

from .repository import FeedbackRepository

logger = structlog.get_logger()

SendCallback = Callable[[RealtimeMessage], Awaitable[None]]


def channel_name(meeting_id: str) -> str:
    return f"feedback:{meeting_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FeedbackSubscription:
    """A subscriber joined to a meeting's feedback channel."""

    subscriber_id: str
    meeting_id: str
    created_at: datetime = field(default_factory=_utcnow)
    last_update: datetime | None = None
    updates_received: int = 0


@dataclass
class FeedbackChannel:
    """Per-meeting broadcast channel."""

    meeting_id: str
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    broadcast_count: int = 0
    subscribers: dict[str, FeedbackSubscription] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return channel_name(self.meeting_id)


@dataclass
class DeliveryMetrics:
    """Event counts per type and the most recent delivery latencies."""

    counts: dict[str, int] = field(default_factory=dict)
    latencies: deque[int] = field(default_factory=deque)


class FeedbackDelivery:
    """
    Fan-out of feedback events to meeting hosts.

    Features:
    - Channel per meeting (`feedback:{meeting_id}`)
    - Fire-and-forget persistence with a TTL
    - Per-type counts and bounded latency samples
    - Periodic cleanup of idle channels without subscribers
    """

    def __init__(
        self,
        repository: FeedbackRepository | None = None,
        ttl_seconds: int | None = None,
        max_latency_samples: int | None = None,
        idle_channel_seconds: int = 300,
        cleanup_interval_seconds: int = 60,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._repository = repository
        self.ttl_seconds = settings.feedback_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.max_latency_samples = (
            settings.feedback_metrics_max_samples
            if max_latency_samples is None
            else max_latency_samples
        )
        self.idle_channel_seconds = idle_channel_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock

        self._channels: dict[str, FeedbackChannel] = {}
        self._send_callbacks: dict[str, SendCallback] = {}
        self._metrics: dict[str, DeliveryMetrics] = {}
        self._persist_tasks: set[asyncio.Task] = set()

        self._lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the idle-channel cleanup loop."""
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("FeedbackDelivery started")

    async def stop(self) -> None:
        """Stop cleanup and wait for pending persistence."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await self.drain()
        logger.info("FeedbackDelivery stopped")

    # ──────────────────────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────────────────────

    async def subscribe(
        self,
        subscriber_id: str,
        meeting_id: str,
        callback: SendCallback | None = None,
    ) -> FeedbackSubscription:
        """Join a meeting's channel, creating the channel on first use."""
        async with self._lock:
            channel = self._channels.get(meeting_id)
            if channel is None:
                channel = FeedbackChannel(meeting_id=meeting_id)
                self._channels[meeting_id] = channel
                logger.info("Feedback channel created", channel=channel.name)

            subscription = FeedbackSubscription(subscriber_id=subscriber_id, meeting_id=meeting_id)
            channel.subscribers[subscriber_id] = subscription
            channel.last_activity = _utcnow()
            if callback is not None:
                self._send_callbacks[subscriber_id] = callback

        logger.info("Feedback subscription created", subscriber_id=subscriber_id, channel=channel.name)
        return subscription

    async def unsubscribe(self, subscriber_id: str, meeting_id: str) -> None:
        async with self._lock:
            channel = self._channels.get(meeting_id)
            if channel:
                channel.subscribers.pop(subscriber_id, None)
                channel.last_activity = _utcnow()
            if not any(subscriber_id in ch.subscribers for ch in self._channels.values()):
                self._send_callbacks.pop(subscriber_id, None)

        logger.debug("Feedback subscription removed", subscriber_id=subscriber_id, meeting_id=meeting_id)

    def subscriber_count(self, meeting_id: str) -> int:
        channel = self._channels.get(meeting_id)
        return len(channel.subscribers) if channel else 0

    # ──────────────────────────────────────────────────────────
    # Publishing
    # ──────────────────────────────────────────────────────────

    async def publish(self, meeting_id: str, event: FeedbackEvent) -> int:
        """
        Deliver an event to the meeting's subscribers.

        Persistence is scheduled in the background and metrics are recorded
        whether or not anyone is listening. Returns subscribers notified.
        """
        logger.info(
            "Publishing feedback",
            channel=channel_name(meeting_id),
            type=event.type.value,
            severity=event.severity.value,
        )

        notified = await self._broadcast(meeting_id, event)
        self._schedule_persist(event)
        self.record_metrics(meeting_id, event)
        return notified

    async def _broadcast(self, meeting_id: str, event: FeedbackEvent) -> int:
        channel = self._channels.get(meeting_id)
        if channel is None:
            return 0

        channel.broadcast_count += 1
        channel.last_activity = _utcnow()
        message = RealtimeMessage(
            type=RealtimeMessageType.FEEDBACK,
            meeting_id=meeting_id,
            payload=event.model_dump(mode="json"),
        )

        notified = 0
        for subscriber_id, subscription in list(channel.subscribers.items()):
            callback = self._send_callbacks.get(subscriber_id)
            if callback is None:
                continue
            try:
                await callback(message)
                subscription.last_update = _utcnow()
                subscription.updates_received += 1
                notified += 1
            except Exception as e:
                logger.error(
                    "Failed to send feedback to subscriber",
                    subscriber_id=subscriber_id,
                    error=str(e),
                )
        return notified

    def _schedule_persist(self, event: FeedbackEvent) -> None:
        if self._repository is None:
            return
        task = asyncio.create_task(self._persist(event))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _persist(self, event: FeedbackEvent) -> None:
        try:
            await self._repository.save_event(event, self.ttl_seconds)
        except Exception as e:
            logger.warning(
                "Failed to persist feedback event",
                event_id=event.id,
                meeting_id=event.meeting_id,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for in-flight persistence tasks."""
        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)

    # ──────────────────────────────────────────────────────────
    # Metrics
    # ──────────────────────────────────────────────────────────

    def record_metrics(self, meeting_id: str, event: FeedbackEvent) -> None:
        metrics = self._metrics.get(meeting_id)
        if metrics is None:
            metrics = DeliveryMetrics(latencies=deque(maxlen=self.max_latency_samples))
            self._metrics[meeting_id] = metrics

        metrics.counts[event.type.value] = metrics.counts.get(event.type.value, 0) + 1
        metrics.latencies.append(self._clock() - event.ts)

    def get_metrics(self, meeting_id: str) -> dict[str, Any]:
        metrics = self._metrics.get(meeting_id)
        if metrics is None:
            return {"meeting_id": meeting_id, "counts": {}, "average_latency_ms": None, "sample_count": 0}

        samples = len(metrics.latencies)
        return {
            "meeting_id": meeting_id,
            "counts": dict(metrics.counts),
            "average_latency_ms": round(sum(metrics.latencies) / samples) if samples else None,
            "sample_count": samples,
        }

    # ──────────────────────────────────────────────────────────
    # Housekeeping
    # ──────────────────────────────────────────────────────────

    async def close_channel(self, meeting_id: str) -> None:
        async with self._lock:
            channel = self._channels.pop(meeting_id, None)
        if channel:
            logger.info(
                "Feedback channel closed",
                channel=channel.name,
                broadcast_count=channel.broadcast_count,
            )

    async def _cleanup_loop(self) -> None:
        """Drop channels that have had no subscribers and no traffic for a while."""
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval_seconds)
                removed = await self.cleanup_idle_channels()
                if removed:
                    logger.info("Cleaned up idle feedback channels", count=removed)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Feedback channel cleanup error", error=str(e))

    async def cleanup_idle_channels(self, now: datetime | None = None) -> int:
        at = now or _utcnow()
        async with self._lock:
            idle = [
                meeting_id
                for meeting_id, channel in self._channels.items()
                if not channel.subscribers
                and (at - channel.last_activity).total_seconds() > self.idle_channel_seconds
            ]
            for meeting_id in idle:
                del self._channels[meeting_id]
        return len(idle)

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_channels": len(self._channels),
            "total_subscribers": sum(len(ch.subscribers) for ch in self._channels.values()),
            "total_broadcasts": sum(ch.broadcast_count for ch in self._channels.values()),
            "pending_persists": len(self._persist_tasks),
        }
