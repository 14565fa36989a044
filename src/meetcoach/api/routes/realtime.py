"""
Realtime WebSocket Routes

Audio ingestion from the call platform's egress and feedback subscriptions
for meeting hosts.
"""

import re
from typing import Any
from uuid import uuid4

import orjson
import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import ValidationError

from meetcoach.config import settings
from meetcoach.core.models import TrackKey
from meetcoach.engine import CoachingEngine, get_engine
from meetcoach.feedback.delivery import channel_name
from meetcoach.pipeline import AudioChunkMeta
from meetcoach.realtime.protocol import (
    ErrorPayload,
    MuteFrame,
    RealtimeMessage,
    RealtimeMessageType,
    SubscriptionConfirmedPayload,
)

logger = structlog.get_logger()

router = APIRouter()

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_\-.]")


# ══════════════════════════════════════════════════════════════
# Query Parsing
# ══════════════════════════════════════════════════════════════


def sanitize(value: str | None, fallback: str) -> str:
    """Replace anything outside [A-Za-z0-9_.-] with an underscore."""
    cleaned = _UNSAFE_CHARS.sub("_", value if value is not None else fallback)
    return cleaned or fallback


def parse_positive_int(value: str | None, default: int) -> int:
    try:
        parsed = int(value) if value else 0
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def parse_positive_float(value: str | None) -> float | None:
    try:
        parsed = float(value) if value else 0.0
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def parse_control_frame(text: str) -> MuteFrame | None:
    """
    Parse a text control frame.

    Raises orjson.JSONDecodeError for non-JSON text. JSON without a boolean
    `muted` field is not a control frame and yields None.
    """
    payload = orjson.loads(text)
    try:
        return MuteFrame.model_validate(payload, strict=True)
    except ValidationError:
        return None


# ══════════════════════════════════════════════════════════════
# Audio Ingestion Endpoint
# ══════════════════════════════════════════════════════════════


@router.websocket("/egress-audio")
async def egress_audio_websocket(
    websocket: WebSocket,
    meeting_id: str | None = Query(None, alias="meetingId"),
    room: str | None = Query(None),
    room_name: str | None = Query(None, alias="roomName"),
    participant: str | None = Query(None),
    track: str | None = Query(None),
    track_id: str | None = Query(None, alias="trackId"),
    sample_rate: str | None = Query(None, alias="sampleRate"),
    channels: str | None = Query(None),
    group_seconds: str | None = Query(None, alias="groupSeconds"),
    engine: CoachingEngine = Depends(get_engine),
):
    """
    Per-track PCM ingestion.

    Protocol:
    1. Egress connects to /ws/egress-audio?meetingId=..&participant=..&track=..
    2. Binary frames carry PCM s16le audio in the declared format
    3. Text frames carry control JSON, currently `{"muted": bool}`
    4. Closing the socket drops any partially buffered segment
    """
    room_id = sanitize(room if room is not None else room_name, "room")
    track_name = sanitize(track if track is not None else track_id, "track")
    meeting = meeting_id or room_id

    if participant is not None:
        participant_id = sanitize(participant, "participant")
    else:
        participant_id = engine.identity.resolve_participant_by_track(meeting, track_name) or "participant"

    key = TrackKey(meeting, participant_id, track_name)
    meta = AudioChunkMeta(
        sample_rate=parse_positive_int(sample_rate, settings.audio_default_sample_rate),
        channels=parse_positive_int(channels, settings.audio_default_channels),
        segment_seconds=parse_positive_float(group_seconds),
    )

    await websocket.accept()
    logger.info(
        "Audio egress connected",
        track=str(key),
        sample_rate=meta.sample_rate,
        channels=meta.channels,
    )

    muted = False
    total_bytes = 0

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            data = message.get("bytes")
            if data is not None:
                if not muted:
                    total_bytes += len(data)
                    engine.enqueue_audio(key, meta, data)
                continue

            text = message.get("text")
            if text is None:
                continue

            try:
                frame = parse_control_frame(text)
            except orjson.JSONDecodeError:
                logger.warning("Non-JSON text frame received", track=str(key), text=text[:200])
                continue
            if frame is None:
                continue
            muted = frame.muted
            logger.info("Muted state changed", track=str(key), muted=muted)

    except WebSocketDisconnect:
        pass

    except Exception as e:
        logger.error("Audio egress error", track=str(key), error=str(e))

    finally:
        await engine.end_track(key)
        logger.info("Audio egress disconnected", track=str(key), total_bytes=total_bytes)


# ══════════════════════════════════════════════════════════════
# Feedback Subscription Endpoint
# ══════════════════════════════════════════════════════════════


@router.websocket("/feedback/{meeting_id}")
async def feedback_subscribe_websocket(
    websocket: WebSocket,
    meeting_id: str,
    engine: CoachingEngine = Depends(get_engine),
):
    """
    Receive feedback events for a meeting.

    Read-only apart from `ping`, which is answered with `pong`. Any other
    JSON message gets a recoverable `error` reply; binary frames and non-JSON
    text are ignored.
    """
    await websocket.accept()

    subscriber_id = str(uuid4())

    async def send_callback(message: RealtimeMessage):
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.send_json(message.model_dump(mode="json"))

    await engine.delivery.subscribe(subscriber_id, meeting_id, send_callback)

    confirmed = RealtimeMessage(
        type=RealtimeMessageType.SUBSCRIPTION_CONFIRMED,
        meeting_id=meeting_id,
        payload=SubscriptionConfirmedPayload(
            channel=channel_name(meeting_id),
            subscriber_id=subscriber_id,
        ).model_dump(),
    )
    await websocket.send_json(confirmed.model_dump(mode="json"))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            text = message.get("text")
            if text is None:
                continue

            try:
                data = orjson.loads(text)
            except orjson.JSONDecodeError:
                continue

            message_type = data.get("type") if isinstance(data, dict) else None
            if message_type == RealtimeMessageType.PING.value:
                reply = RealtimeMessage(type=RealtimeMessageType.PONG, meeting_id=meeting_id)
            else:
                reply = RealtimeMessage(
                    type=RealtimeMessageType.ERROR,
                    meeting_id=meeting_id,
                    payload=ErrorPayload(
                        code="UNSUPPORTED_MESSAGE",
                        message=f"Unsupported message type: {message_type}",
                    ).model_dump(),
                )
            await websocket.send_json(reply.model_dump(mode="json"))

    except WebSocketDisconnect:
        pass

    except Exception as e:
        logger.error("Feedback subscription error", meeting_id=meeting_id, error=str(e))

    finally:
        await engine.delivery.unsubscribe(subscriber_id, meeting_id)


# ══════════════════════════════════════════════════════════════
# HTTP Endpoints for Engine Info
# ══════════════════════════════════════════════════════════════


@router.get("/stats")
async def get_realtime_stats(
    engine: CoachingEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Buffer, prosody, aggregator and delivery statistics."""
    return engine.get_stats()
