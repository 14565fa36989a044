"""
Unit Tests for API Routes

Tests the FastAPI route handlers: health checks, participant registration,
feedback views and the realtime WebSocket endpoints.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import orjson
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState

from meetcoach.api.app import create_app
from meetcoach.api.routes.realtime import (
    egress_audio_websocket,
    feedback_subscribe_websocket,
    parse_control_frame,
    parse_positive_float,
    parse_positive_int,
    sanitize,
)
from meetcoach.config import settings
from meetcoach.core.models import (
    FeedbackEvent,
    FeedbackSeverity,
    FeedbackType,
    FeedbackWindow,
    Sample,
    TrackKey,
)
from meetcoach.engine import CoachingEngine, get_engine
from meetcoach.feedback import FeedbackAggregator, FeedbackDelivery
from meetcoach.pipeline import AudioChunkMeta

T0 = 1_700_000_000_000


def make_event(event_id: str = "evt-1", ts: int = T0) -> FeedbackEvent:
    return FeedbackEvent(
        id=event_id,
        type=FeedbackType.SPEECH_OVERLAP,
        severity=FeedbackSeverity.WARNING,
        ts=ts,
        meeting_id="meeting-1",
        participant_id="alice",
        window=FeedbackWindow(start=ts - 10_000, end=ts),
        message="alice and someone else are often talking at the same time.",
    )


@pytest.fixture
def engine():
    """Fresh engine with an in-memory repository double."""
    return CoachingEngine(
        repository=AsyncMock(),
        aggregator=FeedbackAggregator(include_host=False, ema_alpha=0.3, min_gap_ms=5000, clock=lambda: T0),
    )


@pytest.fixture
def app(engine):
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: engine
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


# ══════════════════════════════════════════════════════════════
# Health Routes Tests
# ══════════════════════════════════════════════════════════════


class TestHealthRoutes:
    """Test health check endpoints."""

    def test_health_check(self, client):
        with patch("meetcoach.db.redis.is_initialized", return_value=False):
            response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert data["meetings"] == 0
        assert data["prosody_streams"] == 0
        assert data["history"] == "disabled"

    def test_health_check_reports_history_enabled(self, client):
        with patch("meetcoach.db.redis.is_initialized", return_value=True):
            response = client.get("/health")

        assert response.json()["history"] == "enabled"

    def test_liveness_check(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readiness_check_ready(self, client):
        redis_client = AsyncMock()

        with patch("meetcoach.db.redis.get_redis", AsyncMock(return_value=redis_client)):
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready"}
        redis_client.ping.assert_awaited_once()

    def test_readiness_check_without_redis(self, client):
        with patch("meetcoach.db.redis.get_redis", AsyncMock(side_effect=RuntimeError("Redis not initialized"))):
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json() == {"status": "not_ready", "history": "not initialized"}

    def test_readiness_check_redis_unreachable(self, client):
        redis_client = AsyncMock()
        redis_client.ping.side_effect = ConnectionError("refused")

        with patch("meetcoach.db.redis.get_redis", AsyncMock(return_value=redis_client)):
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json() == {"status": "not_ready", "history": "unreachable"}


# ══════════════════════════════════════════════════════════════
# Meeting Routes Tests
# ══════════════════════════════════════════════════════════════


class TestMeetingRoutes:
    """Test participant registration and meeting teardown."""

    def test_register_participant(self, client, engine):
        response = client.post(
            "/api/v1/meetings/meeting-1/participants",
            json={
                "participant_identity": "alice",
                "track_id": "TR_1",
                "metadata": '{"role": "host", "name": "Alice"}',
            },
        )

        assert response.status_code == 201
        assert response.json() == {
            "meeting_id": "meeting-1",
            "participant_identity": "alice",
            "role": "host",
            "name": "Alice",
        }
        assert engine.identity.resolve_participant_by_track("meeting-1", "TR_1") == "alice"

    def test_register_with_object_metadata(self, client):
        response = client.post(
            "/api/v1/meetings/meeting-1/participants",
            json={"participant_identity": "bob", "metadata": {"isHost": False}},
        )

        assert response.status_code == 201
        assert response.json()["role"] == "guest"
        assert response.json()["name"] is None

    def test_register_without_metadata(self, client):
        response = client.post(
            "/api/v1/meetings/meeting-1/participants",
            json={"participant_identity": "carol"},
        )

        assert response.status_code == 201
        assert response.json()["role"] == "unknown"

    def test_register_requires_identity(self, client):
        response = client.post("/api/v1/meetings/meeting-1/participants", json={})

        assert response.status_code == 422

    def test_end_meeting(self, client, engine):
        engine.aggregator.ingest(Sample(timestamp_ms=T0, speech_detected=True), "meeting-1", "alice")

        response = client.delete("/api/v1/meetings/meeting-1")

        assert response.status_code == 204
        assert engine.aggregator.get_meeting_state("meeting-1") is None


# ══════════════════════════════════════════════════════════════
# Feedback Routes Tests
# ══════════════════════════════════════════════════════════════


class TestFeedbackRoutes:
    """Test debug, metrics and history endpoints."""

    def test_debug(self, client, engine):
        engine.aggregator.ingest(Sample(timestamp_ms=T0, speech_detected=True), "meeting-1", "alice")

        response = client.get("/api/v1/feedback/debug/meeting-1")

        assert response.status_code == 200
        [participant] = response.json()["participants"]
        assert participant["participant_id"] == "alice"
        assert participant["speech_coverage_10s"] == 1.0
        assert participant["rms_mean_3s"] is None
        assert participant["samples"] == 1

    def test_debug_unknown_meeting(self, client):
        response = client.get("/api/v1/feedback/debug/nope")

        assert response.json() == {"meeting_id": "nope", "participants": []}

    def test_metrics(self, client, engine):
        engine.delivery = FeedbackDelivery(clock=lambda: T0 + 40)
        engine.delivery.record_metrics("meeting-1", make_event())

        response = client.get("/api/v1/feedback/metrics/meeting-1")

        assert response.status_code == 200
        assert response.json() == {
            "meeting_id": "meeting-1",
            "counts": {"speech_overlap": 1},
            "average_latency_ms": 40,
            "sample_count": 1,
        }

    def test_history(self, client, engine):
        engine.repository.list_events.return_value = [make_event("evt-1"), make_event("evt-2", T0 + 1000)]

        response = client.get("/api/v1/feedback/history/meeting-1", params={"limit": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [e["id"] for e in data["events"]] == ["evt-1", "evt-2"]
        assert data["events"][0]["type"] == "speech_overlap"
        engine.repository.list_events.assert_awaited_once_with("meeting-1", limit=2)

    def test_history_limit_validated(self, client):
        response = client.get("/api/v1/feedback/history/meeting-1", params={"limit": 0})

        assert response.status_code == 422

    def test_history_unavailable(self, client, engine):
        engine.repository.list_events.side_effect = RuntimeError("Redis not initialized")

        response = client.get("/api/v1/feedback/history/meeting-1")

        assert response.status_code == 503
        assert response.json()["detail"] == "Feedback history unavailable"


# ══════════════════════════════════════════════════════════════
# Realtime Helper Tests
# ══════════════════════════════════════════════════════════════


class TestQueryParsing:
    """Test query and control-frame parsing for the ingestion socket."""

    @pytest.mark.parametrize(
        "value,expected",
        [("room-1", "room-1"), ("My Room!", "My_Room_"), ("a/b.c", "a_b.c"), ("", "room"), (None, "room")],
    )
    def test_sanitize(self, value, expected):
        assert sanitize(value, "room") == expected

    @pytest.mark.parametrize(
        "value,expected",
        [("16000", 16000), ("0", 48000), ("-2", 48000), ("abc", 48000), ("1.5", 48000), (None, 48000)],
    )
    def test_parse_positive_int(self, value, expected):
        assert parse_positive_int(value, 48000) == expected

    @pytest.mark.parametrize("value,expected", [("1.5", 1.5), ("2", 2.0), ("0", None), ("x", None), (None, None)])
    def test_parse_positive_float(self, value, expected):
        assert parse_positive_float(value) == expected

    def test_mute_frame(self):
        assert parse_control_frame('{"muted": true}').muted is True
        assert parse_control_frame('{"muted": false}').muted is False

    @pytest.mark.parametrize("text", ['{"other": 1}', '{"muted": "yes"}', "[1, 2]"])
    def test_not_a_control_frame(self, text):
        assert parse_control_frame(text) is None

    def test_non_json_raises(self):
        with pytest.raises(orjson.JSONDecodeError):
            parse_control_frame("hello")


# ══════════════════════════════════════════════════════════════
# Audio Ingestion Endpoint Tests
# ══════════════════════════════════════════════════════════════


class FakeEgressSocket:
    """Scripted stand-in for the ingestion WebSocket."""

    def __init__(self, messages):
        self.accept = AsyncMock()
        self.receive = AsyncMock(side_effect=messages)


def binary(data: bytes) -> dict:
    return {"type": "websocket.receive", "bytes": data}


def text(data: str) -> dict:
    return {"type": "websocket.receive", "text": data}


DISCONNECT = {"type": "websocket.disconnect", "code": 1000}


async def run_egress(engine, messages, **params) -> FakeEgressSocket:
    query = {
        "meeting_id": None,
        "room": None,
        "room_name": None,
        "participant": None,
        "track": None,
        "track_id": None,
        "sample_rate": None,
        "channels": None,
        "group_seconds": None,
    }
    query.update(params)
    socket = FakeEgressSocket(messages)
    await egress_audio_websocket(socket, engine=engine, **query)
    return socket


@pytest.fixture
def egress_engine(engine):
    engine.enqueue_audio = MagicMock(return_value=False)
    engine.end_track = AsyncMock()
    return engine


class TestEgressAudio:
    """Test the per-track PCM ingestion socket."""

    @pytest.mark.asyncio
    async def test_frames_enqueued_with_declared_format(self, egress_engine):
        socket = await run_egress(
            egress_engine,
            [binary(b"\x01\x00" * 4), binary(b"\x02\x00" * 4), DISCONNECT],
            meeting_id="meeting-1",
            participant="alice",
            track="TR_1",
            sample_rate="16000",
            channels="2",
            group_seconds="1.5",
        )

        socket.accept.assert_awaited_once()
        key = TrackKey("meeting-1", "alice", "TR_1")
        meta = AudioChunkMeta(sample_rate=16000, channels=2, segment_seconds=1.5)
        assert egress_engine.enqueue_audio.call_count == 2
        egress_engine.enqueue_audio.assert_called_with(key, meta, b"\x02\x00" * 4)
        egress_engine.end_track.assert_awaited_once_with(key)

    @pytest.mark.asyncio
    async def test_format_defaults(self, egress_engine):
        await run_egress(
            egress_engine,
            [binary(b"\x00\x00"), DISCONNECT],
            meeting_id="meeting-1",
            participant="alice",
            sample_rate="abc",
            group_seconds="-1",
        )

        _, meta, _ = egress_engine.enqueue_audio.call_args.args
        assert meta == AudioChunkMeta(
            sample_rate=settings.audio_default_sample_rate,
            channels=settings.audio_default_channels,
            segment_seconds=None,
        )

    @pytest.mark.asyncio
    async def test_muted_frames_dropped(self, egress_engine):
        await run_egress(
            egress_engine,
            [
                binary(b"a"),
                text('{"muted": true}'),
                binary(b"b"),
                text("not json"),
                text('{"muted": "yes"}'),
                binary(b"c"),
                text('{"muted": false}'),
                binary(b"d"),
                DISCONNECT,
            ],
            meeting_id="meeting-1",
            participant="alice",
        )

        chunks = [call.args[2] for call in egress_engine.enqueue_audio.call_args_list]
        assert chunks == [b"a", b"d"]

    @pytest.mark.asyncio
    async def test_meeting_falls_back_to_room(self, egress_engine):
        await run_egress(egress_engine, [DISCONNECT], room="Team Sync!", participant="alice")

        egress_engine.end_track.assert_awaited_once_with(TrackKey("Team_Sync_", "alice", "track"))

    @pytest.mark.asyncio
    async def test_room_name_alias(self, egress_engine):
        await run_egress(egress_engine, [DISCONNECT], room_name="weekly", participant="bob", track_id="TR_9")

        egress_engine.end_track.assert_awaited_once_with(TrackKey("weekly", "bob", "TR_9"))

    @pytest.mark.asyncio
    async def test_participant_resolved_from_track(self, egress_engine):
        egress_engine.identity.register_track("meeting-1", "TR_1", "alice")

        await run_egress(egress_engine, [DISCONNECT], meeting_id="meeting-1", track="TR_1")

        egress_engine.end_track.assert_awaited_once_with(TrackKey("meeting-1", "alice", "TR_1"))

    @pytest.mark.asyncio
    async def test_unknown_track_uses_placeholder(self, egress_engine):
        await run_egress(egress_engine, [DISCONNECT], meeting_id="meeting-1", track="TR_2")

        egress_engine.end_track.assert_awaited_once_with(TrackKey("meeting-1", "participant", "TR_2"))

    @pytest.mark.asyncio
    async def test_receive_error_still_ends_track(self, egress_engine):
        await run_egress(
            egress_engine,
            [binary(b"a"), RuntimeError("transport failure")],
            meeting_id="meeting-1",
            participant="alice",
            track="TR_1",
        )

        egress_engine.end_track.assert_awaited_once_with(TrackKey("meeting-1", "alice", "TR_1"))


# ══════════════════════════════════════════════════════════════
# Feedback Subscription Endpoint Tests
# ══════════════════════════════════════════════════════════════


class TestFeedbackSubscription:
    """Test the host-facing feedback socket."""

    def test_subscription_confirmed_and_ping(self, client, engine):
        with client.websocket_connect("/ws/feedback/meeting-1") as ws:
            confirmed = ws.receive_json()

            assert confirmed["type"] == "subscription.confirmed"
            assert confirmed["meeting_id"] == "meeting-1"
            assert confirmed["payload"]["channel"] == "feedback:meeting-1"
            assert confirmed["payload"]["subscriber_id"]
            assert engine.delivery.subscriber_count("meeting-1") == 1

            ws.send_text("not json")
            ws.send_json({"type": "ping"})
            pong = ws.receive_json()

            assert pong["type"] == "pong"
            assert pong["meeting_id"] == "meeting-1"

    def test_unsupported_message_gets_error(self, client):
        with client.websocket_connect("/ws/feedback/meeting-1") as ws:
            ws.receive_json()

            ws.send_json({"type": "subscribe"})
            error = ws.receive_json()

            assert error["type"] == "error"
            assert error["payload"]["code"] == "UNSUPPORTED_MESSAGE"
            assert error["payload"]["recoverable"] is True

    def test_binary_frame_keeps_subscription(self, client, engine):
        with client.websocket_connect("/ws/feedback/meeting-1") as ws:
            ws.receive_json()

            ws.send_bytes(b"\x00\x01")
            ws.send_json({"type": "ping"})

            assert ws.receive_json()["type"] == "pong"
            assert engine.delivery.subscriber_count("meeting-1") == 1

    @pytest.mark.asyncio
    async def test_binary_frame_skipped_until_disconnect(self, engine):
        socket = MagicMock()
        socket.accept = AsyncMock()
        socket.send_json = AsyncMock()
        socket.receive = AsyncMock(side_effect=[binary(b"\x00\x01"), text('{"type": "ping"}'), DISCONNECT])
        socket.client_state = WebSocketState.CONNECTED

        await feedback_subscribe_websocket(socket, "meeting-1", engine=engine)

        sent = [call.args[0]["type"] for call in socket.send_json.await_args_list]
        assert sent == ["subscription.confirmed", "pong"]
        assert socket.receive.await_count == 3
        assert engine.delivery.subscriber_count("meeting-1") == 0

    @pytest.mark.asyncio
    async def test_published_feedback_forwarded(self, engine):
        event = make_event()
        received = []

        async def receive():
            if not received:
                received.append(True)
                await engine.delivery.publish("meeting-1", event)
                return text('{"type": "ping"}')
            raise WebSocketDisconnect()

        socket = MagicMock()
        socket.accept = AsyncMock()
        socket.send_json = AsyncMock()
        socket.receive = AsyncMock(side_effect=receive)
        socket.client_state = WebSocketState.CONNECTED

        await feedback_subscribe_websocket(socket, "meeting-1", engine=engine)
        await engine.delivery.drain()

        sent = [call.args[0] for call in socket.send_json.await_args_list]
        assert [m["type"] for m in sent] == ["subscription.confirmed", "feedback", "pong"]
        assert sent[1]["payload"]["id"] == "evt-1"
        assert sent[1]["payload"]["type"] == "speech_overlap"
        assert engine.delivery.subscriber_count("meeting-1") == 0

    @pytest.mark.asyncio
    async def test_closed_socket_not_written(self, engine):
        async def receive():
            socket.client_state = WebSocketState.DISCONNECTED
            await engine.delivery.publish("meeting-1", make_event())
            raise WebSocketDisconnect()

        socket = MagicMock()
        socket.accept = AsyncMock()
        socket.send_json = AsyncMock()
        socket.receive = AsyncMock(side_effect=receive)
        socket.client_state = WebSocketState.CONNECTED

        await feedback_subscribe_websocket(socket, "meeting-1", engine=engine)
        await engine.delivery.drain()

        assert socket.send_json.await_count == 1


# ══════════════════════════════════════════════════════════════
# Stats Endpoint Tests
# ══════════════════════════════════════════════════════════════


class TestStats:
    """Test engine statistics."""

    def test_stats(self, client):
        response = client.get("/ws/stats")

        assert response.status_code == 200
        assert set(response.json()) == {"buffer", "prosody", "aggregator", "delivery"}
