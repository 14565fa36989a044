"""
Unit Tests for Prosody Bridge

Tests connection lifecycle, queueing while connecting, local loudness samples
and conversion of model responses into ingestion events.
"""

import asyncio
import base64
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import orjson
import pytest

from meetcoach.core.models import ParticipantRole
from meetcoach.pipeline.audio import WAV_HEADER_BYTES, build_wav
from meetcoach.pipeline.prosody import ConnectionState, ProsodyBridge
from meetcoach.pipeline.segments import AudioChunkMeta, SegmentBuffer

T0 = 1_700_000_000_000
URL = "ws://prosody.test/stream"


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.sent: list[str] = []
        self.fail_sends = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, payload: str) -> None:
        if self.fail_sends:
            raise ConnectionError("socket closed")
        self.sent.append(payload)

    def push(self, message: str) -> None:
        self._incoming.put_nowait(message)

    def close(self) -> None:
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeConnector:
    """Records connect calls and hands out FakeWebSockets."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, dict]] = []
        self.sockets: list[FakeWebSocket] = []

    def __call__(self, url, additional_headers=None):
        self.calls.append((url, additional_headers))
        return self._connect()

    @asynccontextmanager
    async def _connect(self):
        if self.fail:
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        yield ws


class HangingConnector:
    """A connector whose handshake never completes."""

    def __call__(self, url, additional_headers=None):
        return self._connect()

    @asynccontextmanager
    async def _connect(self):
        await asyncio.Event().wait()
        yield None


async def settle() -> None:
    """Let background connection tasks make progress."""
    for _ in range(10):
        await asyncio.sleep(0)


def make_bridge(sink, connector, **kwargs) -> ProsodyBridge:
    options = {
        "url": URL,
        "headers": {"X-Hume-Api-Key": "secret"},
        "models": {"prosody": {}},
        "speech_threshold_dbfs": -50.0,
        "clock": lambda: T0,
    }
    options.update(kwargs)
    return ProsodyBridge(sink, connector=connector, **options)


@pytest.fixture
def wav(loud_pcm) -> bytes:
    return build_wav(loud_pcm, 16000, 1)


# ══════════════════════════════════════════════════════════════
# Outbound Tests
# ══════════════════════════════════════════════════════════════


class TestProsodySend:
    """Test segment streaming."""

    @pytest.mark.asyncio
    async def test_segment_queued_until_open(self, track_key, wav):
        """Segments sent while connecting are flushed once the socket opens."""
        connector = FakeConnector()
        bridge = make_bridge(AsyncMock(), connector)

        await bridge.send(track_key, wav)

        conn = bridge.get_connection(track_key)
        assert conn.state == ConnectionState.CONNECTING
        assert len(conn.pending) == 1
        assert not conn.configured
        assert bridge.get_stats()["configured"] == 0

        await settle()

        assert conn.state == ConnectionState.OPEN
        assert len(conn.pending) == 0
        assert len(connector.sockets[0].sent) == 1
        assert conn.configured
        assert bridge.get_stats()["configured"] == 1
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_open_connection_sends_directly(self, track_key, wav):
        connector = FakeConnector()
        bridge = make_bridge(AsyncMock(), connector)

        await bridge.send(track_key, wav)
        await settle()
        await bridge.send(track_key, wav)

        assert len(connector.calls) == 1
        assert len(connector.sockets[0].sent) == 2
        assert bridge.get_connection(track_key).messages_sent == 2
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_handshake_uses_url_and_headers(self, track_key, wav):
        connector = FakeConnector()
        bridge = make_bridge(AsyncMock(), connector)

        await bridge.send(track_key, wav)
        await settle()

        assert connector.calls == [(URL, {"X-Hume-Api-Key": "secret"})]
        await bridge.close_all()

    def test_payload_carries_audio_and_models(self, wav):
        bridge = make_bridge(AsyncMock(), FakeConnector(), models={"prosody": {"granularity": "utterance"}})

        payload = orjson.loads(bridge.build_payload(wav))

        assert base64.b64decode(payload["data"]) == wav
        assert payload["models"] == {"prosody": {"granularity": "utterance"}}

    @pytest.mark.asyncio
    async def test_send_failure_drops_connection(self, track_key, wav):
        """A failed send closes the stream; the next segment reconnects."""
        connector = FakeConnector()
        bridge = make_bridge(AsyncMock(), connector)

        await bridge.send(track_key, wav)
        await settle()
        connector.sockets[0].fail_sends = True

        await bridge.send(track_key, wav)

        assert bridge.get_connection(track_key) is None

        await bridge.send(track_key, wav)
        await settle()

        assert len(connector.calls) == 2
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_flushed_segments_queue_in_order_behind_slow_sink(self, track_key):
        """Segments from one track reach the stream in flush order."""
        calls = 0

        async def slow_sink(event):
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(0.05)

        bridge = make_bridge(slow_sink, HangingConnector())
        buffer = SegmentBuffer(
            bridge.send,
            segment_seconds=0.5,
            min_flush_interval_ms=500,
            normalize=False,
            target_sample_rate=None,
            require_mono=False,
            clock=lambda: 0.0,
        )
        meta = AudioChunkMeta(sample_rate=16000, channels=1)

        buffer.enqueue(track_key, meta, b"\x01\x00" * 8000)
        buffer.enqueue(track_key, meta, b"\x02\x00" * 8000)
        await buffer.drain()

        pending = bridge.get_connection(track_key).pending
        pcm = [base64.b64decode(orjson.loads(p)["data"])[WAV_HEADER_BYTES:] for p in pending]
        assert pcm == [b"\x01\x00" * 8000, b"\x02\x00" * 8000]
        await bridge.close_all()


# ══════════════════════════════════════════════════════════════
# Local Sample Tests
# ══════════════════════════════════════════════════════════════


class TestLocalSamples:
    """Test the loudness sample emitted for every segment."""

    @pytest.mark.asyncio
    async def test_local_sample_emitted_before_streaming(self, track_key, wav):
        sink = AsyncMock()
        bridge = make_bridge(sink, FakeConnector())

        await bridge.send(track_key, wav)

        sink.assert_awaited_once()
        event = sink.await_args.args[0]
        assert event.key == track_key
        assert event.source == "local"
        assert event.raw_preview == "local:rms"
        assert event.sample.timestamp_ms == T0
        assert event.sample.speech_detected is True
        assert event.sample.rms_dbfs == pytest.approx(-9.03, abs=0.1)
        assert event.sample.valence is None
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_silence_is_not_speech(self, track_key, silent_pcm):
        sink = AsyncMock()
        bridge = make_bridge(sink, FakeConnector())

        await bridge.send(track_key, build_wav(silent_pcm, 16000, 1))

        sample = sink.await_args.args[0].sample
        assert sample.rms_dbfs == -100.0
        assert sample.speech_detected is False
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_empty_segment_has_no_loudness(self, track_key):
        sink = AsyncMock()
        bridge = make_bridge(sink, FakeConnector())

        await bridge.send(track_key, build_wav(b"", 16000, 1))

        sample = sink.await_args.args[0].sample
        assert sample.rms_dbfs is None
        assert sample.speech_detected is False
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_role_resolved_per_event(self, track_key, wav):
        sink = AsyncMock()
        bridge = make_bridge(sink, FakeConnector(), role_resolver=lambda m, p: ParticipantRole.HOST)

        await bridge.send(track_key, wav)

        assert sink.await_args.args[0].role == ParticipantRole.HOST
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_sink_errors_contained(self, track_key, wav):
        sink = AsyncMock(side_effect=RuntimeError("aggregator down"))
        connector = FakeConnector()
        bridge = make_bridge(sink, connector)

        await bridge.send(track_key, wav)
        await settle()

        assert len(connector.sockets[0].sent) == 1
        await bridge.close_all()


# ══════════════════════════════════════════════════════════════
# Inbound Tests
# ══════════════════════════════════════════════════════════════


class TestProsodyResponses:
    """Test handling of model responses."""

    @pytest.mark.asyncio
    async def test_prosody_response_becomes_model_event(self, track_key, wav):
        sink = AsyncMock()
        connector = FakeConnector()
        bridge = make_bridge(sink, connector)

        await bridge.send(track_key, wav)
        await settle()
        connector.sockets[0].push(
            orjson.dumps(
                {"prosody": {"predictions": [{"valence": 0.3, "arousal": 0.6, "emotions": [{"name": "Joy", "score": 0.7}]}]}}
            ).decode()
        )
        await settle()

        assert sink.await_count == 2
        event = sink.await_args.args[0]
        assert event.source == "model"
        assert event.sample.speech_detected is True
        assert event.sample.valence == 0.3
        assert event.sample.arousal == 0.6
        assert event.sample.emotions == {"joy": 0.7}
        assert event.sample.rms_dbfs is None
        assert event.raw_hash
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_no_speech_warning_event(self, track_key, wav):
        sink = AsyncMock()
        connector = FakeConnector()
        bridge = make_bridge(sink, connector)

        await bridge.send(track_key, wav)
        await settle()
        connector.sockets[0].push('{"prosody": {"warning": "No speech detected.", "code": "W0105"}}')
        await settle()

        event = sink.await_args.args[0]
        assert event.source == "model"
        assert event.sample.speech_detected is False
        assert event.warnings == ("No speech detected.", "W0105")
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_ignored_messages(self, track_key, wav):
        """Non-JSON text and error envelopes produce no samples."""
        sink = AsyncMock()
        connector = FakeConnector()
        bridge = make_bridge(sink, connector)

        await bridge.send(track_key, wav)
        await settle()
        connector.sockets[0].push("not json")
        connector.sockets[0].push('{"error": "Invalid API key"}')
        await settle()

        assert sink.await_count == 1
        assert bridge.get_connection(track_key).messages_received == 2
        await bridge.close_all()


# ══════════════════════════════════════════════════════════════
# Lifecycle Tests
# ══════════════════════════════════════════════════════════════


class TestProsodyLifecycle:
    """Test connection teardown and reconnection."""

    @pytest.mark.asyncio
    async def test_remote_close_removes_connection(self, track_key, wav):
        connector = FakeConnector()
        bridge = make_bridge(AsyncMock(), connector)

        await bridge.send(track_key, wav)
        await settle()
        connector.sockets[0].close()
        await settle()

        assert bridge.get_connection(track_key) is None

        await bridge.send(track_key, wav)
        await settle()

        assert len(connector.calls) == 2
        assert bridge.get_connection(track_key).is_open
        await bridge.close_all()

    @pytest.mark.asyncio
    async def test_connect_failure_clears_queue(self, track_key, wav):
        bridge = make_bridge(AsyncMock(), FakeConnector(fail=True))

        await bridge.send(track_key, wav)
        await settle()

        assert bridge.get_connection(track_key) is None
        assert bridge.get_stats()["pending_segments"] == 0

    @pytest.mark.asyncio
    async def test_close_all(self, track_key, wav):
        bridge = make_bridge(AsyncMock(), FakeConnector())

        await bridge.send(track_key, wav)
        await settle()
        task = bridge.get_connection(track_key).task

        await bridge.close_all()

        assert task.done()
        assert bridge.get_stats() == {
            "connections": 0,
            "open": 0,
            "connecting": 0,
            "pending_segments": 0,
            "configured": 0,
        }

    @pytest.mark.asyncio
    async def test_close_unknown_track(self, track_key):
        bridge = make_bridge(AsyncMock(), FakeConnector())

        await bridge.close(track_key)

        assert bridge.get_connection(track_key) is None
