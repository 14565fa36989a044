"""
Prosody Bridge

Keeps one streaming WebSocket per track to the external prosody model,
queues segments while a connection is opening, and converts every segment and
every model response into IngestionEvents for the feedback aggregator.
"""

import asyncio
import base64
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import orjson
import structlog
import websockets

from meetcoach.config import settings
from meetcoach.core.models import IngestionEvent, ParticipantRole, Sample, TrackKey, now_ms

from .audio import rms_dbfs_from_wav
from .scoring import ProsodyReading, interpret_message, preview_text, sha256_hex

logger = structlog.get_logger()

IngestionSink = Callable[[IngestionEvent], Awaitable[None]]
RoleResolver = Callable[[str, str], ParticipantRole]


class ConnectionState(str, Enum):
    """Lifecycle of a prosody stream."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class ProsodyConnection:
    """A streaming connection bound to one track."""

    key: TrackKey
    state: ConnectionState = ConnectionState.IDLE
    pending: deque[str] = field(default_factory=deque)
    configured: bool = False
    websocket: Any = None
    task: asyncio.Task | None = None
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    messages_sent: int = 0
    messages_received: int = 0

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN


class ProsodyBridge:
    """
    Streams WAV segments to the prosody model.

    Connections are created lazily on the first segment for a track and
    dropped on any error or close; the next segment opens a fresh one.
    """

    def __init__(
        self,
        sink: IngestionSink,
        role_resolver: RoleResolver | None = None,
        url: str | None = None,
        headers: dict[str, str] | None = None,
        models: dict[str, Any] | None = None,
        speech_threshold_dbfs: float | None = None,
        connector: Callable[..., Any] = websockets.connect,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._sink = sink
        self._role_resolver = role_resolver
        self.url = url or settings.prosody_ws_url
        self.headers = settings.prosody_headers if headers is None else headers
        self.models = settings.prosody_models if models is None else models
        self.speech_threshold_dbfs = (
            settings.prosody_speech_threshold_dbfs
            if speech_threshold_dbfs is None
            else speech_threshold_dbfs
        )
        self._connector = connector
        self._clock = clock

        self._connections: dict[TrackKey, ProsodyConnection] = {}

    # ──────────────────────────────────────────────────────────
    # Outbound
    # ──────────────────────────────────────────────────────────

    def build_payload(self, wav: bytes) -> str:
        """Every message carries the audio and the model selection."""
        return orjson.dumps(
            {"data": base64.b64encode(wav).decode("ascii"), "models": self.models}
        ).decode("utf-8")

    async def send(self, key: TrackKey, wav: bytes) -> None:
        """Emit the local loudness sample for a segment and stream it to the model."""
        await self._emit_local_sample(key, wav)

        payload = self.build_payload(wav)
        conn = self._connections.get(key)
        if conn is None or conn.state == ConnectionState.CLOSED:
            conn = self._open(key)

        if not conn.is_open:
            conn.pending.append(payload)
            logger.debug("Prosody segment queued", track=str(key), pending=len(conn.pending))
            return

        try:
            async with conn.send_lock:
                await conn.websocket.send(payload)
            conn.messages_sent += 1
            conn.configured = True
        except Exception as e:
            logger.error("Prosody send failed", track=str(key), error=str(e))
            await self.close(key)

    def _open(self, key: TrackKey) -> ProsodyConnection:
        conn = ProsodyConnection(key=key, state=ConnectionState.CONNECTING)
        self._connections[key] = conn
        conn.task = asyncio.create_task(self._run(conn))
        logger.info(
            "Connecting prosody stream",
            track=str(key),
            url=self.url,
            auth="present" if self.headers else "absent",
        )
        return conn

    async def _run(self, conn: ProsodyConnection) -> None:
        try:
            async with self._connector(self.url, additional_headers=self.headers) as ws:
                conn.websocket = ws
                async with conn.send_lock:
                    conn.state = ConnectionState.OPEN
                    logger.info("Prosody stream open", track=str(conn.key), pending=len(conn.pending))
                    while conn.pending:
                        await ws.send(conn.pending.popleft())
                        conn.messages_sent += 1
                        conn.configured = True

                async for message in ws:
                    conn.messages_received += 1
                    await self._handle_message(conn, message)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Prosody stream error", track=str(conn.key), error=str(e))
        finally:
            conn.state = ConnectionState.CLOSED
            conn.pending.clear()
            conn.websocket = None
            if self._connections.get(conn.key) is conn:
                del self._connections[conn.key]
            logger.warning(
                "Prosody stream closed",
                track=str(conn.key),
                sent=conn.messages_sent,
                received=conn.messages_received,
                configured=conn.configured,
            )

    # ──────────────────────────────────────────────────────────
    # Inbound
    # ──────────────────────────────────────────────────────────

    async def _handle_message(self, conn: ProsodyConnection, message: str | bytes) -> None:
        reading = interpret_message(message)
        if reading is None:
            text = message.decode("utf-8", errors="replace") if isinstance(message, bytes) else message
            logger.info("Prosody non-JSON message", track=str(conn.key), preview=preview_text(text))
            return

        if reading.error:
            logger.error(
                "Prosody model error",
                track=str(conn.key),
                type=reading.message_type,
                error=reading.error,
                raw=reading.preview,
            )
        else:
            logger.debug("Prosody message received", track=str(conn.key), type=reading.message_type)

        if reading.should_emit:
            await self._deliver(self._model_event(conn.key, reading))

    def _model_event(self, key: TrackKey, reading: ProsodyReading) -> IngestionEvent:
        sample = Sample(
            timestamp_ms=self._clock(),
            speech_detected=reading.speech_detected,
            valence=reading.valence,
            arousal=reading.arousal,
            emotions=reading.emotions,
        )
        return IngestionEvent(
            key=key,
            role=self._resolve_role(key),
            sample=sample,
            source="model",
            warnings=tuple(reading.warnings),
            raw_preview=reading.preview,
            raw_hash=reading.raw_hash,
        )

    async def _emit_local_sample(self, key: TrackKey, wav: bytes) -> None:
        rms = rms_dbfs_from_wav(wav)
        sample = Sample(
            timestamp_ms=self._clock(),
            speech_detected=rms is not None and rms > self.speech_threshold_dbfs,
            rms_dbfs=rms,
        )
        await self._deliver(
            IngestionEvent(
                key=key,
                role=self._resolve_role(key),
                sample=sample,
                source="local",
                raw_preview="local:rms",
                raw_hash=sha256_hex(f"rms:{rms}"),
            )
        )

    async def _deliver(self, event: IngestionEvent) -> None:
        try:
            await self._sink(event)
        except Exception as e:
            logger.error(
                "Ingestion sink failed",
                meeting_id=event.meeting_id,
                participant_id=event.participant_id,
                error=str(e),
            )

    def _resolve_role(self, key: TrackKey) -> ParticipantRole:
        if self._role_resolver is None:
            return ParticipantRole.UNKNOWN
        return self._role_resolver(key.meeting_id, key.participant_id)

    # ──────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────

    def get_connection(self, key: TrackKey) -> ProsodyConnection | None:
        return self._connections.get(key)

    async def close(self, key: TrackKey) -> None:
        """Tear down a track's stream. A later send opens a new one."""
        conn = self._connections.pop(key, None)
        if conn is None:
            return

        conn.state = ConnectionState.CLOSED
        conn.pending.clear()
        if conn.task and not conn.task.done():
            conn.task.cancel()
            try:
                await conn.task
            except asyncio.CancelledError:
                pass

    async def close_all(self) -> None:
        for key in list(self._connections):
            await self.close(key)
            logger.info("Closed prosody stream", track=str(key))

    def get_stats(self) -> dict[str, Any]:
        states = [conn.state.value for conn in self._connections.values()]
        return {
            "connections": len(states),
            "open": states.count(ConnectionState.OPEN.value),
            "connecting": states.count(ConnectionState.CONNECTING.value),
            "pending_segments": sum(len(c.pending) for c in self._connections.values()),
            "configured": sum(1 for c in self._connections.values() if c.configured),
        }
