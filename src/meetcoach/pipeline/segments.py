"""
Segment Buffer

Accumulates raw PCM frames per track and flushes them as WAV segments of a
target duration. Each track has one background dispatch worker, so ingestion
never waits on the prosody connection and segments leave in flush order.
"""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import structlog

from meetcoach.config import settings
from meetcoach.core.models import TrackKey

from . import audio

logger = structlog.get_logger()

BYTES_PER_SAMPLE = 2

SegmentDispatch = Callable[[TrackKey, bytes], Awaitable[None]]


@dataclass
class AudioChunkMeta:
    """Format of the PCM s16le frames arriving for a track."""

    sample_rate: int
    channels: int = 1
    segment_seconds: float | None = None


@dataclass
class SegmentBufferState:
    """Pending bytes for one track."""

    meta: AudioChunkMeta
    threshold_bytes: int
    last_flush_at: float
    chunks: list[bytes] = field(default_factory=list)
    bytes_accumulated: int = 0


def compute_threshold_bytes(sample_rate: int, channels: int, seconds: float) -> int:
    return math.floor(sample_rate * channels * BYTES_PER_SAMPLE * seconds)


class SegmentBuffer:
    """
    Per-track PCM accumulator.

    A segment is flushed when the accumulated bytes reach the threshold for
    the segment duration, or when the time since the last flush reaches
    max(min_flush_interval_ms, segment_seconds * 1000).
    """

    def __init__(
        self,
        dispatch: SegmentDispatch,
        segment_seconds: float | None = None,
        min_flush_interval_ms: int | None = None,
        normalize: bool | None = None,
        target_sample_rate: int | None = None,
        require_mono: bool | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dispatch = dispatch
        self.segment_seconds = segment_seconds or settings.audio_segment_seconds
        self.min_flush_interval_ms = (
            settings.audio_min_flush_interval_ms
            if min_flush_interval_ms is None
            else min_flush_interval_ms
        )
        self.normalize = settings.audio_normalize if normalize is None else normalize
        self.target_sample_rate = (
            settings.prosody_sample_rate if target_sample_rate is None else target_sample_rate
        )
        self.require_mono = (
            settings.prosody_require_mono if require_mono is None else require_mono
        )
        self._clock = clock

        self._states: dict[TrackKey, SegmentBufferState] = {}
        self._queues: dict[TrackKey, deque[tuple[AudioChunkMeta, bytes]]] = {}
        self._workers: dict[TrackKey, asyncio.Task] = {}

    def _seconds_for(self, meta: AudioChunkMeta) -> float:
        if meta.segment_seconds and meta.segment_seconds > 0:
            return meta.segment_seconds
        return self.segment_seconds

    def enqueue(self, key: TrackKey, meta: AudioChunkMeta, chunk: bytes) -> bool:
        """
        Append a chunk to the track's buffer, flushing if a trigger is met.

        Returns True when this call flushed a segment.
        """
        seconds = self._seconds_for(meta)
        state = self._states.get(key)
        if state is None:
            state = SegmentBufferState(
                meta=meta,
                threshold_bytes=compute_threshold_bytes(meta.sample_rate, meta.channels, seconds),
                last_flush_at=self._clock(),
            )
            self._states[key] = state

        state.chunks.append(chunk)
        state.bytes_accumulated += len(chunk)

        elapsed_ms = (self._clock() - state.last_flush_at) * 1000
        time_trigger_ms = max(self.min_flush_interval_ms, seconds * 1000)

        if state.bytes_accumulated >= state.threshold_bytes or elapsed_ms >= time_trigger_ms:
            return self._flush(key, state)
        return False

    def clear(self, key: TrackKey) -> None:
        """Drop buffered bytes for a track without dispatching them."""
        state = self._states.pop(key, None)
        if state is not None:
            logger.debug(
                "Segment buffer cleared",
                track=str(key),
                dropped_bytes=state.bytes_accumulated,
            )

    def pending_bytes(self, key: TrackKey) -> int:
        state = self._states.get(key)
        return state.bytes_accumulated if state else 0

    def _flush(self, key: TrackKey, state: SegmentBufferState) -> bool:
        if state.bytes_accumulated == 0:
            return False

        pcm = b"".join(state.chunks)
        state.chunks = []
        state.bytes_accumulated = 0
        state.last_flush_at = self._clock()

        queue = self._queues.setdefault(key, deque())
        queue.append((state.meta, pcm))
        if key not in self._workers:
            self._workers[key] = asyncio.create_task(self._run_dispatches(key, queue))
        return True

    async def _run_dispatches(self, key: TrackKey, queue: deque[tuple[AudioChunkMeta, bytes]]) -> None:
        """Dispatch a track's segments one at a time until its queue is empty."""
        try:
            while queue:
                meta, pcm = queue.popleft()
                await self._dispatch_segment(key, meta, pcm)
        finally:
            if self._workers.get(key) is asyncio.current_task():
                del self._workers[key]
                if self._queues.get(key) is queue and not queue:
                    del self._queues[key]

    def prepare_segment(self, meta: AudioChunkMeta, pcm: bytes) -> bytes:
        """Apply normalization, downmix and resampling, then wrap in a WAV container."""
        channels = meta.channels
        sample_rate = meta.sample_rate

        if self.normalize:
            pcm = audio.normalize_peak(pcm)

        if self.require_mono and channels > 1:
            pcm = audio.downmix_to_mono(pcm, channels)
            channels = 1

        if self.target_sample_rate and self.target_sample_rate != sample_rate:
            pcm = audio.resample_linear(pcm, sample_rate, self.target_sample_rate, channels)
            sample_rate = self.target_sample_rate

        return audio.build_wav(pcm, sample_rate, channels)

    async def _dispatch_segment(self, key: TrackKey, meta: AudioChunkMeta, pcm: bytes) -> None:
        try:
            wav = self.prepare_segment(meta, pcm)
            logger.debug("Dispatching segment", track=str(key), wav_bytes=len(wav))
            await self._dispatch(key, wav)
        except Exception as e:
            logger.error("Segment dispatch failed", track=str(key), error=str(e))

    async def drain(self) -> None:
        """Wait until every flushed segment has been dispatched."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    def get_stats(self) -> dict[str, int]:
        return {
            "tracks": len(self._states),
            "pending_bytes": sum(s.bytes_accumulated for s in self._states.values()),
            "queued_segments": sum(len(q) for q in self._queues.values()),
            "inflight_dispatches": len(self._workers),
        }
