"""
Rolling Feedback State

Per-participant sample windows, EMAs and cooldowns, and the per-meeting state
shared by the group detectors.
"""

import bisect
import threading
from collections import deque
from dataclasses import dataclass, field

from meetcoach.core.models import FeedbackType, ParticipantRole, Sample

SHORT_WINDOW_MS = 3_000
LONG_WINDOW_MS = 10_000
MONOLOGUE_WINDOW_MS = 60_000
INTERRUPTION_HISTORY_MS = 60_000
PRUNE_HORIZON_MS = 65_000
MAX_INTERRUPTION_CANDIDATES = 10


def ema(previous: float | None, value: float, alpha: float) -> float:
    """alpha * value + (1 - alpha) * previous, seeded with the first value."""
    if previous is None:
        return value
    return alpha * value + (1 - alpha) * previous


@dataclass(frozen=True, slots=True)
class WindowStats:
    """Counts over samples with timestamp >= start."""

    start: int
    end: int
    samples: int = 0
    speech: int = 0
    mean_rms_dbfs: float | None = None

    @property
    def coverage(self) -> float:
        return self.speech / self.samples if self.samples else 0.0


@dataclass
class EmaState:
    """Smoothed affect and loudness for one participant."""

    valence: float | None = None
    arousal: float | None = None
    rms: float | None = None
    emotions: dict[str, float] = field(default_factory=dict)

    def update(self, sample: Sample, alpha: float) -> None:
        if sample.valence is not None:
            self.valence = ema(self.valence, sample.valence, alpha)
        if sample.arousal is not None:
            self.arousal = ema(self.arousal, sample.arousal, alpha)
        if sample.rms_dbfs is not None:
            self.rms = ema(self.rms, sample.rms_dbfs, alpha)
        if sample.emotions:
            for name, score in sample.emotions.items():
                key = name.lower()
                self.emotions[key] = ema(self.emotions.get(key), score, alpha)

    def emotion(self, name: str) -> float:
        return self.emotions.get(name, 0.0)


class _CooldownMixin:
    cooldown_until: dict[FeedbackType, int]
    last_feedback_at: int | None

    def in_cooldown(self, feedback_type: FeedbackType, now: int) -> bool:
        until = self.cooldown_until.get(feedback_type)
        return until is not None and until > now

    def in_gap(self, now: int, min_gap_ms: int) -> bool:
        return (
            min_gap_ms > 0
            and self.last_feedback_at is not None
            and now - self.last_feedback_at < min_gap_ms
        )

    def set_cooldown(self, feedback_type: FeedbackType, now: int, duration_ms: int) -> None:
        self.cooldown_until[feedback_type] = now + duration_ms
        self.last_feedback_at = now


@dataclass(eq=False)
class ParticipantWindowState(_CooldownMixin):
    """Samples, EMAs and cooldowns for one participant in one meeting."""

    participant_id: str
    role: ParticipantRole = ParticipantRole.UNKNOWN
    samples: deque[Sample] = field(default_factory=deque)
    ema: EmaState = field(default_factory=EmaState)
    cooldown_until: dict[FeedbackType, int] = field(default_factory=dict)
    last_feedback_at: int | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def append(self, sample: Sample) -> None:
        """Insert keeping timestamp order; late samples go to their sorted position."""
        if not self.samples or sample.timestamp_ms >= self.samples[-1].timestamp_ms:
            self.samples.append(sample)
            return
        index = bisect.bisect_right(self.samples, sample.timestamp_ms, key=lambda s: s.timestamp_ms)
        self.samples.insert(index, sample)

    def prune(self, horizon_ms: int = PRUNE_HORIZON_MS) -> None:
        """Drop samples older than the horizon, measured from the newest sample."""
        if not self.samples:
            return
        min_ts = self.samples[-1].timestamp_ms - horizon_ms
        while self.samples and self.samples[0].timestamp_ms < min_ts:
            self.samples.popleft()

    def window(self, now: int, duration_ms: int) -> WindowStats:
        start = now - duration_ms
        count = speech = rms_n = 0
        rms_sum = 0.0
        for sample in reversed(self.samples):
            if sample.timestamp_ms < start:
                break
            count += 1
            if sample.speech_detected:
                speech += 1
            if sample.rms_dbfs is not None:
                rms_sum += sample.rms_dbfs
                rms_n += 1
        return WindowStats(
            start=start,
            end=now,
            samples=count,
            speech=speech,
            mean_rms_dbfs=rms_sum / rms_n if rms_n else None,
        )

    def samples_since(self, start: int) -> list[Sample]:
        """Samples with timestamp >= start, oldest first."""
        out: list[Sample] = []
        for sample in reversed(self.samples):
            if sample.timestamp_ms < start:
                break
            out.append(sample)
        out.reverse()
        return out

    def speech_count_since(self, start: int) -> int:
        return sum(1 for s in self.samples_since(start) if s.speech_detected)


@dataclass(frozen=True, slots=True)
class InterruptionCandidate:
    """A moment where someone started speaking over the dominant speaker."""

    ts: int
    interrupted_id: str
    valence_before: float | None


@dataclass(eq=False)
class MeetingState(_CooldownMixin):
    """State shared by every participant of a meeting."""

    meeting_id: str
    participants: dict[str, ParticipantWindowState] = field(default_factory=dict)
    overlap_history: deque[int] = field(default_factory=deque)
    last_overlap_sample_at: int | None = None
    dominant_speaker: str | None = None
    candidates: deque[InterruptionCandidate] = field(
        default_factory=lambda: deque(maxlen=MAX_INTERRUPTION_CANDIDATES)
    )
    cooldown_until: dict[FeedbackType, int] = field(default_factory=dict)
    last_feedback_at: int | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get_or_create(self, participant_id: str) -> ParticipantWindowState:
        state = self.participants.get(participant_id)
        if state is None:
            state = ParticipantWindowState(participant_id=participant_id)
            self.participants[participant_id] = state
        return state

    def record_overlap(self, now: int) -> None:
        self.last_overlap_sample_at = now
        self.overlap_history.append(now)
        cutoff = now - INTERRUPTION_HISTORY_MS
        while self.overlap_history and self.overlap_history[0] < cutoff:
            self.overlap_history.popleft()
