"""
Feedback Detectors

Heuristics that read rolling participant and meeting state and decide whether
a coaching event fires. Participant detectors return at most one event;
meeting detectors may target any participant or the whole group.

Every detector is gated by its cooldown. Participant-targeted events are also
gated by the per-participant minimum gap; group events by the optional
meeting-wide gap.
"""

import statistics
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable

from meetcoach.core.models import (
    GROUP_PARTICIPANT_ID,
    FeedbackEvent,
    FeedbackMetadata,
    FeedbackSeverity,
    FeedbackType,
    FeedbackWindow,
    ParticipantRole,
    make_event_id,
)

from .state import (
    INTERRUPTION_HISTORY_MS,
    LONG_WINDOW_MS,
    MONOLOGUE_WINDOW_MS,
    SHORT_WINDOW_MS,
    InterruptionCandidate,
    MeetingState,
    ParticipantWindowState,
)

NameResolver = Callable[[str, str], str | None]


# ══════════════════════════════════════════════════════════════
# Thresholds
# ══════════════════════════════════════════════════════════════

MIN_WINDOW_SAMPLES = 5

SILENCE_MAX_COVERAGE = 0.1

VOLUME_MIN_COVERAGE = 0.5
VOLUME_LOW_DBFS = -28.0
VOLUME_LOW_CRITICAL_DBFS = -34.0
VOLUME_HIGH_DBFS = -10.0
VOLUME_HIGH_CRITICAL_DBFS = -6.0

HOSTILITY_THRESHOLD = 0.6
BOREDOM_THRESHOLD = 0.5
TIREDNESS_THRESHOLD = 0.6
BOREDOM_MAX_INTEREST = 0.2
FRUSTRATION_THRESHOLD = 0.6
CONFUSION_THRESHOLD = 0.55
POSITIVE_THRESHOLD = 0.7

ENTHUSIASM_AROUSAL = 0.5
ENTHUSIASM_WARNING_AROUSAL = 0.7

MONOTONY_MAX_STDEV = 0.1
MONOTONY_WARNING_STDEV = 0.06

PACE_MIN_SAMPLES = 6
PACE_SWITCHES_PER_SEC = 1.0
PACE_WARNING_SWITCHES_PER_SEC = 1.5
PACE_MIN_SPEECH_SEGMENTS = 6
PACE_LONG_SILENCE_SEC = 3.0
PACE_WARNING_SILENCE_SEC = 5.0
PACE_MIN_COVERAGE = 0.15

ACTIVE_COVERAGE = 0.3
SPEAKING_COVERAGE = 0.2
GROUP_LOW_AROUSAL = -0.3
GROUP_WARNING_AROUSAL = -0.5
POLARIZATION_MIN_PARTICIPANTS = 3
POLARIZATION_POSITIVE = 0.2
POLARIZATION_NEGATIVE = -0.2
POLARIZATION_SPREAD = 0.5

DOMINANT_COVERAGE = 0.5
OVERLAP_SAMPLE_INTERVAL_MS = 2_000
INTERRUPTIONS_TO_FIRE = 5
POST_INTERRUPTION_WAIT_MS = 6_000
POST_INTERRUPTION_EXPIRE_MS = 30_000
POST_INTERRUPTION_DROP = -0.2

MONOLOGUE_MIN_SPEECH = 10
MONOLOGUE_RATIO = 0.8

COOLDOWN_MS: dict[FeedbackType, int] = {
    FeedbackType.PROLONGED_SILENCE: 15_000,
    FeedbackType.VOLUME_LOW: 10_000,
    FeedbackType.VOLUME_HIGH: 10_000,
    FeedbackType.HOSTILITY: 30_000,
    FeedbackType.BOREDOM: 25_000,
    FeedbackType.FRUSTRATION: 25_000,
    FeedbackType.CONFUSION: 20_000,
    FeedbackType.POSITIVE_ENGAGEMENT: 60_000,
    FeedbackType.PROSODIC_MONOTONY: 20_000,
    FeedbackType.ACCELERATED_PACE: 20_000,
    FeedbackType.PAUSED_PACE: 20_000,
    FeedbackType.GROUP_LOW_ENERGY: 30_000,
    FeedbackType.EMOTIONAL_POLARIZATION: 45_000,
    FeedbackType.FREQUENT_INTERRUPTIONS: 30_000,
    FeedbackType.POST_INTERRUPTION_DIP: 25_000,
    FeedbackType.SPEECH_OVERLAP: 15_000,
    FeedbackType.PROLONGED_MONOLOGUE: 30_000,
}
ENTHUSIASM_COOLDOWN_MS = {FeedbackSeverity.WARNING: 20_000, FeedbackSeverity.INFO: 15_000}


# ══════════════════════════════════════════════════════════════
# Context
# ══════════════════════════════════════════════════════════════


@dataclass
class DetectorContext:
    """What a detector needs besides state: who, when and the gap settings."""

    meeting_id: str
    participant_id: str
    now: int
    min_gap_ms: int = 5_000
    meeting_min_gap_ms: int = 0
    name_resolver: NameResolver | None = None

    def name_of(self, participant_id: str) -> str | None:
        if self.name_resolver is None:
            return None
        return self.name_resolver(self.meeting_id, participant_id)

    def label(self, participant_id: str) -> str:
        return self.name_of(participant_id) or participant_id


def blocked(ctx: DetectorContext, state: ParticipantWindowState, feedback_type: FeedbackType) -> bool:
    return state.in_cooldown(feedback_type, ctx.now) or state.in_gap(ctx.now, ctx.min_gap_ms)


def meeting_blocked(ctx: DetectorContext, meeting: MeetingState, feedback_type: FeedbackType) -> bool:
    return meeting.in_cooldown(feedback_type, ctx.now) or meeting.in_gap(ctx.now, ctx.meeting_min_gap_ms)


def build_event(
    ctx: DetectorContext,
    feedback_type: FeedbackType,
    severity: FeedbackSeverity,
    participant_id: str,
    window_start: int,
    message: str,
    tips: list[str],
    **metadata: float | None,
) -> FeedbackEvent:
    name = None if participant_id == GROUP_PARTICIPANT_ID else ctx.name_of(participant_id)
    return FeedbackEvent(
        id=make_event_id(ctx.now),
        type=feedback_type,
        severity=severity,
        ts=ctx.now,
        meeting_id=ctx.meeting_id,
        participant_id=participant_id,
        participant_name=name,
        window=FeedbackWindow(start=window_start, end=ctx.now),
        message=message,
        tips=tips,
        metadata=FeedbackMetadata(**metadata),
    )


def _fire(
    ctx: DetectorContext,
    state: ParticipantWindowState,
    feedback_type: FeedbackType,
    severity: FeedbackSeverity,
    window_start: int,
    message: str,
    tips: list[str],
    cooldown_ms: int | None = None,
    **metadata: float | None,
) -> FeedbackEvent:
    state.set_cooldown(feedback_type, ctx.now, cooldown_ms or COOLDOWN_MS[feedback_type])
    return build_event(
        ctx, feedback_type, severity, state.participant_id, window_start, message, tips, **metadata
    )


def _fire_group(
    ctx: DetectorContext,
    meeting: MeetingState,
    feedback_type: FeedbackType,
    severity: FeedbackSeverity,
    window_start: int,
    message: str,
    tips: list[str],
    **metadata: float | None,
) -> FeedbackEvent:
    meeting.set_cooldown(feedback_type, ctx.now, COOLDOWN_MS[feedback_type])
    return build_event(
        ctx, feedback_type, severity, GROUP_PARTICIPANT_ID, window_start, message, tips, **metadata
    )


# ══════════════════════════════════════════════════════════════
# Participant Detectors
# ══════════════════════════════════════════════════════════════


def detect_prolonged_silence(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    w = state.window(ctx.now, LONG_WINDOW_MS)
    if w.samples < MIN_WINDOW_SAMPLES or w.coverage >= SILENCE_MAX_COVERAGE:
        return None
    if blocked(ctx, state, FeedbackType.PROLONGED_SILENCE):
        return None
    return _fire(
        ctx,
        state,
        FeedbackType.PROLONGED_SILENCE,
        FeedbackSeverity.WARNING,
        w.start,
        f"{ctx.label(state.participant_id)}: prolonged silence, is everything OK?",
        ["Check whether the microphone is muted or disconnected"],
        speech_coverage=w.coverage,
    )


def detect_volume(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    w = state.window(ctx.now, SHORT_WINDOW_MS)
    if w.samples < 1 or w.coverage < VOLUME_MIN_COVERAGE:
        return None

    level = w.mean_rms_dbfs if w.mean_rms_dbfs is not None else state.ema.rms
    if level is None:
        return None

    is_low = level <= VOLUME_LOW_DBFS
    is_high = level >= VOLUME_HIGH_DBFS
    if is_low == is_high:
        # Neither, or both: nothing unambiguous to say.
        return None

    name = ctx.label(state.participant_id)
    if is_low:
        if blocked(ctx, state, FeedbackType.VOLUME_LOW):
            return None
        critical = level <= VOLUME_LOW_CRITICAL_DBFS
        return _fire(
            ctx,
            state,
            FeedbackType.VOLUME_LOW,
            FeedbackSeverity.CRITICAL if critical else FeedbackSeverity.WARNING,
            w.start,
            f"{name}: nearly inaudible, raise the input gain now."
            if critical
            else f"{name}: low volume, move closer to the microphone.",
            ["Raise the input gain", "Move closer to the microphone"]
            if critical
            else ["Check the audio input", "Disable aggressive noise suppression"],
            rms_dbfs=level,
            speech_coverage=w.coverage,
        )

    if blocked(ctx, state, FeedbackType.VOLUME_HIGH):
        return None
    critical = level >= VOLUME_HIGH_CRITICAL_DBFS
    return _fire(
        ctx,
        state,
        FeedbackType.VOLUME_HIGH,
        FeedbackSeverity.CRITICAL if critical else FeedbackSeverity.WARNING,
        w.start,
        f"{name}: audio is clipping, lower the gain."
        if critical
        else f"{name}: high volume, move back from the microphone a little.",
        ["Lower the microphone sensitivity"],
        rms_dbfs=level,
        speech_coverage=w.coverage,
    )


def _speech_gate(state: ParticipantWindowState, now: int, min_coverage: float) -> bool:
    w = state.window(now, LONG_WINDOW_MS)
    return w.samples >= MIN_WINDOW_SAMPLES and w.coverage >= min_coverage


def detect_hostility(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    if not _speech_gate(state, ctx.now, SPEAKING_COVERAGE):
        return None
    emotions = state.ema
    score = max(emotions.emotion("anger"), emotions.emotion("disgust"), emotions.emotion("distress"))
    if score <= HOSTILITY_THRESHOLD or blocked(ctx, state, FeedbackType.HOSTILITY):
        return None
    return _fire(
        ctx,
        state,
        FeedbackType.HOSTILITY,
        FeedbackSeverity.WARNING,
        ctx.now - LONG_WINDOW_MS,
        f"{ctx.label(state.participant_id)}: the conversation is heating up. "
        "Consider acknowledging the other side before moving on.",
        ["Take a breath", 'Try phrases like "I see your point..."', "Avoid interrupting right now"],
        valence_ema=state.ema.valence,
    )


def detect_boredom(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    if state.window(ctx.now, LONG_WINDOW_MS).samples < MIN_WINDOW_SAMPLES:
        return None
    emotions = state.ema
    tired = (
        emotions.emotion("boredom") > BOREDOM_THRESHOLD
        or emotions.emotion("tiredness") > TIREDNESS_THRESHOLD
    )
    if not tired or emotions.emotion("interest") >= BOREDOM_MAX_INTEREST:
        return None
    if blocked(ctx, state, FeedbackType.BOREDOM):
        return None
    return _fire(
        ctx,
        state,
        FeedbackType.BOREDOM,
        FeedbackSeverity.INFO,
        ctx.now - LONG_WINDOW_MS,
        f"{ctx.label(state.participant_id)}: low energy detected. How about bringing in a new angle?",
        ["Vary your intonation", "Ask the group an open question"],
        arousal_ema=state.ema.arousal,
    )


def detect_frustration(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    if not _speech_gate(state, ctx.now, SPEAKING_COVERAGE):
        return None
    if state.ema.emotion("frustration") <= FRUSTRATION_THRESHOLD:
        return None
    if blocked(ctx, state, FeedbackType.FRUSTRATION):
        return None
    return _fire(
        ctx,
        state,
        FeedbackType.FRUSTRATION,
        FeedbackSeverity.WARNING,
        ctx.now - LONG_WINDOW_MS,
        f"{ctx.label(state.participant_id)}: there seems to be a blocker or some frustration.",
        ["Acknowledge the difficulty", 'Ask: "What is keeping us from making progress?"'],
        valence_ema=state.ema.valence,
    )


def detect_confusion(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    if not _speech_gate(state, ctx.now, SPEAKING_COVERAGE):
        return None
    score = max(state.ema.emotion("confusion"), state.ema.emotion("doubt"))
    if score <= CONFUSION_THRESHOLD or blocked(ctx, state, FeedbackType.CONFUSION):
        return None
    return _fire(
        ctx,
        state,
        FeedbackType.CONFUSION,
        FeedbackSeverity.INFO,
        ctx.now - LONG_WINDOW_MS,
        f"{ctx.label(state.participant_id)}: signs of doubt. A quick understanding check may help.",
        ['Ask: "Does this make sense?"', "Offer a practical example"],
    )


def detect_positive_engagement(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    if not _speech_gate(state, ctx.now, ACTIVE_COVERAGE):
        return None
    emotions = state.ema
    score = max(emotions.emotion("interest"), emotions.emotion("joy"), emotions.emotion("determination"))
    if score <= POSITIVE_THRESHOLD or blocked(ctx, state, FeedbackType.POSITIVE_ENGAGEMENT):
        return None
    return _fire(
        ctx,
        state,
        FeedbackType.POSITIVE_ENGAGEMENT,
        FeedbackSeverity.INFO,
        ctx.now - LONG_WINDOW_MS,
        f"{ctx.label(state.participant_id)}: great energy and clarity, the group looks engaged.",
        ["Keep this tone", "Use the momentum to agree on next steps"],
    )


def detect_high_enthusiasm(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    arousal = state.ema.arousal
    if arousal is None or arousal < ENTHUSIASM_AROUSAL:
        return None
    w = state.window(ctx.now, LONG_WINDOW_MS)
    if w.samples < MIN_WINDOW_SAMPLES or w.coverage < VOLUME_MIN_COVERAGE:
        return None
    if blocked(ctx, state, FeedbackType.HIGH_ENTHUSIASM):
        return None

    warning = arousal >= ENTHUSIASM_WARNING_AROUSAL
    severity = FeedbackSeverity.WARNING if warning else FeedbackSeverity.INFO
    name = ctx.label(state.participant_id)
    return _fire(
        ctx,
        state,
        FeedbackType.HIGH_ENTHUSIASM,
        severity,
        w.start,
        f"{name}: very high energy, channel it into next steps."
        if warning
        else f"{name}: high enthusiasm, a good moment to steer towards actions.",
        ["Steer towards decisions and next steps"],
        cooldown_ms=ENTHUSIASM_COOLDOWN_MS[severity],
        arousal_ema=arousal,
        speech_coverage=w.coverage,
    )


def detect_prosodic_monotony(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    start = ctx.now - LONG_WINDOW_MS
    recent = state.samples_since(start)
    speech = sum(1 for s in recent if s.speech_detected)
    values = [s.arousal for s in recent if s.arousal is not None]
    if speech < MIN_WINDOW_SAMPLES or len(values) < MIN_WINDOW_SAMPLES:
        return None

    stdev = statistics.pstdev(values)
    if stdev >= MONOTONY_MAX_STDEV or blocked(ctx, state, FeedbackType.PROSODIC_MONOTONY):
        return None

    warning = stdev < MONOTONY_WARNING_STDEV
    name = ctx.label(state.participant_id)
    return _fire(
        ctx,
        state,
        FeedbackType.PROSODIC_MONOTONY,
        FeedbackSeverity.WARNING if warning else FeedbackSeverity.INFO,
        start,
        f"{name}: monotone delivery, vary intonation and pauses."
        if warning
        else f"{name}: little variation in intonation.",
        ["Use pauses and emphasis to highlight key points"],
        arousal_ema=state.ema.arousal,
    )


@dataclass(frozen=True, slots=True)
class PaceStats:
    switches: int
    speech_segments: int
    longest_silence_sec: float
    switches_per_sec: float


def pace_stats(state: ParticipantWindowState, now: int) -> PaceStats | None:
    """Count speech/silence transitions over the long window, including the tail up to now."""
    start = now - LONG_WINDOW_MS
    recent = state.samples_since(start)
    if len(recent) < PACE_MIN_SAMPLES:
        return None

    switches = speech_segments = 0
    longest_silence = 0.0
    current: bool | None = None
    current_start = start
    last_ts = start

    for sample in recent:
        gap = (sample.timestamp_ms - last_ts) / 1000
        if current is False:
            longest_silence = max(longest_silence, gap)
        if current is None:
            current = sample.speech_detected
            current_start = last_ts = sample.timestamp_ms
            continue
        if sample.speech_detected != current:
            switches += 1
            if current:
                speech_segments += 1
            else:
                longest_silence = max(longest_silence, (sample.timestamp_ms - current_start) / 1000)
            current = sample.speech_detected
            current_start = sample.timestamp_ms
        last_ts = sample.timestamp_ms

    if current:
        speech_segments += 1
    else:
        longest_silence = max(longest_silence, (now - current_start) / 1000)

    return PaceStats(
        switches=switches,
        speech_segments=speech_segments,
        longest_silence_sec=longest_silence,
        switches_per_sec=switches / (LONG_WINDOW_MS / 1000),
    )


def detect_pace(ctx: DetectorContext, state: ParticipantWindowState) -> FeedbackEvent | None:
    stats = pace_stats(state, ctx.now)
    if stats is None:
        return None

    coverage = state.window(ctx.now, LONG_WINDOW_MS).coverage
    accelerated = (
        stats.switches_per_sec >= PACE_SWITCHES_PER_SEC
        and stats.speech_segments >= PACE_MIN_SPEECH_SEGMENTS
    )
    paused = stats.longest_silence_sec >= PACE_LONG_SILENCE_SEC or coverage < PACE_MIN_COVERAGE
    if accelerated == paused:
        return None

    name = ctx.label(state.participant_id)
    start = ctx.now - LONG_WINDOW_MS
    if accelerated:
        if blocked(ctx, state, FeedbackType.ACCELERATED_PACE):
            return None
        warning = stats.switches_per_sec >= PACE_WARNING_SWITCHES_PER_SEC
        return _fire(
            ctx,
            state,
            FeedbackType.ACCELERATED_PACE,
            FeedbackSeverity.WARNING if warning else FeedbackSeverity.INFO,
            start,
            f"{name}: fast pace, slow down so everyone can follow."
            if warning
            else f"{name}: quick pace, consider short pauses.",
            ["Pause to breathe", "Articulate clearly"],
            speech_coverage=coverage,
        )

    if blocked(ctx, state, FeedbackType.PAUSED_PACE):
        return None
    warning = stats.longest_silence_sec >= PACE_WARNING_SILENCE_SEC
    return _fire(
        ctx,
        state,
        FeedbackType.PAUSED_PACE,
        FeedbackSeverity.WARNING if warning else FeedbackSeverity.INFO,
        start,
        f"{name}: halting pace, avoid long pauses."
        if warning
        else f"{name}: slow pace, pick up the cadence a little.",
        ["Cut down long pauses", "Keep sentences shorter"],
        speech_coverage=coverage,
    )


ParticipantDetector = Callable[[DetectorContext, ParticipantWindowState], FeedbackEvent | None]

PARTICIPANT_DETECTORS: tuple[ParticipantDetector, ...] = (
    detect_prolonged_silence,
    detect_volume,
    detect_hostility,
    detect_boredom,
    detect_frustration,
    detect_confusion,
    detect_positive_engagement,
    detect_high_enthusiasm,
    detect_prosodic_monotony,
    detect_pace,
)


def run_participant_detectors(ctx: DetectorContext, state: ParticipantWindowState) -> list[FeedbackEvent]:
    events = []
    for detector in PARTICIPANT_DETECTORS:
        event = detector(ctx, state)
        if event is not None:
            events.append(event)
    return events


# ══════════════════════════════════════════════════════════════
# Meeting Detectors
# ══════════════════════════════════════════════════════════════


def _guests(meeting: MeetingState) -> list[ParticipantWindowState]:
    return [p for p in meeting.participants.values() if p.role != ParticipantRole.HOST]


def detect_group_low_energy(ctx: DetectorContext, meeting: MeetingState) -> list[FeedbackEvent]:
    values = []
    for state in _guests(meeting):
        w = state.window(ctx.now, LONG_WINDOW_MS)
        if w.samples == 0 or w.coverage < ACTIVE_COVERAGE or state.ema.arousal is None:
            continue
        values.append(state.ema.arousal)
    if not values:
        return []

    mean = sum(values) / len(values)
    if mean > GROUP_LOW_AROUSAL or meeting_blocked(ctx, meeting, FeedbackType.GROUP_LOW_ENERGY):
        return []

    warning = mean <= GROUP_WARNING_AROUSAL
    return [
        _fire_group(
            ctx,
            meeting,
            FeedbackType.GROUP_LOW_ENERGY,
            FeedbackSeverity.WARNING if warning else FeedbackSeverity.INFO,
            ctx.now - LONG_WINDOW_MS,
            "Group energy is low. Consider direct questions or a change of format."
            if warning
            else "Group energy is dropping. Encourage participation.",
            ["Invite specific people to weigh in", "Introduce an open question"],
            arousal_ema=mean,
        )
    ]


def detect_polarization(ctx: DetectorContext, meeting: MeetingState) -> list[FeedbackEvent]:
    guests = _guests(meeting)
    if len(guests) < POLARIZATION_MIN_PARTICIPANTS:
        return []

    positive: list[float] = []
    negative: list[float] = []
    for state in guests:
        w = state.window(ctx.now, LONG_WINDOW_MS)
        valence = state.ema.valence
        if w.samples == 0 or w.coverage < ACTIVE_COVERAGE or valence is None:
            continue
        if valence >= POLARIZATION_POSITIVE:
            positive.append(valence)
        elif valence <= POLARIZATION_NEGATIVE:
            negative.append(valence)
    if not positive or not negative:
        return []

    pos_mean = sum(positive) / len(positive)
    neg_mean = sum(negative) / len(negative)
    if pos_mean - neg_mean < POLARIZATION_SPREAD:
        return []
    if meeting_blocked(ctx, meeting, FeedbackType.EMOTIONAL_POLARIZATION):
        return []

    return [
        _fire_group(
            ctx,
            meeting,
            FeedbackType.EMOTIONAL_POLARIZATION,
            FeedbackSeverity.WARNING,
            ctx.now - LONG_WINDOW_MS,
            "Emotional polarization in the group (strongly diverging views).",
            ["Acknowledge points from both sides", "Agree on shared goals before deciding"],
            valence_ema=round((pos_mean + neg_mean) / 2, 3),
        )
    ]


def update_speaker_tracking(ctx: DetectorContext, meeting: MeetingState) -> list[FeedbackEvent]:
    """Record the dominant speaker when one participant clearly holds the floor."""
    top_id: str | None = None
    top = second = 0.0
    for participant_id, state in meeting.participants.items():
        w = state.window(ctx.now, SHORT_WINDOW_MS)
        if w.samples == 0:
            continue
        coverage = w.coverage
        if coverage > top:
            second, top, top_id = top, coverage, participant_id
        elif coverage > second:
            second = coverage

    if top_id is not None and top >= DOMINANT_COVERAGE and second < SPEAKING_COVERAGE:
        meeting.dominant_speaker = top_id
    return []


def detect_frequent_interruptions(ctx: DetectorContext, meeting: MeetingState) -> list[FeedbackEvent]:
    if not meeting.participants:
        return []

    covers: dict[str, float] = {}
    for participant_id, state in meeting.participants.items():
        w = state.window(ctx.now, SHORT_WINDOW_MS)
        if w.samples:
            covers[participant_id] = w.coverage
    speaking = sum(1 for c in covers.values() if c >= SPEAKING_COVERAGE)

    last = meeting.last_overlap_sample_at
    if speaking >= 2 and (last is None or ctx.now - last >= OVERLAP_SAMPLE_INTERVAL_MS):
        meeting.record_overlap(ctx.now)
        dominant = meeting.dominant_speaker
        if dominant and any(
            pid != dominant and c >= SPEAKING_COVERAGE for pid, c in covers.items()
        ):
            interrupted = meeting.participants.get(dominant)
            meeting.candidates.append(
                InterruptionCandidate(
                    ts=ctx.now,
                    interrupted_id=dominant,
                    valence_before=interrupted.ema.valence if interrupted else None,
                )
            )

    if len(meeting.overlap_history) < INTERRUPTIONS_TO_FIRE:
        return []
    if meeting_blocked(ctx, meeting, FeedbackType.FREQUENT_INTERRUPTIONS):
        return []

    ranked = sorted(
        covers,
        key=lambda pid: meeting.participants[pid].window(ctx.now, LONG_WINDOW_MS).coverage,
        reverse=True,
    )[:2]
    who = f" ({', '.join(ctx.label(pid) for pid in ranked)})" if ranked else ""
    event = _fire_group(
        ctx,
        meeting,
        FeedbackType.FREQUENT_INTERRUPTIONS,
        FeedbackSeverity.WARNING,
        ctx.now - INTERRUPTION_HISTORY_MS,
        f"Frequent interruptions in the last 60s{who}. Agree on turn-taking.",
        ["Use raise-hand", "Set a speaking order"],
    )
    meeting.overlap_history.clear()
    return [event]


def detect_post_interruption_dip(ctx: DetectorContext, meeting: MeetingState) -> list[FeedbackEvent]:
    if not meeting.candidates:
        return []

    events = []
    remaining: list[InterruptionCandidate] = []
    for candidate in meeting.candidates:
        age = ctx.now - candidate.ts
        if age < POST_INTERRUPTION_WAIT_MS:
            remaining.append(candidate)
            continue
        if age > POST_INTERRUPTION_EXPIRE_MS:
            continue

        state = meeting.participants.get(candidate.interrupted_id)
        if state is None or state.ema.valence is None or candidate.valence_before is None:
            remaining.append(candidate)
            continue

        delta = state.ema.valence - candidate.valence_before
        coverage = state.window(ctx.now, LONG_WINDOW_MS).coverage
        if delta > POST_INTERRUPTION_DROP or coverage < SPEAKING_COVERAGE:
            remaining.append(candidate)
            continue

        if not blocked(ctx, state, FeedbackType.POST_INTERRUPTION_DIP):
            events.append(
                _fire(
                    ctx,
                    state,
                    FeedbackType.POST_INTERRUPTION_DIP,
                    FeedbackSeverity.WARNING,
                    candidate.ts,
                    f"{ctx.label(state.participant_id)}: mood dropped after being interrupted.",
                    ["Invite them to finish the interrupted idea", "Make room for them to speak"],
                    valence_ema=state.ema.valence,
                )
            )

    meeting.candidates.clear()
    meeting.candidates.extend(remaining)
    return events


def detect_speech_overlap(ctx: DetectorContext, meeting: MeetingState) -> list[FeedbackEvent]:
    if not meeting.participants:
        return []

    speaking: list[tuple[float, bool, ParticipantWindowState]] = []
    for participant_id, state in meeting.participants.items():
        w = state.window(ctx.now, LONG_WINDOW_MS)
        if w.samples and w.coverage >= SPEAKING_COVERAGE:
            speaking.append((w.coverage, participant_id == ctx.participant_id, state))
    if len(speaking) < 2:
        return []

    coverage, _, target = max(speaking, key=lambda item: (item[0], item[1]))
    if blocked(ctx, target, FeedbackType.SPEECH_OVERLAP):
        return []
    return [
        _fire(
            ctx,
            target,
            FeedbackType.SPEECH_OVERLAP,
            FeedbackSeverity.WARNING,
            ctx.now - LONG_WINDOW_MS,
            f"{ctx.label(target.participant_id)} and someone else are often talking at the same time.",
            ["Agree on turn-taking", "Use raise-hand"],
            speech_coverage=coverage,
        )
    ]


def detect_prolonged_monologue(ctx: DetectorContext, meeting: MeetingState) -> list[FeedbackEvent]:
    if not meeting.participants:
        return []

    start = ctx.now - MONOLOGUE_WINDOW_MS
    counts = [(state.speech_count_since(start), state) for state in meeting.participants.values()]
    total = sum(count for count, _ in counts)
    if total < MONOLOGUE_MIN_SPEECH:
        return []

    top_count, top = max(counts, key=lambda item: item[0])
    ratio = top_count / total
    if ratio < MONOLOGUE_RATIO or blocked(ctx, top, FeedbackType.PROLONGED_MONOLOGUE):
        return []
    return [
        _fire(
            ctx,
            top,
            FeedbackType.PROLONGED_MONOLOGUE,
            FeedbackSeverity.WARNING,
            start,
            f"{ctx.label(top.participant_id)}: dominating the conversation (>=80% of the last 60s).",
            ["Invite others to share their view"],
            speech_coverage=ratio,
        )
    ]


MeetingDetector = Callable[[DetectorContext, MeetingState], list[FeedbackEvent]]

MEETING_DETECTORS: tuple[MeetingDetector, ...] = (
    detect_group_low_energy,
    detect_polarization,
    update_speaker_tracking,
    detect_frequent_interruptions,
    detect_post_interruption_dip,
    detect_speech_overlap,
    detect_prolonged_monologue,
)


def run_meeting_detectors(ctx: DetectorContext, meeting: MeetingState) -> list[FeedbackEvent]:
    """Run group detectors. The caller holds the meeting lock; participant locks are taken here."""
    events: list[FeedbackEvent] = []
    with ExitStack() as stack:
        for participant_id in sorted(meeting.participants):
            stack.enter_context(meeting.participants[participant_id].lock)
        for detector in MEETING_DETECTORS:
            events.extend(detector(ctx, meeting))
    return events
