"""
Feedback Aggregator

Folds ingestion samples into rolling per-participant and per-meeting state and
runs the detectors in a fixed order. `ingest` is synchronous and only returns
events; broadcasting and persistence happen in the delivery layer.
"""

import threading
from typing import Any, Callable

import structlog

from meetcoach.config import settings
from meetcoach.core.models import FeedbackEvent, ParticipantRole, Sample, now_ms

from .detectors import DetectorContext, NameResolver, run_meeting_detectors, run_participant_detectors
from .state import LONG_WINDOW_MS, SHORT_WINDOW_MS, MeetingState, ParticipantWindowState

logger = structlog.get_logger()


class FeedbackAggregator:
    """
    Heuristic feedback engine.

    Locking: a registry lock guards creation and removal of meetings. Each
    ingestion takes the participant lock for the append/EMA/participant
    detectors, releases it, then takes the meeting lock followed by every
    participant lock for the meeting detectors.
    """

    def __init__(
        self,
        name_resolver: NameResolver | None = None,
        include_host: bool | None = None,
        ema_alpha: float | None = None,
        min_gap_ms: int | None = None,
        meeting_min_gap_ms: int | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._name_resolver = name_resolver
        self.include_host = settings.feedback_include_host if include_host is None else include_host
        self.ema_alpha = settings.feedback_ema_alpha if ema_alpha is None else ema_alpha
        self.min_gap_ms = settings.feedback_min_gap_ms if min_gap_ms is None else min_gap_ms
        self.meeting_min_gap_ms = (
            settings.feedback_meeting_min_gap_ms if meeting_min_gap_ms is None else meeting_min_gap_ms
        )
        self._clock = clock

        self._meetings: dict[str, MeetingState] = {}
        self._registry_lock = threading.Lock()

    def _get_or_create_meeting(self, meeting_id: str) -> MeetingState:
        with self._registry_lock:
            meeting = self._meetings.get(meeting_id)
            if meeting is None:
                meeting = MeetingState(meeting_id=meeting_id)
                self._meetings[meeting_id] = meeting
                logger.info("Feedback meeting state created", meeting_id=meeting_id)
            return meeting

    def _participant(self, meeting: MeetingState, participant_id: str) -> ParticipantWindowState:
        with meeting.lock:
            return meeting.get_or_create(participant_id)

    def ingest(
        self,
        sample: Sample,
        meeting_id: str,
        participant_id: str,
        role: ParticipantRole = ParticipantRole.UNKNOWN,
    ) -> list[FeedbackEvent]:
        """Fold one sample into state and return the events it triggered."""
        if not participant_id:
            return []
        if role == ParticipantRole.HOST and not self.include_host:
            return []

        meeting = self._get_or_create_meeting(meeting_id)
        state = self._participant(meeting, participant_id)
        ctx = DetectorContext(
            meeting_id=meeting_id,
            participant_id=participant_id,
            now=sample.timestamp_ms,
            min_gap_ms=self.min_gap_ms,
            meeting_min_gap_ms=self.meeting_min_gap_ms,
            name_resolver=self._name_resolver,
        )

        with state.lock:
            state.role = role
            state.append(sample)
            state.prune()
            state.ema.update(sample, self.ema_alpha)
            events = run_participant_detectors(ctx, state)

        with meeting.lock:
            events.extend(run_meeting_detectors(ctx, meeting))

        for event in events:
            logger.info(
                "Feedback detected",
                meeting_id=meeting_id,
                participant_id=event.participant_id,
                type=event.type.value,
                severity=event.severity.value,
            )
        return events

    # ──────────────────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────────────────

    def get_debug(self, meeting_id: str, now: int | None = None) -> dict[str, Any]:
        """Per-participant coverage, loudness and sample counts."""
        at = self._clock() if now is None else now
        meeting = self._meetings.get(meeting_id)
        participants = []
        if meeting is not None:
            with meeting.lock:
                states = list(meeting.participants.values())
            for state in states:
                with state.lock:
                    long = state.window(at, LONG_WINDOW_MS)
                    short = state.window(at, SHORT_WINDOW_MS)
                    participants.append(
                        {
                            "participant_id": state.participant_id,
                            "name": self._name_resolver(meeting_id, state.participant_id)
                            if self._name_resolver
                            else None,
                            "speech_coverage_10s": long.coverage,
                            "rms_mean_3s": short.mean_rms_dbfs,
                            "ema_rms": state.ema.rms,
                            "samples": len(state.samples),
                        }
                    )
        return {"meeting_id": meeting_id, "participants": participants}

    def get_participant_state(self, meeting_id: str, participant_id: str) -> ParticipantWindowState | None:
        meeting = self._meetings.get(meeting_id)
        return meeting.participants.get(participant_id) if meeting else None

    def get_meeting_state(self, meeting_id: str) -> MeetingState | None:
        return self._meetings.get(meeting_id)

    def clear_meeting(self, meeting_id: str) -> None:
        """Drop every window, EMA and cooldown of a meeting."""
        with self._registry_lock:
            removed = self._meetings.pop(meeting_id, None)
        if removed is not None:
            logger.info(
                "Feedback meeting state cleared",
                meeting_id=meeting_id,
                participants=len(removed.participants),
            )

    def get_stats(self) -> dict[str, int]:
        return {
            "meetings": len(self._meetings),
            "participants": sum(len(m.participants) for m in self._meetings.values()),
        }
