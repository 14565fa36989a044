"""
Feedback Routes

Read-only views over live aggregator state, delivery metrics and the
persisted feedback history of a meeting.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from meetcoach.core.models import FeedbackEvent
from meetcoach.engine import CoachingEngine, get_engine

logger = structlog.get_logger()

router = APIRouter()


# ══════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════


class ParticipantDebug(BaseModel):
    """Rolling state of one participant."""

    participant_id: str
    name: str | None = None
    speech_coverage_10s: float
    rms_mean_3s: float | None = None
    ema_rms: float | None = None
    samples: int


class DebugResponse(BaseModel):
    meeting_id: str
    participants: list[ParticipantDebug]


class MetricsResponse(BaseModel):
    meeting_id: str
    counts: dict[str, int]
    average_latency_ms: int | None = None
    sample_count: int


class HistoryResponse(BaseModel):
    meeting_id: str
    events: list[FeedbackEvent]
    total: int


# ══════════════════════════════════════════════════════════════
# Endpoints
# ══════════════════════════════════════════════════════════════


@router.get("/debug/{meeting_id}", response_model=DebugResponse)
async def get_debug(
    meeting_id: str,
    engine: CoachingEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Per-participant coverage and loudness over the recent windows."""
    return engine.aggregator.get_debug(meeting_id)


@router.get("/metrics/{meeting_id}", response_model=MetricsResponse)
async def get_metrics(
    meeting_id: str,
    engine: CoachingEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Delivered event counts by type and average delivery latency."""
    return engine.delivery.get_metrics(meeting_id)


@router.get("/history/{meeting_id}", response_model=HistoryResponse)
async def get_history(
    meeting_id: str,
    limit: int | None = Query(None, ge=1, le=1000),
    engine: CoachingEngine = Depends(get_engine),
) -> HistoryResponse:
    """Persisted, unexpired feedback events, oldest first."""
    try:
        events = await engine.repository.list_events(meeting_id, limit=limit)
    except Exception as e:
        logger.error("Feedback history read failed", meeting_id=meeting_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Feedback history unavailable",
        )

    return HistoryResponse(meeting_id=meeting_id, events=events, total=len(events))
