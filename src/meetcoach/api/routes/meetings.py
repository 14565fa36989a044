"""
Meeting Routes

Register participant identities reported by the call platform and end
meetings.
"""

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from meetcoach.core.models import ParticipantRole
from meetcoach.engine import CoachingEngine, get_engine

router = APIRouter()


# ══════════════════════════════════════════════════════════════
# Request/Response Models
# ══════════════════════════════════════════════════════════════


class ParticipantRegistration(BaseModel):
    """Identity of a participant as reported by the call platform."""

    participant_identity: str
    track_id: str | None = None
    metadata: str | dict[str, Any] | None = None


class ParticipantResponse(BaseModel):
    """Resolved identity after registration."""

    meeting_id: str
    participant_identity: str
    role: ParticipantRole
    name: str | None = None


# ══════════════════════════════════════════════════════════════
# Endpoints
# ══════════════════════════════════════════════════════════════


@router.post(
    "/{meeting_id}/participants",
    response_model=ParticipantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_participant(
    meeting_id: str,
    request: ParticipantRegistration,
    engine: CoachingEngine = Depends(get_engine),
) -> ParticipantResponse:
    """Record track ownership, role and display name for a participant."""
    identity = engine.identity
    participant_id = request.participant_identity

    if request.track_id:
        identity.register_track(meeting_id, request.track_id, participant_id)
    role = identity.set_role_from_metadata(meeting_id, participant_id, request.metadata)
    name = identity.set_name_from_metadata(meeting_id, participant_id, request.metadata)

    return ParticipantResponse(
        meeting_id=meeting_id,
        participant_identity=participant_id,
        role=role,
        name=name,
    )


@router.delete("/{meeting_id}", status_code=status.HTTP_204_NO_CONTENT)
async def end_meeting(
    meeting_id: str,
    engine: CoachingEngine = Depends(get_engine),
) -> None:
    """Drop identity, rolling feedback state and the channel of a meeting."""
    await engine.end_meeting(meeting_id)
