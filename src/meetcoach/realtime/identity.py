"""
Participant Identity Index

Per-meeting maps from track ids to participant identities, and from
participants to role and display name, filled from call-platform metadata.
"""

from dataclasses import dataclass, field
from typing import Any

import orjson
import structlog

from meetcoach.core.models import ParticipantRole

logger = structlog.get_logger()

NAME_KEYS = ("name", "displayName", "participantName")


@dataclass
class MeetingIdentity:
    """Identity maps for one meeting."""

    track_to_participant: dict[str, str] = field(default_factory=dict)
    participant_roles: dict[str, set[ParticipantRole]] = field(default_factory=dict)
    participant_names: dict[str, str] = field(default_factory=dict)


def _parse_metadata(metadata: str | bytes | dict | None) -> dict[str, Any] | None:
    if metadata is None:
        return None
    if isinstance(metadata, dict):
        return metadata
    if not metadata:
        return None
    try:
        parsed = orjson.loads(metadata)
    except orjson.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_roles(metadata: str | bytes | dict | None) -> set[ParticipantRole]:
    """
    Roles declared by `role`, `roles[]` or `isHost`.

    An empty set means the metadata said nothing about the role.
    """
    parsed = _parse_metadata(metadata)
    roles: set[ParticipantRole] = set()
    if parsed is None:
        return roles

    role = parsed.get("role")
    if isinstance(role, str) and role.strip():
        roles.add(ParticipantRole.HOST if role.strip().lower() == "host" else ParticipantRole.GUEST)

    declared = parsed.get("roles")
    if isinstance(declared, list):
        names = [r.strip().lower() for r in declared if isinstance(r, str) and r.strip()]
        if "host" in names:
            roles.add(ParticipantRole.HOST)
        elif names:
            roles.add(ParticipantRole.GUEST)

    is_host = parsed.get("isHost")
    if isinstance(is_host, bool):
        roles.add(ParticipantRole.HOST if is_host else ParticipantRole.GUEST)

    return roles


def parse_name(metadata: str | bytes | dict | None) -> str | None:
    """First non-blank of name, displayName, participantName."""
    parsed = _parse_metadata(metadata)
    if parsed is None:
        return None
    for key in NAME_KEYS:
        value = parsed.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class IdentityIndex:
    """In-memory identity registry, keyed by meeting."""

    def __init__(self) -> None:
        self._meetings: dict[str, MeetingIdentity] = {}

    def _get_or_create(self, meeting_id: str) -> MeetingIdentity:
        meeting = self._meetings.get(meeting_id)
        if meeting is None:
            meeting = MeetingIdentity()
            self._meetings[meeting_id] = meeting
        return meeting

    def register_track(self, meeting_id: str, track_id: str, participant_id: str) -> None:
        self._get_or_create(meeting_id).track_to_participant[track_id] = participant_id

    def resolve_participant_by_track(self, meeting_id: str, track_id: str) -> str | None:
        meeting = self._meetings.get(meeting_id)
        return meeting.track_to_participant.get(track_id) if meeting else None

    def set_role_from_metadata(
        self,
        meeting_id: str,
        participant_id: str,
        metadata: str | bytes | dict | None,
    ) -> ParticipantRole:
        """Record declared roles. Metadata without a role leaves the current value."""
        roles = parse_roles(metadata)
        if roles:
            self._get_or_create(meeting_id).participant_roles[participant_id] = roles
            logger.info(
                "Participant roles set",
                meeting_id=meeting_id,
                participant_id=participant_id,
                roles=sorted(r.value for r in roles),
            )
        return self.get_role(meeting_id, participant_id)

    def set_name_from_metadata(
        self,
        meeting_id: str,
        participant_id: str,
        metadata: str | bytes | dict | None,
    ) -> str | None:
        name = parse_name(metadata)
        if name:
            self._get_or_create(meeting_id).participant_names[participant_id] = name
            logger.info(
                "Participant name set",
                meeting_id=meeting_id,
                participant_id=participant_id,
                name=name,
            )
        return self.get_name(meeting_id, participant_id)

    def get_role(self, meeting_id: str, participant_id: str) -> ParticipantRole:
        meeting = self._meetings.get(meeting_id)
        roles = meeting.participant_roles.get(participant_id) if meeting else None
        if not roles:
            return ParticipantRole.UNKNOWN
        if ParticipantRole.HOST in roles:
            return ParticipantRole.HOST
        return ParticipantRole.GUEST

    def get_name(self, meeting_id: str, participant_id: str) -> str | None:
        meeting = self._meetings.get(meeting_id)
        return meeting.participant_names.get(participant_id) if meeting else None

    def clear_meeting(self, meeting_id: str) -> None:
        if self._meetings.pop(meeting_id, None) is not None:
            logger.info("Meeting identity cleared", meeting_id=meeting_id)

    def has_meeting(self, meeting_id: str) -> bool:
        return meeting_id in self._meetings
