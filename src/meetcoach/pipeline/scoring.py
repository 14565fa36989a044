"""
Prosody Response Interpretation

Turns a raw streaming-model message into a ProsodyReading: speech flag,
valence/arousal, averaged emotion scores, warnings and any error envelope.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any

import orjson
import structlog

logger = structlog.get_logger()

MAX_WALK_DEPTH = 16
PREVIEW_CHARS = 200
NO_SPEECH_MARKERS = ("no speech", "w0105")


@dataclass
class ProsodyReading:
    """Normalized content of one model message."""

    has_prosody: bool = False
    speech_detected: bool = True
    valence: float | None = None
    arousal: float | None = None
    emotions: dict[str, float] | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    message_type: str | None = None
    preview: str = ""
    raw_hash: str = ""

    @property
    def has_affect(self) -> bool:
        return self.valence is not None or self.arousal is not None or bool(self.emotions)

    @property
    def should_emit(self) -> bool:
        return self.has_prosody or self.has_affect


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


def preview_text(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def find_valence_arousal(node: Any, max_depth: int = MAX_WALK_DEPTH) -> tuple[float | None, float | None]:
    """
    Depth-first search for numeric valence/arousal.

    Matches keys equal to "valence"/"arousal" or ending in "_valence"/"_arousal"
    (case-insensitive). The first match of each wins; values clamp to [-1, 1].
    """
    found: dict[str, float] = {}

    def visit(current: Any, depth: int) -> None:
        if depth > max_depth or len(found) == 2:
            return

        if isinstance(current, list):
            for item in current:
                visit(item, depth + 1)
                if len(found) == 2:
                    return
            return

        if not isinstance(current, dict):
            return

        for raw_key, value in current.items():
            key = str(raw_key).lower()
            if _is_number(value):
                if "valence" not in found and (key == "valence" or key.endswith("_valence")):
                    found["valence"] = _clamp(value, -1.0, 1.0)
                elif "arousal" not in found and (key == "arousal" or key.endswith("_arousal")):
                    found["arousal"] = _clamp(value, -1.0, 1.0)
            elif isinstance(value, (dict, list)):
                visit(value, depth + 1)
            if len(found) == 2:
                return

    visit(node, 0)
    return found.get("valence"), found.get("arousal")


def find_emotions(node: Any, max_depth: int = MAX_WALK_DEPTH) -> dict[str, float] | None:
    """
    Collect every "emotions" block and average scores per emotion name.

    Accepts lists of {"name", "score"} objects or name -> number mappings.
    Names are lower-cased and scores clamp to [0, 1].
    """
    totals: dict[str, float] = {}
    counts: dict[str, int] = {}

    def add(name: Any, score: Any) -> None:
        if not isinstance(name, str) or not name.strip() or not _is_number(score):
            return
        key = name.strip().lower()
        totals[key] = totals.get(key, 0.0) + _clamp(score, 0.0, 1.0)
        counts[key] = counts.get(key, 0) + 1

    def collect(block: Any) -> None:
        if isinstance(block, list):
            for item in block:
                if isinstance(item, dict):
                    add(item.get("name"), item.get("score"))
        elif isinstance(block, dict):
            for name, score in block.items():
                add(name, score)

    def visit(current: Any, depth: int) -> None:
        if depth > max_depth:
            return
        if isinstance(current, list):
            for item in current:
                visit(item, depth + 1)
        elif isinstance(current, dict):
            for key, value in current.items():
                if str(key).lower() == "emotions":
                    collect(value)
                elif isinstance(value, (dict, list)):
                    visit(value, depth + 1)

    visit(node, 0)
    if not totals:
        return None
    return {name: totals[name] / counts[name] for name in totals}


def find_error(message: dict[str, Any]) -> str | None:
    """Extract an error description from `error` (string or object) or `errors[0]`."""
    error = message.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]

    errors = message.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict) and isinstance(first.get("message"), str):
            return first["message"]
    return None


def prosody_warnings(block: dict[str, Any]) -> list[str]:
    return [block[key] for key in ("warning", "code") if isinstance(block.get(key), str)]


def is_no_speech(warnings: list[str]) -> bool:
    text = " ".join(warnings).lower()
    return any(marker in text for marker in NO_SPEECH_MARKERS)


def interpret_message(text: str | bytes) -> ProsodyReading | None:
    """
    Parse one inbound model message.

    Returns None for non-JSON payloads.
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")

    try:
        message = orjson.loads(text)
    except orjson.JSONDecodeError:
        return None

    reading = ProsodyReading(preview=preview_text(text), raw_hash=sha256_hex(text))
    if not isinstance(message, dict):
        return reading

    if isinstance(message.get("type"), str):
        reading.message_type = message["type"]
    reading.error = find_error(message)

    prosody = message.get("prosody")
    if isinstance(prosody, dict):
        reading.has_prosody = True
        reading.warnings = prosody_warnings(prosody)
        reading.speech_detected = not is_no_speech(reading.warnings)
        valence, arousal = find_valence_arousal(prosody)
        if valence is None and arousal is None:
            valence, arousal = find_valence_arousal(message)
        reading.valence, reading.arousal = valence, arousal
        reading.emotions = find_emotions(prosody)
    else:
        reading.valence, reading.arousal = find_valence_arousal(message)
        reading.emotions = find_emotions(message)

    return reading
