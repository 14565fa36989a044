"""
Pytest Configuration and Fixtures

Shared fixtures for unit tests.
"""

import numpy as np
import pytest

from meetcoach.config import Settings
from meetcoach.core.models import TrackKey
from meetcoach.feedback import FeedbackAggregator


# Epoch ms base for deterministic sample timelines
T0 = 1_700_000_000_000


# ══════════════════════════════════════════════════════════════
# Settings Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def test_settings() -> Settings:
    """Test settings with local configurations."""
    return Settings(
        app_env="development",
        debug=True,
        redis_url="redis://localhost:6379/15",
        prosody_ws_url="ws://localhost:9999/stream",
        prosody_api_key="test-key",
    )


# ══════════════════════════════════════════════════════════════
# Audio Fixtures
# ══════════════════════════════════════════════════════════════


def make_pcm(amplitude: float, n_samples: int, channels: int = 1, frequency: float = 440.0, sample_rate: int = 16000) -> bytes:
    """PCM s16le sine wave; amplitude is a fraction of full scale."""
    t = np.arange(n_samples) / sample_rate
    wave = amplitude * 32767 * np.sin(2 * np.pi * frequency * t)
    frames = np.repeat(wave[:, None], channels, axis=1).reshape(-1)
    return np.rint(frames).astype("<i2").tobytes()


@pytest.fixture
def pcm_factory():
    """Builder for synthetic PCM payloads."""
    return make_pcm


@pytest.fixture
def loud_pcm() -> bytes:
    """0.5 s of a half-scale tone at 16 kHz mono."""
    return make_pcm(0.5, 8000)


@pytest.fixture
def silent_pcm() -> bytes:
    """0.5 s of digital silence at 16 kHz mono."""
    return bytes(16000)


# ══════════════════════════════════════════════════════════════
# Model Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def track_key() -> TrackKey:
    return TrackKey("meeting-1", "alice", "track-a")


# ══════════════════════════════════════════════════════════════
# Feedback Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def aggregator() -> FeedbackAggregator:
    """Aggregator with default thresholds, independent of environment."""
    return FeedbackAggregator(
        include_host=False,
        ema_alpha=0.3,
        min_gap_ms=5000,
        meeting_min_gap_ms=0,
        clock=lambda: T0,
    )
