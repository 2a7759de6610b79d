"""
Pytest configuration and shared fixtures.
"""

import base64
import io
import os
import sys

import numpy as np
import pytest
from PIL import Image

# Add the project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config import Config  # noqa: E402
from shared.schemas import CapabilityFlags, FrameMessage  # noqa: E402


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer environment overrides out of the tests."""
    for key in list(os.environ):
        if key.startswith("TRIFECTA_"):
            monkeypatch.delenv(key, raising=False)
    for key in ("HF_BASE_URL", "HF_TIMEOUT_MS", "HF_MAX_CONCURRENT", "USE_MOCK", "PORT"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def mock_config():
    """Relay config in mock mode with response jitter disabled."""
    return Config(use_mock=True, response_jitter_min_ms=0, response_jitter_max_ms=0)


@pytest.fixture
def gradient_frame():
    """A 64x48 RGB frame with a horizontal gradient (plenty of edges to blur)."""
    xs = np.tile(np.arange(64, dtype=np.uint8) * 4, (48, 1))
    stripes = ((np.arange(64) // 4) % 2 * 255).astype(np.uint8)
    rgb = np.stack([xs, np.tile(stripes, (48, 1)), 255 - xs], axis=-1)
    return Image.fromarray(rgb)


@pytest.fixture
def jpeg_b64(gradient_frame):
    buf = io.BytesIO()
    gradient_frame.save(buf, format="JPEG", quality=60)
    return base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def make_frame(jpeg_b64):
    """Factory for FrameMessage instances with a real JPEG payload."""

    def _make(frame_id=1, face=False, seg=False, text=False, width=64, height=48):
        return FrameMessage(
            id=frame_id,
            ts=1700000000000,
            width=width,
            height=height,
            flags=CapabilityFlags(run_face=face, run_seg=seg, run_text=text),
            image_format="jpeg",
            image=jpeg_b64,
        )

    return _make
