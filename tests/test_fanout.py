"""
Tests for the concurrency-limited inference fan-out.
"""

import asyncio
import threading
import time

import pytest

from server.backend import BackendError, BackendTimeout
from server.fanout import InferenceFanout
from server.limiter import ConcurrencyLimiter
from shared import maskcodec


class FakeBackend:
    """Stands in for BackendClient; answers per capability."""

    def __init__(self, answers=None, delay=0.0):
        self.answers = answers or {}
        self.delay = delay
        self.calls = []
        self.current = 0
        self.peak = 0
        self._lock = threading.Lock()

    def call(self, kind, image_bytes, image_format):
        with self._lock:
            self.calls.append(kind)
            self.current += 1
            self.peak = max(self.peak, self.current)
        try:
            if self.delay:
                time.sleep(self.delay)
            answer = self.answers.get(kind, {})
            if isinstance(answer, Exception):
                raise answer
            return answer
        finally:
            with self._lock:
                self.current -= 1

    def close(self):
        pass


def _fanout(backend, cap=6):
    return InferenceFanout(client=backend, limiter=ConcurrencyLimiter(cap), use_mock=False)


class TestInferenceFanout:
    """Tests for dispatch, merging and failure isolation."""

    @pytest.mark.asyncio
    async def test_face_only_scenario(self, make_frame):
        backend = FakeBackend({"face": {"boxes": [{"x": 0.1, "y": 0.2, "w": 0.3, "h": 0.4}]}})
        fanout = _fanout(backend)

        result = await fanout.infer(make_frame(face=True))

        assert backend.calls == ["face"]
        assert [f.model_dump() for f in result.faces] == [{"x": 0.1, "y": 0.2, "w": 0.3, "h": 0.4}]
        assert result.texts == []
        assert result.seg is None
        fanout.close()

    @pytest.mark.asyncio
    async def test_no_flags_no_calls(self, make_frame):
        backend = FakeBackend()
        fanout = _fanout(backend)
        result = await fanout.infer(make_frame())
        assert backend.calls == []
        assert result.faces == [] and result.seg is None
        fanout.close()

    @pytest.mark.asyncio
    async def test_face_failure_keeps_segmentation(self, make_frame):
        mask = {"kind": "mask", "format": "packbits", "data_b64": "AAEACQAC8IAAAA=="}
        backend = FakeBackend({"face": BackendTimeout("face timed out"), "seg": mask})
        fanout = _fanout(backend)

        result = await fanout.infer(make_frame(face=True, seg=True))

        assert result.faces == []
        assert result.seg is not None
        assert result.seg.data_b64 == mask["data_b64"]
        assert "face" in result.failures
        assert fanout.failure_counts["face"] == 1
        fanout.close()

    @pytest.mark.asyncio
    async def test_seg_failure_keeps_faces(self, make_frame):
        backend = FakeBackend({
            "seg": BackendError("seg request failed: 500"),
            "face": {"faces": [{"x": 0.5, "y": 0.5, "w": 0.1, "h": 0.1}]},
            "text": {"texts": [[0.1, 0.7, 0.3, 0.08]]},
        })
        fanout = _fanout(backend)

        result = await fanout.infer(make_frame(face=True, seg=True, text=True))

        assert result.seg is None
        assert len(result.faces) == 1
        assert len(result.texts) == 1
        assert set(result.failures) == {"seg"}
        fanout.close()

    @pytest.mark.asyncio
    async def test_global_cap_across_requests(self, make_frame):
        backend = FakeBackend(delay=0.03)
        fanout = _fanout(backend, cap=2)

        frames = [make_frame(frame_id=i, face=True, seg=True, text=True) for i in range(4)]
        await asyncio.gather(*(fanout.infer(f) for f in frames))

        assert len(backend.calls) == 12
        assert backend.peak <= 2
        assert fanout.limiter.active == 0
        fanout.close()

    @pytest.mark.asyncio
    async def test_invalid_image_rejected(self, make_frame):
        fanout = _fanout(FakeBackend())
        frame = make_frame(face=True).model_copy(update={"image": "***"})
        with pytest.raises(ValueError):
            await fanout.infer(frame)
        fanout.close()

    @pytest.mark.asyncio
    async def test_mock_mode_returns_real_mask(self, make_frame):
        fanout = InferenceFanout(client=None, limiter=ConcurrencyLimiter(1), use_mock=True)

        result = await fanout.infer(make_frame(face=True, seg=True, text=True, width=32, height=24))

        assert len(result.faces) == 1
        assert len(result.texts) == 2
        packed = maskcodec.decode(maskcodec.decode_b64(result.seg.data_b64))
        assert (packed.width, packed.height) == (32, 24)
        alpha = maskcodec.to_alpha(packed, result.seg.is_background_mask)
        # Circle centred near the middle: centre is foreground, corner is not.
        assert alpha[12, 16] == 255
        assert alpha[0, 0] == 0
        fanout.close()

    @pytest.mark.asyncio
    async def test_mock_mask_resolution_is_capped(self, make_frame):
        fanout = InferenceFanout(client=None, limiter=ConcurrencyLimiter(1), use_mock=True)

        result = await fanout.infer(make_frame(seg=True, width=4000, height=3000))

        packed = maskcodec.decode(maskcodec.decode_b64(result.seg.data_b64))
        assert (packed.width, packed.height) == (256, 192)
        fanout.close()
