"""
Tests for the compositing renderer.
"""

import base64

import numpy as np
import pytest

from edge.overlay import MaskSurface, OverlaySnapshot
from edge.renderer import CompositingRenderer, RenderSettings, box_to_rect, heavy_blur
from shared import maskcodec
from shared.schemas import CapabilityFlags, NormalizedBox, SegMask

SEG = CapabilityFlags(run_seg=True)
FACE = CapabilityFlags(run_face=True)
TEXT = CapabilityFlags(run_text=True)


@pytest.fixture
def renderer():
    return CompositingRenderer(RenderSettings(background_blur_radius=18.0, face_blur_radius=8.0))


def _surface(mask):
    data = base64.b64encode(maskcodec.encode(mask)).decode("ascii")
    return MaskSurface.build(SegMask(data_b64=data), response_id=1, feather_radius=0)


def test_box_to_rect():
    box = NormalizedBox(x=0.25, y=0.5, w=0.5, h=0.25)
    assert box_to_rect(box, 64, 48) == (16, 24, 32, 12)


class TestBackground:
    """Tests for the segmentation layer."""

    def test_seg_off_passthrough(self, renderer, gradient_frame):
        out = renderer.render(gradient_frame, CapabilityFlags(), OverlaySnapshot())
        assert out is not gradient_frame
        np.testing.assert_array_equal(np.asarray(out), np.asarray(gradient_frame))

    def test_seg_on_without_mask_blurs_everything(self, renderer, gradient_frame):
        out = renderer.render(gradient_frame, SEG, OverlaySnapshot())
        expected = heavy_blur(gradient_frame, 18.0)
        np.testing.assert_array_equal(np.asarray(out), np.asarray(expected))
        assert not np.array_equal(np.asarray(out), np.asarray(gradient_frame))

    def test_full_foreground_mask_keeps_frame(self, renderer, gradient_frame):
        snap = OverlaySnapshot(mask=_surface(np.ones((48, 64), dtype=bool)))
        out = renderer.render(gradient_frame, SEG, snap)
        np.testing.assert_array_equal(np.asarray(out), np.asarray(gradient_frame))

    def test_half_mask_splits_sharp_and_blurred(self, renderer, gradient_frame):
        mask = np.zeros((48, 64), dtype=bool)
        mask[:, :32] = True
        out = np.asarray(renderer.render(gradient_frame, SEG, OverlaySnapshot(mask=_surface(mask))))
        sharp = np.asarray(gradient_frame)
        blurred = np.asarray(heavy_blur(gradient_frame, 18.0))
        np.testing.assert_array_equal(out[:, :32], sharp[:, :32])
        np.testing.assert_array_equal(out[:, 32:], blurred[:, 32:])

    def test_low_resolution_mask_is_scaled(self, renderer, gradient_frame):
        snap = OverlaySnapshot(mask=_surface(np.ones((12, 16), dtype=bool)))
        out = renderer.render(gradient_frame, SEG, snap)
        assert out.size == gradient_frame.size

    def test_input_frame_untouched(self, renderer, gradient_frame):
        before = np.asarray(gradient_frame).copy()
        snap = OverlaySnapshot(faces=(NormalizedBox(x=0.1, y=0.1, w=0.5, h=0.5),))
        renderer.render(gradient_frame, FACE, snap)
        np.testing.assert_array_equal(np.asarray(gradient_frame), before)


class TestBoxes:
    """Tests for the face and text layers."""

    def test_face_region_blurred(self, renderer, gradient_frame):
        box = NormalizedBox(x=0.25, y=0.25, w=0.5, h=0.5)
        out = np.asarray(renderer.render(gradient_frame, FACE, OverlaySnapshot(faces=(box,))))
        src = np.asarray(gradient_frame)
        # Interior of the box changes, far corner does not.
        assert not np.array_equal(out[20:28, 26:38], src[20:28, 26:38])
        np.testing.assert_array_equal(out[:5, :5], src[:5, :5])

    def test_faces_hidden_when_flag_off(self, renderer, gradient_frame):
        box = NormalizedBox(x=0.25, y=0.25, w=0.5, h=0.5)
        out = renderer.render(gradient_frame, TEXT, OverlaySnapshot(faces=(box,)))
        np.testing.assert_array_equal(np.asarray(out), np.asarray(gradient_frame))

    def test_text_box_tinted(self, renderer, gradient_frame):
        box = NormalizedBox(x=0.25, y=0.25, w=0.5, h=0.5)
        out = np.asarray(renderer.render(gradient_frame, TEXT, OverlaySnapshot(texts=(box,))))
        src = np.asarray(gradient_frame)
        assert not np.array_equal(out[24, 32], src[24, 32])
        np.testing.assert_array_equal(out[:5, :5], src[:5, :5])

    def test_zero_area_box_is_skipped(self, renderer, gradient_frame):
        box = NormalizedBox(x=0.5, y=0.5, w=0.0, h=0.0)
        out = renderer.render(gradient_frame, FACE, OverlaySnapshot(faces=(box,)))
        np.testing.assert_array_equal(np.asarray(out), np.asarray(gradient_frame))
