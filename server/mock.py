# =============================================================================
# Trifecta Overlay - Mock Inference
# =============================================================================
# Synthetic, slowly moving annotations used when no real backend is
# configured (use_mock).  The segmentation mask is a real packbits buffer so
# the client exercises its full decode path.
# =============================================================================

import base64
import math
import time
from typing import Optional

import numpy as np

from shared import maskcodec
from shared.schemas import CapabilityFlags, NormalizedBox, SegMask


# The client scales masks to the frame, so synthetic ones stay small.
MOCK_MASK_MAX_SIDE = 256


def _mask_size(width: int, height: int):
    scale = min(1.0, MOCK_MASK_MAX_SIDE / float(max(width, height)))
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def _circle_mask(width: int, height: int, cx: float, cy: float, r: float) -> np.ndarray:
    ys, xs = np.mgrid[0:height, 0:width]
    radius = r * min(width, height)
    return (xs - cx * width) ** 2 + (ys - cy * height) ** 2 <= radius ** 2


def make_mock_inference(
    flags: CapabilityFlags,
    width: int,
    height: int,
    now: Optional[float] = None,
    is_background_mask: bool = True,
):
    """
    Produce time-varying metadata for the requested capabilities.

    Args:
        flags:  Requested capabilities.
        width:  Frame width; the mask keeps its aspect, at most
                MOCK_MASK_MAX_SIDE on the long side.
        height: Frame height.
        now:    Clock value in seconds (defaults to time.time()).
        is_background_mask: Polarity used when packing the mask.

    Returns:
        (faces, texts, seg) in canonical shapes.
    """
    t = time.time() if now is None else now
    faces, texts, seg = [], [], None

    if flags.run_face:
        size = 0.18 + 0.02 * math.sin(t * 1.4)
        cx = 0.5 + 0.08 * math.sin(t * 1.1)
        cy = 0.35 + 0.05 * math.cos(t * 1.3)
        faces.append(NormalizedBox(x=cx - size / 2, y=cy - size / 2, w=size, h=size))

    if flags.run_text:
        w = 0.32 + 0.04 * math.sin(t * 0.9)
        texts.append(NormalizedBox(x=0.1, y=0.72 + 0.03 * math.sin(t * 1.2), w=w, h=0.08))
        texts.append(NormalizedBox(x=0.55, y=0.15 + 0.02 * math.cos(t * 0.7), w=0.3, h=0.07))

    if flags.run_seg:
        mask_width, mask_height = _mask_size(width, height)
        mask = _circle_mask(
            mask_width,
            mask_height,
            cx=0.5 + 0.05 * math.sin(t * 0.8),
            cy=0.52 + 0.03 * math.cos(t * 1.1),
            r=0.38,
        )
        packed = maskcodec.encode(mask, is_background_mask=is_background_mask)
        seg = SegMask(
            data_b64=base64.b64encode(packed).decode("ascii"),
            is_background_mask=is_background_mask,
        )

    return faces, texts, seg
