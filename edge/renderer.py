# =============================================================================
# Trifecta Overlay - Compositing Renderer
# =============================================================================
# Produces the displayed image every render tick from the raw frame, the
# capability flags and the latest OverlaySnapshot.  Layers, bottom to top:
#
#   1. segmentation off          -> raw frame
#      segmentation on, no mask  -> heavily blurred frame (privacy fallback)
#      segmentation on, mask     -> blurred frame + sharp frame through the
#                                   feathered mask
#   2. face boxes                -> local blur patch + orange outline
#   3. text boxes                -> translucent yellow fill + outline
#
# Inference results are a slowly updating side input; nothing here waits for
# the network.
# =============================================================================

import logging
from dataclasses import dataclass
from typing import Tuple

from PIL import Image, ImageDraw, ImageFilter

from edge.overlay import OverlaySnapshot
from shared.schemas import CapabilityFlags, NormalizedBox

logger = logging.getLogger(__name__)

FACE_COLOR = (255, 122, 89, 230)
TEXT_COLOR = (255, 214, 0, 230)
TEXT_FILL = (255, 214, 0, 90)
BOX_LINE_WIDTH = 3

# Full-frame blur is done at 1/_BLUR_DOWNSCALE resolution.
_BLUR_DOWNSCALE = 4


def box_to_rect(box: NormalizedBox, width: int, height: int) -> Tuple[int, int, int, int]:
    """
    Convert a unit-coordinate box to a pixel rect (x, y, w, h).

    Each component is clamped to be non-negative.
    """
    x = max(0.0, box.x * width)
    y = max(0.0, box.y * height)
    w = max(0.0, box.w * width)
    h = max(0.0, box.h * height)
    return int(round(x)), int(round(y)), int(round(w)), int(round(h))


def heavy_blur(frame: Image.Image, radius: float) -> Image.Image:
    """
    Strong Gaussian blur computed at reduced resolution.

    Downscaling first keeps a privacy-grade blur cheap enough to run at
    display rate; the bilinear upscale adds further smoothing.
    """
    width, height = frame.size
    small_size = (max(1, width // _BLUR_DOWNSCALE), max(1, height // _BLUR_DOWNSCALE))
    small = frame.resize(small_size, Image.BILINEAR)
    small = small.filter(ImageFilter.GaussianBlur(max(1.0, radius / _BLUR_DOWNSCALE)))
    return small.resize((width, height), Image.BILINEAR)


@dataclass
class RenderSettings:
    background_blur_radius: float = 18.0
    face_blur_radius: float = 16.0

    @classmethod
    def from_config(cls, config) -> "RenderSettings":
        return cls(
            background_blur_radius=config.background_blur_radius,
            face_blur_radius=config.face_blur_radius,
        )


class CompositingRenderer:
    """
    Layered compositor for the live overlay.

    Args:
        settings: Blur radii.
    """

    def __init__(self, settings: RenderSettings = None):
        self._settings = settings or RenderSettings()

    def render(self, frame: Image.Image, flags: CapabilityFlags, snapshot: OverlaySnapshot) -> Image.Image:
        """
        Composite one output frame.

        Args:
            frame:    Current raw RGB frame.
            flags:    Capabilities currently enabled by the user.
            snapshot: Latest applied inference state.

        Returns:
            PIL.Image.Image: New RGB image; ``frame`` is not modified.
        """
        if frame.mode != "RGB":
            frame = frame.convert("RGB")

        if flags.run_seg:
            output = self._segmented(frame, snapshot)
        else:
            output = frame.copy()

        if flags.run_face and snapshot.faces:
            self._draw_faces(output, snapshot.faces)

        if flags.run_text and snapshot.texts:
            self._draw_texts(output, snapshot.texts)

        return output

    def _segmented(self, frame: Image.Image, snapshot: OverlaySnapshot) -> Image.Image:
        background = heavy_blur(frame, self._settings.background_blur_radius)
        if snapshot.mask is None:
            return background
        stencil = snapshot.mask.scaled_to(frame.size)
        return Image.composite(frame, background, stencil)

    def _draw_faces(self, output: Image.Image, faces) -> None:
        width, height = output.size
        draw = ImageDraw.Draw(output, "RGBA")
        blur = ImageFilter.GaussianBlur(self._settings.face_blur_radius)

        for face in faces:
            x, y, w, h = box_to_rect(face, width, height)
            region = (x, y, min(width, x + w), min(height, y + h))
            if region[2] > region[0] and region[3] > region[1]:
                output.paste(output.crop(region).filter(blur), region[:2])
            self._outline(draw, (x, y, w, h), FACE_COLOR)

    def _draw_texts(self, output: Image.Image, texts) -> None:
        width, height = output.size
        draw = ImageDraw.Draw(output, "RGBA")
        for text_box in texts:
            x, y, w, h = box_to_rect(text_box, width, height)
            if w > 0 and h > 0:
                draw.rectangle((x, y, x + w - 1, y + h - 1), fill=TEXT_FILL)
            self._outline(draw, (x, y, w, h), TEXT_COLOR)

    @staticmethod
    def _outline(draw: ImageDraw.ImageDraw, rect: Tuple[int, int, int, int], color) -> None:
        x, y, w, h = rect
        if w <= 0 or h <= 0:
            return
        draw.rectangle((x, y, x + w - 1, y + h - 1), outline=color, width=BOX_LINE_WIDTH)
