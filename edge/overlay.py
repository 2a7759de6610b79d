# =============================================================================
# Trifecta Overlay - Latest Inference State
# =============================================================================
# The render loop runs at display rate; inference answers arrive a few times
# per second, possibly out of order.  OverlayState is the hand-off between the
# two: the network thread applies responses, the render thread takes cheap
# snapshots.  Each field only moves forward: a response older than the one
# currently shown never replaces it.
# =============================================================================

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from PIL import Image, ImageFilter

from shared import maskcodec
from shared.schemas import InferenceMessage, NormalizedBox, SegMask

logger = logging.getLogger(__name__)


class MaskSurface:
    """
    Decoded, feathered alpha stencil for one mask (255 = foreground).

    Built once per accepted mask and then reused on every render tick.

    Args:
        alpha:       "L" image at mask resolution.
        response_id: Id of the response the mask came from.
    """

    def __init__(self, alpha: Image.Image, response_id: int):
        self.alpha = alpha
        self.response_id = response_id
        self._scaled: Optional[Tuple[Tuple[int, int], Image.Image]] = None

    @classmethod
    def build(cls, seg: SegMask, response_id: int, feather_radius: float = 4.0) -> Optional["MaskSurface"]:
        """
        Decode and feather a wire mask.

        Returns:
            MaskSurface, or None if the mask is malformed.
        """
        try:
            raw = maskcodec.decode_b64(seg.data_b64)
        except maskcodec.MaskFormatError as exc:
            logger.warning("Ignoring bad mask in response %d: %s", response_id, exc)
            return None

        alpha_array = maskcodec.decode_alpha(raw, seg.is_background_mask)
        if alpha_array is None:
            logger.warning("Ignoring bad mask in response %d: unreadable header", response_id)
            return None

        alpha = Image.fromarray(alpha_array)
        if feather_radius > 0:
            alpha = alpha.filter(ImageFilter.GaussianBlur(feather_radius))
        logger.debug("Mask surface built from response %d (%dx%d)", response_id, alpha.width, alpha.height)
        return cls(alpha, response_id)

    def scaled_to(self, size: Tuple[int, int]) -> Image.Image:
        """Alpha resized to ``size``; the last size is cached."""
        if self.alpha.size == size:
            return self.alpha
        if self._scaled is None or self._scaled[0] != size:
            self._scaled = (size, self.alpha.resize(size, Image.BILINEAR))
        return self._scaled[1]


@dataclass(frozen=True)
class OverlaySnapshot:
    """Immutable view handed to the renderer each tick."""

    faces: Tuple[NormalizedBox, ...] = ()
    texts: Tuple[NormalizedBox, ...] = ()
    mask: Optional[MaskSurface] = None


class OverlayState:
    """
    Thread-safe store of the latest applied inference result.

    Args:
        feather_radius: Edge feather applied to every decoded mask.
    """

    def __init__(self, feather_radius: float = 4.0):
        self._feather = feather_radius
        self._lock = threading.Lock()
        self._faces: List[NormalizedBox] = []
        self._texts: List[NormalizedBox] = []
        self._faces_id = -1
        self._texts_id = -1
        self._mask: Optional[MaskSurface] = None

    @property
    def mask_id(self) -> int:
        with self._lock:
            return self._mask.response_id if self._mask is not None else -1

    def apply(self, message: InferenceMessage) -> None:
        """
        Merge a response; fields from older responses are ignored.

        A null ``seg`` keeps the current mask.  Decoding happens outside the
        lock so the render thread never waits on it.
        """
        with self._lock:
            if message.id > self._faces_id:
                self._faces = list(message.faces)
                self._faces_id = message.id
            if message.id > self._texts_id:
                self._texts = list(message.texts)
                self._texts_id = message.id

        if message.seg is None or message.id <= self.mask_id:
            return

        surface = MaskSurface.build(message.seg, message.id, self._feather)
        if surface is None:
            return
        with self._lock:
            if self._mask is None or surface.response_id > self._mask.response_id:
                self._mask = surface

    def snapshot(self) -> OverlaySnapshot:
        with self._lock:
            return OverlaySnapshot(
                faces=tuple(self._faces),
                texts=tuple(self._texts),
                mask=self._mask,
            )

    def reset(self) -> None:
        """Forget all annotations."""
        with self._lock:
            self._faces, self._texts = [], []
            self._mask = None
