# =============================================================================
# Trifecta Overlay - Backend Result Normalization
# =============================================================================
# Backends answer with differing shapes: boxes may live under "faces",
# "boxes" or "detections", may be {x,y,w,h}, corner pairs or bbox lists, and
# may be in pixels or unit coordinates.  Masks may come back as raw bytes
# (tagged by the HTTP client) or as JSON.  This module resolves each raw
# result once, through small ranked adapter tables, into the canonical
# NormalizedBox / SegMask shapes.
# =============================================================================

import logging
from typing import Any, List, Optional, Sequence, Tuple

from shared.schemas import NormalizedBox, SegMask

logger = logging.getLogger(__name__)

# Ranked list-field names per capability; first present key wins.
FACE_KEYS: Tuple[str, ...] = ("faces", "boxes", "detections")
TEXT_KEYS: Tuple[str, ...] = ("texts", "boxes", "detections")
SEG_KEYS: Tuple[str, ...] = ("seg", "mask")

# Ranked box layouts: (keys, is_corner_form)
_BOX_LAYOUTS: Tuple[Tuple[Tuple[str, str, str, str], bool], ...] = (
    (("x", "y", "w", "h"), False),
    (("x", "y", "width", "height"), False),
    (("left", "top", "width", "height"), False),
    (("x1", "y1", "x2", "y2"), True),
    (("xmin", "ymin", "xmax", "ymax"), True),
)
# List-valued keys; "bbox" follows the [x1, y1, x2, y2] convention.
_BOX_LIST_KEYS: Tuple[Tuple[str, bool], ...] = (
    ("bbox", True),
    ("box", True),
    ("xywh", False),
)

MASK_FORMAT = "packbits"


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def _as_numbers(values: Sequence[Any]) -> Optional[Tuple[float, float, float, float]]:
    if len(values) != 4:
        return None
    try:
        a, b, c, d = (float(v) for v in values)
    except (TypeError, ValueError):
        return None
    return a, b, c, d


def _extract_box(item: Any) -> Optional[Tuple[Tuple[float, float, float, float], bool]]:
    if isinstance(item, (list, tuple)):
        numbers = _as_numbers(item)
        return (numbers, False) if numbers else None

    if not isinstance(item, dict):
        return None

    for keys, corners in _BOX_LAYOUTS:
        if all(k in item for k in keys):
            numbers = _as_numbers([item[k] for k in keys])
            if numbers:
                return numbers, corners

    for key, corners in _BOX_LIST_KEYS:
        value = item.get(key)
        if isinstance(value, (list, tuple)):
            numbers = _as_numbers(value)
            if numbers:
                return numbers, corners

    return None


def normalize_box(item: Any, frame_width: int, frame_height: int) -> Optional[NormalizedBox]:
    """
    Coerce one backend box into unit coordinates.

    Any coordinate above 1.0 marks the box as pixel-space; it is then divided
    by the frame size.  The result is clamped to the unit square.

    Returns:
        NormalizedBox, or None if the item has no recognizable box layout.
    """
    extracted = _extract_box(item)
    if extracted is None:
        return None

    (a, b, c, d), corners = extracted
    if corners:
        x, y, w, h = a, b, c - a, d - b
    else:
        x, y, w, h = a, b, c, d

    if max(abs(a), abs(b), abs(c), abs(d)) > 1.0:
        fw = float(max(1, frame_width))
        fh = float(max(1, frame_height))
        x, w = x / fw, w / fw
        y, h = y / fh, h / fh

    x, y = _clamp(x), _clamp(y)
    w = min(max(0.0, w), 1.0 - x)
    h = min(max(0.0, h), 1.0 - y)
    return NormalizedBox(x=x, y=y, w=w, h=h)


def _first_list(result: Any, keys: Sequence[str]) -> List[Any]:
    if isinstance(result, list):
        return result
    if not isinstance(result, dict):
        return []
    for key in keys:
        value = result.get(key)
        if isinstance(value, list):
            return value
    return []


def normalize_boxes(
    result: Any,
    keys: Sequence[str],
    frame_width: int,
    frame_height: int,
) -> List[NormalizedBox]:
    """
    Resolve the box list of a raw result through the ranked ``keys`` table.

    Unrecognized entries are dropped.
    """
    boxes = []
    for item in _first_list(result, keys):
        box = normalize_box(item, frame_width, frame_height)
        if box is None:
            logger.debug("Dropping unrecognized box entry: %r", item)
            continue
        boxes.append(box)
    return boxes


def normalize_faces(result: Any, frame_width: int, frame_height: int) -> List[NormalizedBox]:
    return normalize_boxes(result, FACE_KEYS, frame_width, frame_height)


def normalize_texts(result: Any, frame_width: int, frame_height: int) -> List[NormalizedBox]:
    return normalize_boxes(result, TEXT_KEYS, frame_width, frame_height)


def normalize_seg(result: Any, default_is_background: bool = True) -> Optional[SegMask]:
    """
    Coerce a segmentation result into a SegMask descriptor.

    Binary mask replies (tagged ``kind == "mask"`` by the HTTP client) carry
    no polarity, so ``default_is_background`` is applied.  JSON replies may
    nest the descriptor under "seg" or "mask" and may set their own polarity.

    Returns:
        SegMask, or None when no packbits mask can be found.
    """
    if not isinstance(result, dict):
        return None

    if result.get("kind") == "mask":
        fmt = str(result.get("format") or "").lower()
        if fmt != MASK_FORMAT:
            logger.warning("Unsupported mask format from backend: %r", fmt)
            return None
        return SegMask(
            format=MASK_FORMAT,
            data_b64=result.get("data_b64", ""),
            is_background_mask=default_is_background,
        )

    node = result
    for key in SEG_KEYS:
        if isinstance(result.get(key), dict):
            node = result[key]
            break

    data = node.get("data_b64") or node.get("data")
    if not isinstance(data, str) or not data:
        return None

    fmt = str(node.get("format") or MASK_FORMAT).lower()
    if fmt != MASK_FORMAT:
        logger.warning("Unsupported mask format from backend: %r", fmt)
        return None

    polarity = node.get("is_background_mask", default_is_background)
    return SegMask(format=MASK_FORMAT, data_b64=data, is_background_mask=bool(polarity))
