# =============================================================================
# Trifecta Overlay - Packbits Mask Codec
# =============================================================================
# Row-packed 1-bit-per-pixel segmentation masks (not RLE). Layout:
#
#   u16 height | u16 width | u16 row_stride_bytes    (big-endian header)
#   height * row_stride_bytes packed bytes            (MSB = leftmost pixel)
#
# Backends disagree on polarity, so the bit meaning is carried separately as
# ``is_background_mask``; decoded alpha is always 255 = foreground.
# =============================================================================

import base64
import logging
import struct
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

_HEADER = struct.Struct(">HHH")
HEADER_SIZE = _HEADER.size
_MAX_DIM = 0xFFFF
# Upper bound on height * width accepted by the decoder.
MAX_PIXELS = 4096 * 4096


class MaskFormatError(ValueError):
    """Raised when a packed mask buffer cannot be interpreted."""


@dataclass(frozen=True)
class PackedMask:
    """
    Parsed packbits mask: header fields plus the (possibly short) bit region.

    Attributes:
        height:      Rows in the mask.
        width:       Pixels per row.
        row_stride:  Bytes per packed row (normally ceil(width / 8)).
        packed_bits: Bytes following the header, not padded or truncated.
    """

    height: int
    width: int
    row_stride: int
    packed_bits: bytes


def row_stride_for(width: int) -> int:
    """Bytes needed to hold ``width`` bits."""
    return (width + 7) // 8


def encode(mask: np.ndarray, is_background_mask: bool = False) -> bytes:
    """
    Pack a 2-D foreground mask into the binary mask format.

    Args:
        mask:               2-D array; truthy = foreground.
        is_background_mask: Store bit 1 for background instead of foreground.

    Returns:
        bytes: Header followed by height * ceil(width / 8) packed bytes.

    Raises:
        MaskFormatError: If the mask is not 2-D, is empty, or a dimension
                         does not fit in 16 bits.
    """
    mask = np.asarray(mask, dtype=bool)
    if mask.ndim != 2:
        raise MaskFormatError(f"mask must be 2-D, got shape {mask.shape}")

    height, width = mask.shape
    if height == 0 or width == 0:
        raise MaskFormatError("mask has a zero dimension")
    if height > _MAX_DIM or width > _MAX_DIM:
        raise MaskFormatError(f"mask {width}x{height} exceeds 16-bit header")

    bits = ~mask if is_background_mask else mask
    # np.packbits pads each row to a whole byte, MSB first
    packed = np.packbits(bits, axis=1, bitorder="big")
    stride = packed.shape[1]

    return _HEADER.pack(height, width, stride) + packed.tobytes()


def decode(data: bytes) -> PackedMask:
    """
    Parse the header of a packed mask buffer.

    The bit region is returned as-is; a short region is tolerated here and
    clipped when expanded by :func:`to_alpha`.

    Raises:
        MaskFormatError: If the header is incomplete, any dimension is 0, or
                         the mask is larger than MAX_PIXELS.
    """
    if data is None or len(data) < HEADER_SIZE:
        raise MaskFormatError("buffer shorter than mask header")

    height, width, row_stride = _HEADER.unpack_from(data, 0)
    if height == 0 or width == 0 or row_stride == 0:
        raise MaskFormatError(
            f"zero dimension in mask header (h={height}, w={width}, stride={row_stride})"
        )
    if height * width > MAX_PIXELS:
        raise MaskFormatError(f"mask {width}x{height} exceeds {MAX_PIXELS} pixels")

    return PackedMask(
        height=height,
        width=width,
        row_stride=row_stride,
        packed_bits=bytes(data[HEADER_SIZE:]),
    )


def to_alpha(packed: PackedMask, is_background_mask: bool = False) -> np.ndarray:
    """
    Expand a packed mask into a one-byte-per-pixel alpha array.

    Pixel ``x`` of row ``y`` lives in bit ``7 - x % 8`` of byte
    ``y * row_stride + x // 8``. Bytes beyond the end of the buffer, or
    beyond the row stride, are missing: the row stops there and the
    remaining pixels are background whatever the polarity.  Only rows that
    have bytes are unpacked, so a short buffer costs no more than its size.

    Args:
        packed:             Parsed mask from :func:`decode`.
        is_background_mask: Bit 1 means background (inverted before use).

    Returns:
        np.ndarray: uint8 array of shape (height, width), 255 = foreground.
    """
    height, width, stride = packed.height, packed.width, packed.row_stride
    region = np.frombuffer(packed.packed_bits, dtype=np.uint8)

    alpha = np.zeros((height, width), dtype=np.uint8)
    available = min(region.size, height * stride)
    present = -(-available // stride)
    if present == 0:
        return alpha

    rows = np.zeros(present * stride, dtype=np.uint8)
    rows[:available] = region[:available]
    valid_bytes = np.zeros(present * stride, dtype=bool)
    valid_bytes[:available] = True

    span = min(width, stride * 8)
    used = row_stride_for(span)
    rows = rows.reshape(present, stride)[:, :used]
    valid_bytes = valid_bytes.reshape(present, stride)[:, :used]

    fg = np.unpackbits(rows, axis=1, bitorder="big")[:, :span].astype(bool)
    ok = np.repeat(valid_bytes, 8, axis=1)[:, :span]
    if is_background_mask:
        fg = ~fg

    alpha[:present, :span] = np.where(fg & ok, 255, 0)
    return alpha


def decode_alpha(data: bytes, is_background_mask: bool = False) -> Optional[np.ndarray]:
    """
    Decode a packed mask straight to alpha, or None for malformed input.

    Returns:
        np.ndarray or None: uint8 (height, width) alpha, 255 = foreground.
    """
    try:
        packed = decode(data)
    except MaskFormatError as exc:
        logger.debug("Rejected mask buffer: %s", exc)
        return None
    return to_alpha(packed, is_background_mask)


def decode_b64(data_b64: str) -> bytes:
    """
    Strip the base64 framing of a ``seg`` field down to the mask buffer.

    Raises:
        MaskFormatError: If the text is not valid base64.
    """
    try:
        return base64.b64decode(data_b64, validate=True)
    except (ValueError, TypeError) as exc:
        raise MaskFormatError(f"invalid base64 mask data: {exc}") from exc
