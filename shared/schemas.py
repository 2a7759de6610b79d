# =============================================================================
# Trifecta Overlay - Shared Wire Schemas
# =============================================================================
# Pydantic models defining the messages exchanged between the edge client and
# the inference relay over a single WebSocket.  Every message carries a
# ``type`` tag:
#
#   client -> relay : "frame"
#   relay  -> client: "hello", "inference", "error"
#
# Requests and responses are correlated solely by ``id``; responses may
# arrive in any order.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional

# Largest frame side the relay accepts.
MAX_FRAME_DIM = 8192


class CapabilityFlags(BaseModel):
    """
    Which inference capabilities the client wants for a frame.

    Attributes:
        run_face: Request face boxes.
        run_seg:  Request a foreground/background segmentation mask.
        run_text: Request text boxes.
    """

    run_face: bool = False
    run_seg: bool = False
    run_text: bool = False

    def any(self) -> bool:
        """True if at least one capability is requested."""
        return self.run_face or self.run_seg or self.run_text


class FrameMessage(BaseModel):
    """
    A compressed video frame sent from the edge client to the relay.

    Attributes:
        id:           Monotonic per-connection request id.
        ts:           Client wall-clock time at send, epoch milliseconds.
        width:        Width of the encoded image in pixels.
        height:       Height of the encoded image in pixels.
        flags:        Requested capabilities.
        image_format: "jpeg" or "png".
        image:        Base64-encoded compressed image bytes.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["frame"] = "frame"
    id: int = Field(..., ge=0, description="Monotonic request id")
    ts: int = Field(default=0, ge=0, description="Epoch milliseconds at send")
    width: int = Field(..., ge=1, le=MAX_FRAME_DIM)
    height: int = Field(..., ge=1, le=MAX_FRAME_DIM)
    flags: CapabilityFlags = Field(default_factory=CapabilityFlags)
    image_format: Literal["jpeg", "png"] = "jpeg"
    image: str = Field(..., description="Base64-encoded JPEG/PNG bytes")


class NormalizedBox(BaseModel):
    """Axis-aligned box in unit coordinates relative to the frame size."""

    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    w: float = Field(..., ge=0.0, le=1.0)
    h: float = Field(..., ge=0.0, le=1.0)


class SegMask(BaseModel):
    """
    Segmentation mask descriptor as carried on the wire.

    Attributes:
        format:             Mask encoding, always "packbits".
        data_b64:           Base64 of header + packed bits (see shared.maskcodec).
        is_background_mask: True when bit 1 marks background pixels.
    """

    format: Literal["packbits"] = "packbits"
    data_b64: str
    is_background_mask: bool = False


class HelloMessage(BaseModel):
    """Liveness greeting sent once when a connection is accepted."""

    type: Literal["hello"] = "hello"
    message: str = "ml-ready"


class ErrorMessage(BaseModel):
    """Human-readable rejection of a malformed incoming message."""

    type: Literal["error"] = "error"
    message: str


class InferenceMessage(BaseModel):
    """
    Merged, normalized inference result for one frame.

    Attributes:
        id:         Id of the FrameMessage this answers.
        ts:         The request's ``ts``, echoed back.
        latency_ms: Relay-side time from receipt to send (``latencyMs`` on the wire).
        faces:      Face boxes (empty when not requested or failed).
        texts:      Text boxes (empty when not requested or failed).
        seg:        Mask descriptor or None.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["inference"] = "inference"
    id: int
    ts: int = 0
    latency_ms: int = Field(default=0, ge=0, alias="latencyMs")
    faces: List[NormalizedBox] = Field(default_factory=list)
    texts: List[NormalizedBox] = Field(default_factory=list)
    seg: Optional[SegMask] = None

    def to_wire(self) -> str:
        """Serialize with wire field names (``latencyMs``)."""
        return self.model_dump_json(by_alias=True)
