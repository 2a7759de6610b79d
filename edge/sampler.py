# =============================================================================
# Trifecta Overlay - Frame Sampler & Backpressure Controller
# =============================================================================
# Called from the render loop on every tick.  Decides whether the current
# frame may be sent and, if so, compresses and transmits it off the render
# thread.  Sends are dropped, never queued, when:
#
#   - capture is stopped or the relay is not connected
#   - no capability is requested
#   - an encode/send is already running
#   - the last send is more recent than the sampling interval
#   - the in-flight set is at its ceiling
#
# Capture state:   Idle <-> Capturing
# Per-frame cycle: Ready -> Encoding -> Sent -> (Pending | TimedOutOrDropped)
# =============================================================================

import base64
import io
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol, Tuple

from PIL import Image

from shared.schemas import CapabilityFlags, FrameMessage, InferenceMessage

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the sampler needs from the relay connection."""

    @property
    def connected(self) -> bool: ...

    def send(self, text: str) -> None: ...


@dataclass
class SamplerSettings:
    """Sampling knobs, normally taken from Config."""

    sampling_ms: int = 150
    max_in_flight: int = 2
    request_timeout_ms: int = 5000
    image_format: str = "jpeg"
    jpeg_quality: float = 0.6
    max_width: int = 640
    max_height: int = 640

    @classmethod
    def from_config(cls, config) -> "SamplerSettings":
        return cls(
            sampling_ms=config.sampling_ms,
            max_in_flight=config.max_in_flight,
            request_timeout_ms=config.request_timeout_ms,
            image_format=config.image_format,
            jpeg_quality=config.jpeg_quality,
            max_width=config.max_width,
            max_height=config.max_height,
        )


@dataclass
class SamplerState:
    """
    All mutable sampler state, guarded by ``lock``.

    Attributes:
        capturing:     Idle (False) / Capturing (True).
        sending:       An encode/send job is running.
        next_id:       Last id handed out; ids only grow.
        last_send_at:  Monotonic seconds of the last send attempt.
        in_flight:     Outstanding request id -> monotonic send time.
        sent / received / dropped: Counters for display.
        last_latency_ms: Relay-reported latency of the latest response.
    """

    capturing: bool = False
    sending: bool = False
    next_id: int = 0
    last_send_at: float = float("-inf")
    in_flight: Dict[int, float] = field(default_factory=dict)
    sent: int = 0
    received: int = 0
    dropped: int = 0
    last_latency_ms: Optional[int] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass(frozen=True)
class SamplerStats:
    """Read-only counters for the status line."""

    in_flight: int
    sent: int
    received: int
    dropped: int
    last_latency_ms: Optional[int]


def fit_size(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Scale (width, height) down, never up, to fit inside the max box."""
    scale = min(1.0, max_width / float(width), max_height / float(height))
    return max(1, int(width * scale)), max(1, int(height * scale))


def encode_image(frame: Image.Image, settings: SamplerSettings) -> Tuple[bytes, int, int, str]:
    """
    Resize and compress a frame for transmission.

    Returns:
        (image_bytes, width, height, image_format)
    """
    fmt = (settings.image_format or "jpeg").lower()
    fmt = "png" if fmt == "png" else "jpeg"

    width, height = fit_size(frame.width, frame.height, settings.max_width, settings.max_height)
    if (width, height) != frame.size:
        frame = frame.resize((width, height), Image.BILINEAR)
    if frame.mode != "RGB":
        frame = frame.convert("RGB")

    buf = io.BytesIO()
    if fmt == "png":
        frame.save(buf, format="PNG")
    else:
        # Quality is configured as a 0-1 fraction (0.6 -> 60).
        quality = settings.jpeg_quality
        quality = int(round(quality * 100)) if quality <= 1.0 else int(quality)
        frame.save(buf, format="JPEG", quality=max(1, min(95, quality)))
    return buf.getvalue(), width, height, fmt


class FrameSampler:
    """
    Rate- and backpressure-gated frame sender.

    Args:
        settings:  Sampling settings.
        transport: Relay connection (``connected`` + ``send``).
        clock:     Monotonic clock in seconds (injectable for tests).
        dispatch:  Runs the encode/send job; defaults to a single worker
                   thread so the render loop never blocks on encoding.
    """

    def __init__(
        self,
        settings: SamplerSettings,
        transport: Transport,
        clock: Callable[[], float] = time.monotonic,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
    ):
        self._settings = settings
        self._transport = transport
        self._clock = clock
        self._state = SamplerState()
        self._executor = None
        if dispatch is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sampler")
            dispatch = self._executor.submit
        self._dispatch = dispatch

    @property
    def settings(self) -> SamplerSettings:
        return self._settings

    @property
    def capturing(self) -> bool:
        return self._state.capturing

    def start(self) -> None:
        """Idle -> Capturing."""
        with self._state.lock:
            self._state.capturing = True
        logger.info("Sampler capturing")

    def stop(self) -> None:
        """Capturing -> Idle. Outstanding responses are still accepted."""
        with self._state.lock:
            self._state.capturing = False
        logger.info("Sampler idle")

    def in_flight_ids(self):
        with self._state.lock:
            return set(self._state.in_flight)

    def stats(self) -> SamplerStats:
        with self._state.lock:
            s = self._state
            return SamplerStats(len(s.in_flight), s.sent, s.received, s.dropped, s.last_latency_ms)

    # -----------------------------------------------------------------
    # Send path
    # -----------------------------------------------------------------

    def maybe_send(self, frame: Optional[Image.Image], flags: CapabilityFlags) -> bool:
        """
        Evaluate the send gate for this tick; start a send if it passes.

        Returns:
            True if an encode/send job was started, False if the tick was
            skipped.
        """
        if frame is None or not flags.any():
            return False
        if not self._transport.connected:
            return False

        now = self._clock()
        with self._state.lock:
            s = self._state
            if not s.capturing or s.sending:
                return False
            if now - s.last_send_at < self._settings.sampling_ms / 1000.0:
                return False
            self._expire_locked(now)
            if len(s.in_flight) >= self._settings.max_in_flight:
                logger.debug("Send skipped: %d request(s) in flight", len(s.in_flight))
                return False
            s.sending = True
            s.last_send_at = now

        flags = flags.model_copy()
        try:
            self._dispatch(lambda: self._encode_and_send(frame, flags))
        except RuntimeError:
            # Executor already shut down.
            with self._state.lock:
                self._state.sending = False
            return False
        return True

    def _encode_and_send(self, frame: Image.Image, flags: CapabilityFlags) -> None:
        request_id = None
        try:
            image_bytes, width, height, fmt = encode_image(frame, self._settings)

            with self._state.lock:
                self._state.next_id += 1
                request_id = self._state.next_id
                self._state.in_flight[request_id] = self._clock()

            message = FrameMessage(
                id=request_id,
                ts=int(time.time() * 1000),
                width=width,
                height=height,
                flags=flags,
                image_format=fmt,
                image=base64.b64encode(image_bytes).decode("ascii"),
            )
            self._transport.send(message.model_dump_json())

            with self._state.lock:
                self._state.sent += 1
            logger.debug("Sent frame %d (%dx%d, %d KB)", request_id, width, height, len(image_bytes) // 1024)
        except Exception:
            logger.warning("Frame send failed", exc_info=True)
            if request_id is not None:
                with self._state.lock:
                    self._state.in_flight.pop(request_id, None)
        finally:
            with self._state.lock:
                self._state.sending = False

    # -----------------------------------------------------------------
    # Response / connection events
    # -----------------------------------------------------------------

    def on_response(self, message: InferenceMessage) -> bool:
        """
        Retire a request id. Unknown ids are ignored.

        Returns:
            True if the id was in flight.
        """
        with self._state.lock:
            known = self._state.in_flight.pop(message.id, None) is not None
            self._state.received += 1
            self._state.last_latency_ms = message.latency_ms
        if not known:
            logger.debug("Response for unknown or expired id %d", message.id)
        return known

    def on_disconnect(self) -> None:
        """Abandon every outstanding request."""
        with self._state.lock:
            abandoned = len(self._state.in_flight)
            self._state.in_flight.clear()
            self._state.dropped += abandoned
        if abandoned:
            logger.info("Connection lost: abandoned %d in-flight request(s)", abandoned)

    def expire_stale(self) -> int:
        """Drop requests older than request_timeout_ms. Returns how many."""
        with self._state.lock:
            return self._expire_locked(self._clock())

    def _expire_locked(self, now: float) -> int:
        timeout = self._settings.request_timeout_ms / 1000.0
        if timeout <= 0:
            return 0
        stale = [rid for rid, sent_at in self._state.in_flight.items() if now - sent_at >= timeout]
        for rid in stale:
            del self._state.in_flight[rid]
        self._state.dropped += len(stale)
        if stale:
            logger.debug("Expired %d unanswered request(s): %s", len(stale), stale)
        return len(stale)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
