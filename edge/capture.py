# =============================================================================
# Trifecta Overlay - Frame Sources
# =============================================================================
# Provides ScreenSource (mss) and CameraSource (OpenCV) behind one small
# interface: open(), read() -> PIL RGB image or None, close().  The render
# loop pulls the newest frame on every tick.
# =============================================================================

import logging
from typing import Optional

import cv2
import mss
from PIL import Image

logger = logging.getLogger(__name__)


class FrameSource:
    """Base class for pull-style frame sources."""

    def open(self) -> None:
        raise NotImplementedError

    def read(self) -> Optional[Image.Image]:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()


class ScreenSource(FrameSource):
    """
    Screen capture using the mss library.

    Args:
        monitor_index: Index of the monitor to capture (1 = primary).
    """

    def __init__(self, monitor_index: int = 1):
        self._monitor_index = monitor_index
        self._sct = None
        self._monitor = None

    def open(self) -> None:
        self._sct = mss.mss()
        # mss monitor list: index 0 = all monitors combined, 1+ = individual
        self._monitor = self._sct.monitors[self._monitor_index]
        logger.info(
            "Screen source opened: monitor %d (%dx%d)",
            self._monitor_index, self._monitor["width"], self._monitor["height"],
        )

    def read(self) -> Optional[Image.Image]:
        if self._sct is None:
            return None
        raw = self._sct.grab(self._monitor)
        # mss returns BGRA; convert to PIL Image then to RGB
        return Image.frombytes("RGB", raw.size, raw.bgra, "raw", "BGRX")

    def close(self) -> None:
        if self._sct is not None:
            self._sct.close()
            self._sct = None
            logger.info("Screen source closed.")


class CameraSource(FrameSource):
    """
    Camera capture using OpenCV.

    Args:
        device_index: OpenCV device index.
        width:        Requested capture width.
        height:       Requested capture height.
    """

    def __init__(self, device_index: int = 0, width: int = 1280, height: int = 720):
        self._device_index = device_index
        self._width = width
        self._height = height
        self._cap = None

    def open(self) -> None:
        self._cap = cv2.VideoCapture(self._device_index)
        if not self._cap.isOpened():
            self._cap = None
            raise RuntimeError(f"Cannot open camera {self._device_index}")
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        logger.info("Camera source opened: device %d", self._device_index)

    def read(self) -> Optional[Image.Image]:
        if self._cap is None:
            return None
        ok, frame = self._cap.read()
        if not ok:
            logger.debug("Camera read failed")
            return None
        return Image.fromarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera source closed.")


def create_source(config) -> FrameSource:
    """Build the frame source named by ``config.capture_source``."""
    if config.capture_source == "screen":
        return ScreenSource(monitor_index=config.capture_monitor)
    if config.capture_source == "camera":
        return CameraSource(device_index=config.camera_index)
    raise ValueError(f"Unknown capture source: {config.capture_source!r}")
