# =============================================================================
# Trifecta Overlay - Edge Client Orchestrator
# =============================================================================
# Entry point for the edge client process.  Ties together the frame source,
# the relay connection, the sampler and the compositing renderer:
#
#   render loop (main thread, display rate)
#     1. read the newest frame from the camera / screen
#     2. composite it with the latest inference snapshot and display it
#     3. offer the frame to the sampler (rate + in-flight gated, never blocks)
#
#   network thread
#     - inference responses retire in-flight ids and update the overlay
#     - a dropped connection abandons all in-flight requests
#
# Keys: s = start/stop capture, f / b / t = toggle face / background / text,
#       q or Esc = quit.
# =============================================================================

import argparse
import logging
import sys
import time

import cv2
import numpy as np
from PIL import Image

from config import get_config
from edge.capture import create_source
from edge.client import RelayClient
from edge.overlay import OverlayState
from edge.renderer import CompositingRenderer, RenderSettings
from edge.sampler import FrameSampler, SamplerSettings
from shared.schemas import CapabilityFlags, InferenceMessage

logger = logging.getLogger(__name__)

WINDOW_NAME = "Trifecta Overlay"


class EdgeApp:
    """
    Orchestrator for capture, sampling, rendering and display.

    Args:
        config: The global Config instance with all tunable parameters.
        flags:  Initially enabled capabilities.
    """

    def __init__(self, config, flags: CapabilityFlags):
        self._config = config
        self._flags = flags
        self._running = False

        self._overlay = OverlayState(feather_radius=config.mask_feather_radius)
        self._renderer = CompositingRenderer(RenderSettings.from_config(config))

        logger.info("Initializing relay client → %s", config.ws_url)
        self._client = RelayClient(
            server_url=config.server_url,
            ws_url=config.ws_url,
            on_inference=self._on_inference,
            on_disconnect=self._on_disconnect,
        )
        self._sampler = None
        self._source = create_source(config)

    # -----------------------------------------------------------------
    # Network callbacks (network thread)
    # -----------------------------------------------------------------

    def _on_inference(self, message: InferenceMessage) -> None:
        self._sampler.on_response(message)
        self._overlay.apply(message)

    def _on_disconnect(self) -> None:
        self._sampler.on_disconnect()

    # -----------------------------------------------------------------
    # Render loop (main thread)
    # -----------------------------------------------------------------

    def _display_size(self, frame: Image.Image):
        max_width = self._config.display_max_width
        scale = min(1.0, max_width / float(frame.width))
        return max(1, int(frame.width * scale)), max(1, int(frame.height * scale))

    def _status_line(self) -> str:
        stats = self._sampler.stats()
        latency = f"{stats.last_latency_ms}ms" if stats.last_latency_ms is not None else "-"
        on = [name for name, enabled in (
            ("face", self._flags.run_face),
            ("bg", self._flags.run_seg),
            ("text", self._flags.run_text),
        ) if enabled]
        state = "capturing" if self._sampler.capturing else "idle"
        return (
            f"{self._client.status} | {state} | sent {stats.sent} recv {stats.received} "
            f"| in-flight {stats.in_flight} | {latency} | {','.join(on) or 'none'}"
        )

    def _tick(self) -> None:
        frame = self._source.read() if self._sampler.capturing else None
        if frame is None:
            return

        display_size = self._display_size(frame)
        if display_size != frame.size:
            frame = frame.resize(display_size, Image.BILINEAR)

        output = self._renderer.render(frame, self._flags, self._overlay.snapshot())
        bgr = cv2.cvtColor(np.asarray(output), cv2.COLOR_RGB2BGR)
        cv2.putText(bgr, self._status_line(), (10, 24), cv2.FONT_HERSHEY_SIMPLEX, 0.55, (255, 255, 255), 1, cv2.LINE_AA)
        cv2.imshow(WINDOW_NAME, bgr)

        self._sampler.maybe_send(frame, self._flags)

    def _handle_key(self, key: int) -> None:
        if key in (ord("q"), 27):
            self._running = False
        elif key == ord("s"):
            self._toggle_capture()
        elif key == ord("f"):
            self._flags = self._flags.model_copy(update={"run_face": not self._flags.run_face})
        elif key == ord("b"):
            self._flags = self._flags.model_copy(update={"run_seg": not self._flags.run_seg})
        elif key == ord("t"):
            self._flags = self._flags.model_copy(update={"run_text": not self._flags.run_text})

    def _toggle_capture(self) -> None:
        if self._sampler.capturing:
            self._sampler.stop()
            self._source.close()
            self._overlay.reset()
            return
        try:
            self._source.open()
        except (RuntimeError, OSError) as exc:
            logger.error("Capture error: %s", exc)
            return
        self._sampler.start()

    def run(self) -> None:
        """
        Start the edge client.

        Waits for the relay, applies its client config, connects, and runs the
        render loop until the window is closed or 'q' is pressed.
        """
        print("\n" + "=" * 60)
        print("  Trifecta Overlay - Edge Client")
        print("=" * 60)
        print(f"  Source      : {self._config.capture_source}")
        print(f"  Relay       : {self._config.server_url}")
        print(f"  Display fps : {self._config.display_fps}")
        print("  Keys        : s=start/stop f=faces b=background t=text q=quit")
        print("=" * 60 + "\n")

        if not self._client.wait_for_server():
            logger.error("Relay not available. Exiting.")
            sys.exit(1)

        self._config.apply_client_config(self._client.fetch_client_config())
        settings = SamplerSettings.from_config(self._config)
        logger.info(
            "Sampling every %dms, max %d in flight, %s %dx%d",
            settings.sampling_ms, settings.max_in_flight, settings.image_format,
            settings.max_width, settings.max_height,
        )
        self._sampler = FrameSampler(settings, transport=self._client)
        self._client.start()

        cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_AUTOSIZE)
        self._toggle_capture()

        frame_period = 1.0 / max(1, self._config.display_fps)
        self._running = True
        try:
            while self._running:
                started = time.monotonic()
                try:
                    self._tick()
                except Exception:
                    logger.exception("Render tick failed")
                wait_ms = max(1, int((frame_period - (time.monotonic() - started)) * 1000))
                self._handle_key(cv2.waitKey(wait_ms) & 0xFF)
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received. Shutting down...")
        finally:
            self.stop()

    def stop(self) -> None:
        """Stop capture, the relay connection and the display."""
        if self._sampler is not None:
            self._sampler.stop()
            self._sampler.close()
        self._source.close()
        self._client.stop()
        cv2.destroyAllWindows()
        logger.info("Edge client stopped.")


def main():
    """CLI entry point for the edge client."""
    parser = argparse.ArgumentParser(
        description="Trifecta Overlay - Edge Client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--source", choices=("camera", "screen"), default=None,
        help="Frame source (overrides config)",
    )
    parser.add_argument("--camera", type=int, default=None, help="Camera device index")
    parser.add_argument("--monitor", type=int, default=None, help="Monitor index to capture (1 = primary)")
    parser.add_argument("--server-host", type=str, default=None, help="Relay host")
    parser.add_argument("--server-port", type=int, default=None, help="Relay port")
    parser.add_argument("--faces", action="store_true", help="Start with face blur on")
    parser.add_argument("--background", action="store_true", help="Start with background blur on")
    parser.add_argument("--text", action="store_true", help="Start with text boxes on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()
    if args.source is not None:
        config.capture_source = args.source
    if args.camera is not None:
        config.camera_index = args.camera
    if args.monitor is not None:
        config.capture_monitor = args.monitor
    if args.server_host is not None:
        config.server_host = args.server_host
    if args.server_port is not None:
        config.server_port = args.server_port
    config.refresh_urls()

    flags = CapabilityFlags(run_face=args.faces, run_seg=args.background, run_text=args.text)
    app = EdgeApp(config, flags)
    app.run()


if __name__ == "__main__":
    main()
