# =============================================================================
# Trifecta Overlay - Relay Client
# =============================================================================
# Provides the RelayClient class: HTTP helpers for the relay's /health and
# /config.json (requests), and the WebSocket session that carries frames out
# and annotations back (websockets, sync API).  A daemon thread receives
# messages, routes them through a dispatch table keyed by message type, and
# reconnects with exponential backoff when the connection drops.
# =============================================================================

import logging
import threading
import time
from typing import Callable, Dict, Optional

import requests
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect

from shared.protocol import ProtocolError, parse_server_message
from shared.schemas import ErrorMessage, HelloMessage, InferenceMessage

logger = logging.getLogger(__name__)

_MAX_BACKOFF_S = 10.0


class RelayClient:
    """
    Connection to the inference relay.

    Args:
        server_url:    HTTP base URL of the relay (e.g., "http://127.0.0.1:3000").
        ws_url:        WebSocket URL (e.g., "ws://127.0.0.1:3000/ws").
        on_inference:  Called with each InferenceMessage (network thread).
        on_disconnect: Called once per lost connection (network thread).
    """

    def __init__(
        self,
        server_url: str,
        ws_url: str,
        on_inference: Callable[[InferenceMessage], None],
        on_disconnect: Optional[Callable[[], None]] = None,
    ):
        self._server_url = server_url.rstrip("/")
        self._ws_url = ws_url
        self._on_inference = on_inference
        self._on_disconnect = on_disconnect
        self._session = requests.Session()
        self._ws = None
        self._ws_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.status = "Disconnected"
        self._handlers: Dict[str, Callable] = {
            "hello": self._handle_hello,
            "inference": self._handle_inference,
            "error": self._handle_error,
        }

    # -----------------------------------------------------------------
    # HTTP helpers
    # -----------------------------------------------------------------

    def wait_for_server(self, timeout: int = 60, poll_interval: float = 2.0) -> bool:
        """
        Block until the relay's /health endpoint answers with status "ok".

        Args:
            timeout:       Maximum seconds to wait for the relay.
            poll_interval: Seconds between health check polls.

        Returns:
            True if the relay is ready, False if timeout expired.
        """
        url = f"{self._server_url}/health"
        start = time.time()

        logger.info("Waiting for relay at %s (timeout=%ds)...", url, timeout)

        while (time.time() - start) < timeout:
            try:
                response = self._session.get(url, timeout=5)
                if response.status_code == 200 and response.json().get("status") == "ok":
                    logger.info("Relay is ready.")
                    return True
                logger.info("Relay responded but is not ready yet...")
            except requests.exceptions.ConnectionError:
                logger.debug("Relay not reachable yet...")
            except (requests.exceptions.RequestException, ValueError):
                logger.debug("Health check error", exc_info=True)

            time.sleep(poll_interval)

        logger.error("Timed out waiting for relay after %ds.", timeout)
        return False

    def fetch_client_config(self) -> Dict:
        """
        Fetch the relay's /config.json; an empty dict if unavailable.
        """
        try:
            response = self._session.get(f"{self._server_url}/config.json", timeout=5)
            response.raise_for_status()
            data = response.json()
            return data if isinstance(data, dict) else {}
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning("Could not load client config from relay: %s", exc)
            return {}

    # -----------------------------------------------------------------
    # WebSocket session
    # -----------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def send(self, text: str) -> None:
        """
        Send one text message.

        Raises:
            ConnectionError: If not connected or the socket just closed.
        """
        with self._ws_lock:
            ws = self._ws
            if ws is None:
                raise ConnectionError("relay not connected")
            try:
                ws.send(text)
            except ConnectionClosed as exc:
                raise ConnectionError(f"relay connection closed: {exc}") from exc

    def start(self) -> None:
        """Start the connect/receive loop in a background daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Relay client is already running.")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="relay-client", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Close the socket and wait for the receive thread to finish."""
        self._stop_event.set()
        ws = self._ws
        if ws is not None:
            ws.close()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._session.close()

    def _run(self) -> None:
        attempt = 0
        while not self._stop_event.is_set():
            try:
                ws = connect(self._ws_url, open_timeout=5, max_size=None)
            except (OSError, TimeoutError, WebSocketException) as exc:
                self.status = "Disconnected"
                wait_time = min(_MAX_BACKOFF_S, 2 ** attempt)
                attempt += 1
                logger.warning("Connect to %s failed: %s - retrying in %.0fs", self._ws_url, exc, wait_time)
                self._stop_event.wait(timeout=wait_time)
                continue

            attempt = 0
            with self._ws_lock:
                self._ws = ws
            self.status = "Connected to ML"
            logger.info("Connected to relay %s", self._ws_url)

            try:
                for text in ws:
                    try:
                        self.handle_message(text)
                    except Exception:
                        logger.exception("Error handling relay message")
            except ConnectionClosed as exc:
                logger.warning("Relay connection lost: %s", exc)
            finally:
                with self._ws_lock:
                    self._ws = None
                self.status = "Disconnected"
                ws.close()
                if self._on_disconnect is not None:
                    self._on_disconnect()

        logger.info("Relay client stopped.")

    def handle_message(self, text) -> None:
        """Parse one incoming message and route it by type."""
        try:
            message = parse_server_message(text)
        except ProtocolError as exc:
            logger.warning("Dropping relay message: %s", exc.reason)
            return
        self._handlers[message.type](message)

    def _handle_hello(self, message: HelloMessage) -> None:
        logger.info("Relay says hello: %s", message.message)

    def _handle_inference(self, message: InferenceMessage) -> None:
        try:
            self._on_inference(message)
        except Exception:
            logger.exception("Error handling inference %d", message.id)

    def _handle_error(self, message: ErrorMessage) -> None:
        logger.warning("Relay reported error: %s", message.message)
