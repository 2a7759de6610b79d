# =============================================================================
# Trifecta Overlay - Inference Backend HTTP Client
# =============================================================================
# Provides the BackendClient class that POSTs one compressed frame to one
# inference endpoint (face / text / segmentation) and classifies the reply:
#
#   X-Mask-Format header  -> {"kind": "mask", "format": ..., "data_b64": ...}
#   application/json      -> parsed JSON object
#   anything else         -> {"kind": "bytes", "content_type": ..., "data_b64": ...}
#
# Calls are blocking (requests) and are meant to run in a worker thread.  Each
# call owns a CancelToken driven by a timer; when it fires the streaming
# response is closed so the upstream connection is actually released.
# =============================================================================

import base64
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Tuple

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)

MASK_FORMAT_HEADER = "X-Mask-Format"

TRANSPORT_RAW = "raw"
TRANSPORT_JSON = "json"

_CHUNK_SIZE = 16 * 1024


class BackendError(RuntimeError):
    """A backend call failed (non-2xx status or unusable response)."""


class BackendTimeout(BackendError):
    """A backend call exceeded its deadline and was aborted."""


class CancelToken:
    """
    Cancellation flag tied to a timer.

    Callbacks registered with :meth:`on_cancel` run once, on the timer thread
    (or immediately if the token is already cancelled).

    Args:
        timeout_s: Seconds until the token cancels itself.
    """

    def __init__(self, timeout_s: float):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._timer = threading.Timer(timeout_s, self.cancel)
        self._timer.daemon = True

    def start(self) -> "CancelToken":
        self._timer.start()
        return self

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.debug("Cancel callback failed", exc_info=True)

    def dispose(self) -> None:
        """Stop the timer; call when the guarded operation has finished."""
        self._timer.cancel()


def mime_type(image_format: str) -> str:
    return "image/png" if (image_format or "jpeg").lower() == "png" else "image/jpeg"


def build_payload(
    image_bytes: bytes,
    image_format: str,
    transport: str = TRANSPORT_RAW,
) -> Tuple[bytes, Dict[str, str]]:
    """
    Build the request body and headers for a backend call.

    Args:
        image_bytes:  Compressed JPEG/PNG bytes.
        image_format: "jpeg" or "png".
        transport:    "raw" sends the bytes as the body; "json" wraps them in
                      ``{"image": "data:<mime>;base64,<...>"}``.

    Returns:
        (body, headers)
    """
    mime = mime_type(image_format)
    if transport == TRANSPORT_JSON:
        data_url = f"data:{mime};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        body = json.dumps({"image": data_url}).encode("utf-8")
        return body, {"Content-Type": "application/json"}
    if transport != TRANSPORT_RAW:
        raise ValueError(f"Unknown backend transport: {transport!r}")
    return image_bytes, {"Content-Type": mime}


class BackendClient:
    """
    HTTP client for the remote inference endpoints.

    Args:
        base_url:     Base URL of the inference backend.
        endpoints:    Capability name ("face", "seg", "text") -> URL path.
        timeout_s:    Per-call deadline in seconds.
        transport:    Request body convention, "raw" or "json".
        pool_size:    Connection pool size (match the concurrency cap).
    """

    def __init__(
        self,
        base_url: str,
        endpoints: Dict[str, str],
        timeout_s: float = 1.5,
        transport: str = TRANSPORT_RAW,
        pool_size: int = 6,
    ):
        self._base_url = base_url.rstrip("/")
        self._endpoints = dict(endpoints)
        self._timeout_s = timeout_s
        self._transport = transport
        self._session = requests.Session()
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=max(1, pool_size))
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    def url_for(self, kind: str) -> str:
        return f"{self._base_url}{self._endpoints[kind]}"

    def call(self, kind: str, image_bytes: bytes, image_format: str) -> Dict[str, Any]:
        """
        POST one frame to the endpoint for ``kind`` and classify the reply.

        Blocks for at most roughly ``timeout_s``.

        Raises:
            BackendTimeout: The deadline passed before the body was read.
            BackendError:   Non-2xx status or undecodable JSON.
            requests.exceptions.RequestException: Transport failure.
        """
        url = self.url_for(kind)
        body, headers = build_payload(image_bytes, image_format, self._transport)
        token = CancelToken(self._timeout_s).start()
        started = time.monotonic()

        try:
            try:
                response = self._session.post(
                    url,
                    data=body,
                    headers=headers,
                    timeout=(self._timeout_s, self._timeout_s),
                    stream=True,
                )
            except requests.exceptions.Timeout as exc:
                raise BackendTimeout(f"{kind} timed out after {self._timeout_s:.2f}s") from exc

            with response:
                token.on_cancel(response.close)
                if token.cancelled:
                    raise BackendTimeout(f"{kind} timed out after {self._timeout_s:.2f}s")
                if not response.ok:
                    raise BackendError(f"{kind} request failed: {url} {response.status_code}")
                content = self._read_body(response, token, kind)
                result = self._classify(response, content, kind)
        except requests.exceptions.RequestException as exc:
            if token.cancelled:
                raise BackendTimeout(f"{kind} aborted after {self._timeout_s:.2f}s") from exc
            raise
        finally:
            token.dispose()

        logger.debug(
            "Backend %s answered in %.1fms (%d bytes)",
            kind, (time.monotonic() - started) * 1000.0, len(content),
        )
        return result

    def _read_body(self, response: requests.Response, token: CancelToken, kind: str) -> bytes:
        chunks = []
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            if token.cancelled:
                raise BackendTimeout(f"{kind} timed out while reading body")
            chunks.append(chunk)
        if token.cancelled:
            raise BackendTimeout(f"{kind} timed out while reading body")
        return b"".join(chunks)

    @staticmethod
    def _classify(response: requests.Response, content: bytes, kind: str) -> Dict[str, Any]:
        mask_format = response.headers.get(MASK_FORMAT_HEADER)
        content_type = (response.headers.get("Content-Type") or "").lower()

        if mask_format:
            return {
                "kind": "mask",
                "format": str(mask_format).lower(),
                "data_b64": base64.b64encode(content).decode("ascii"),
            }

        if "application/json" in content_type:
            try:
                return json.loads(content.decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as exc:
                raise BackendError(f"{kind} returned invalid JSON: {exc}") from exc

        return {
            "kind": "bytes",
            "content_type": content_type,
            "data_b64": base64.b64encode(content).decode("ascii"),
        }

    def close(self) -> None:
        self._session.close()
