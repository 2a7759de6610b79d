# =============================================================================
# Trifecta Overlay - Concurrency-Limited Inference Fan-Out
# =============================================================================
# Provides the InferenceFanout class: for one FrameMessage it calls the
# backend endpoints selected by the capability flags concurrently, each under
# the process-wide ConcurrencyLimiter, settles them independently, and merges
# the normalized results.  A failing endpoint only blanks its own capability.
# =============================================================================

import asyncio
import base64
import binascii
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from server.backend import BackendClient
from server.limiter import ConcurrencyLimiter
from server.mock import make_mock_inference
from server.normalize import normalize_faces, normalize_seg, normalize_texts
from shared.schemas import FrameMessage, NormalizedBox, SegMask

logger = logging.getLogger(__name__)

CAPABILITIES = ("seg", "face", "text")


@dataclass
class InferenceResult:
    """
    Merged result of one fan-out.

    Attributes:
        faces:    Normalized face boxes.
        texts:    Normalized text boxes.
        seg:      Mask descriptor or None.
        failures: Capability -> error description for calls that failed.
    """

    faces: List[NormalizedBox] = field(default_factory=list)
    texts: List[NormalizedBox] = field(default_factory=list)
    seg: Optional[SegMask] = None
    failures: Dict[str, str] = field(default_factory=dict)


class InferenceFanout:
    """
    Dispatches frames to the inference backend.

    Args:
        client:               BackendClient for the real endpoints (unused in mock mode).
        limiter:              Shared ConcurrencyLimiter.
        use_mock:             Return synthetic metadata instead of calling out.
        seg_is_background:    Polarity assumed for binary mask replies.
    """

    def __init__(
        self,
        client: Optional[BackendClient],
        limiter: ConcurrencyLimiter,
        use_mock: bool = False,
        seg_is_background: bool = True,
    ):
        self._client = client
        self._limiter = limiter
        self._use_mock = use_mock
        self._seg_is_background = seg_is_background
        self._executor = ThreadPoolExecutor(
            max_workers=limiter.max_concurrent,
            thread_name_prefix="backend",
        )
        self.failure_counts: Dict[str, int] = {kind: 0 for kind in CAPABILITIES}

    @classmethod
    def from_config(cls, config) -> "InferenceFanout":
        """Build the fan-out (and its backend client) from a Config."""
        limiter = ConcurrencyLimiter(config.max_concurrent_calls)
        client = None
        if not config.use_mock:
            client = BackendClient(
                base_url=config.backend_base_url,
                endpoints={
                    "seg": config.endpoint_seg,
                    "face": config.endpoint_face,
                    "text": config.endpoint_text,
                },
                timeout_s=config.backend_timeout_ms / 1000.0,
                transport=config.backend_transport,
                pool_size=config.max_concurrent_calls,
            )
        return cls(
            client=client,
            limiter=limiter,
            use_mock=config.use_mock,
            seg_is_background=config.seg_is_background_mask,
        )

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    @property
    def use_mock(self) -> bool:
        return self._use_mock

    async def infer(self, frame: FrameMessage) -> InferenceResult:
        """
        Run the requested capabilities for one frame and merge the results.

        Never raises for backend failures; they are logged and reported in
        ``InferenceResult.failures``.

        Raises:
            ValueError: If the frame's image is not valid base64.
        """
        flags = frame.flags
        if self._use_mock:
            faces, texts, seg = make_mock_inference(
                flags, frame.width, frame.height,
                is_background_mask=self._seg_is_background,
            )
            return InferenceResult(faces=faces, texts=texts, seg=seg)

        try:
            image_bytes = base64.b64decode(frame.image, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid base64 image: {exc}") from exc

        kinds = [
            kind for kind, wanted in (
                ("seg", flags.run_seg),
                ("face", flags.run_face),
                ("text", flags.run_text),
            ) if wanted
        ]
        settled = await asyncio.gather(
            *(self._call(kind, image_bytes, frame.image_format) for kind in kinds),
            return_exceptions=True,
        )

        raw: Dict[str, object] = {}
        result = InferenceResult()
        for kind, outcome in zip(kinds, settled):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                self.failure_counts[kind] += 1
                result.failures[kind] = str(outcome) or type(outcome).__name__
                logger.warning("Backend %s failed for frame %d: %s", kind, frame.id, result.failures[kind])
                continue
            raw[kind] = outcome

        if flags.run_face:
            result.faces = normalize_faces(raw.get("face") or {}, frame.width, frame.height)
        if flags.run_text:
            result.texts = normalize_texts(raw.get("text") or {}, frame.width, frame.height)
        if flags.run_seg:
            result.seg = normalize_seg(raw.get("seg"), self._seg_is_background)
        return result

    async def _call(self, kind: str, image_bytes: bytes, image_format: str):
        loop = asyncio.get_running_loop()

        def _start():
            return loop.run_in_executor(
                self._executor, self._client.call, kind, image_bytes, image_format,
            )

        return await self._limiter.run(_start)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        if self._client is not None:
            self._client.close()
