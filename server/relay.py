# =============================================================================
# Trifecta Overlay - WebSocket Relay Connection
# =============================================================================
# One RelayConnection per accepted WebSocket.  Incoming text is parsed and
# routed through a dispatch table keyed by message type; every ``frame``
# becomes its own task so several requests from one client can be in flight.
# Sends are serialized per connection.  When the socket closes, outstanding
# tasks are cancelled; nothing is retried.
# =============================================================================

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from server.fanout import InferenceFanout
from shared.protocol import (
    INVALID_MESSAGE,
    UNKNOWN_TYPE,
    ProtocolError,
    error_message,
    hello_message,
    parse_client_message,
)
from shared.schemas import FrameMessage, InferenceMessage

logger = logging.getLogger(__name__)


class RelayConnection:
    """
    Per-connection protocol handler.

    Args:
        websocket:  Accepted FastAPI WebSocket.
        fanout:     Shared InferenceFanout.
        jitter_ms:  (min, max) pacing delay added before each response;
                    (0, 0) disables it.
    """

    def __init__(self, websocket: WebSocket, fanout: InferenceFanout, jitter_ms=(0, 0)):
        self._ws = websocket
        self._fanout = fanout
        self._jitter_min, self._jitter_max = jitter_ms
        self._send_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._handlers: Dict[str, Callable[[FrameMessage, float], Awaitable[None]]] = {
            "frame": self._handle_frame,
        }

    async def serve(self) -> None:
        """Run the receive loop until the client disconnects."""
        await self._send(hello_message())
        try:
            while True:
                event = await self._ws.receive()
                if event["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(event.get("code", 1000))
                received_at = time.monotonic()
                text = event.get("text")
                if text is None:
                    # Binary frames are accepted if they hold UTF-8 JSON.
                    text = (event.get("bytes") or b"").decode("utf-8", errors="replace")
                self._dispatch(text, received_at)
        except WebSocketDisconnect as exc:
            logger.info("Client disconnected (code=%s)", exc.code)
        finally:
            await self._teardown()

    def _dispatch(self, text: str, received_at: float) -> None:
        try:
            message = parse_client_message(text)
        except ProtocolError as exc:
            if exc.reason == UNKNOWN_TYPE:
                logger.debug("Ignoring message of type %r", exc.msg_type)
                return
            logger.warning("Rejected client message: %s", exc.reason)
            self._spawn(self._send(error_message(exc.reason)))
            return

        handler = self._handlers[message.type]
        self._spawn(handler(message, received_at))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Connection task failed", exc_info=task.exception())

    async def _handle_frame(self, frame: FrameMessage, received_at: float) -> None:
        try:
            result = await self._fanout.infer(frame)
        except ValueError as exc:
            logger.warning("Frame %d rejected: %s", frame.id, exc)
            await self._send(error_message(INVALID_MESSAGE))
            return

        if self._jitter_max > 0:
            await asyncio.sleep(random.uniform(self._jitter_min, self._jitter_max) / 1000.0)

        response = InferenceMessage(
            id=frame.id,
            ts=frame.ts,
            latency_ms=int(round((time.monotonic() - received_at) * 1000.0)),
            faces=result.faces,
            texts=result.texts,
            seg=result.seg,
        )
        await self._send(response.to_wire())
        logger.debug(
            "Frame %d answered in %dms (faces=%d, texts=%d, seg=%s, failed=%s)",
            frame.id, response.latency_ms, len(result.faces), len(result.texts),
            result.seg is not None, sorted(result.failures),
        )

    async def _send(self, text: str) -> None:
        if self._closed:
            return
        async with self._send_lock:
            try:
                await self._ws.send_text(text)
            except (WebSocketDisconnect, RuntimeError) as exc:
                # Socket closed underneath us; teardown happens in serve().
                self._closed = True
                logger.debug("Dropping outbound message: %s", exc)

    async def _teardown(self) -> None:
        self._closed = True
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Abandoned %d in-flight request(s) on disconnect", len(pending))
