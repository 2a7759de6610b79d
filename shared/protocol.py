# =============================================================================
# Trifecta Overlay - Message Parsing
# =============================================================================
# Turns raw WebSocket text into typed messages from shared.schemas.  Both
# sides route parsed messages through a dispatch table keyed by ``type``;
# parsing failures surface as ProtocolError with a short machine-readable
# reason that the relay echoes back in an ``error`` message.
# =============================================================================

import json
from typing import Dict, Type, Union

from pydantic import BaseModel, ValidationError

from shared.schemas import ErrorMessage, FrameMessage, HelloMessage, InferenceMessage

INVALID_JSON = "invalid-json"
INVALID_MESSAGE = "invalid-message"
UNKNOWN_TYPE = "unknown-type"

_CLIENT_MESSAGES: Dict[str, Type[BaseModel]] = {
    "frame": FrameMessage,
}

_SERVER_MESSAGES: Dict[str, Type[BaseModel]] = {
    "hello": HelloMessage,
    "inference": InferenceMessage,
    "error": ErrorMessage,
}

ServerMessage = Union[HelloMessage, InferenceMessage, ErrorMessage]


class ProtocolError(ValueError):
    """
    Raised for messages that cannot be parsed.

    Attributes:
        reason:   One of INVALID_JSON, INVALID_MESSAGE, UNKNOWN_TYPE.
        msg_type: The ``type`` tag, when one could be read.
    """

    def __init__(self, reason: str, detail: str = "", msg_type: str = None):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.msg_type = msg_type


def _parse(text: Union[str, bytes], table: Dict[str, Type[BaseModel]]) -> BaseModel:
    try:
        raw = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(INVALID_JSON, str(exc)) from exc

    if not isinstance(raw, dict):
        raise ProtocolError(INVALID_MESSAGE, "message is not a JSON object")

    msg_type = raw.get("type")
    if not isinstance(msg_type, str):
        raise ProtocolError(INVALID_MESSAGE, f"type must be a string, got {type(msg_type).__name__}")
    model = table.get(msg_type)
    if model is None:
        raise ProtocolError(UNKNOWN_TYPE, f"type={msg_type!r}", msg_type=msg_type)

    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise ProtocolError(INVALID_MESSAGE, str(exc), msg_type=msg_type) from exc


def parse_client_message(text: Union[str, bytes]) -> FrameMessage:
    """
    Parse a message received by the relay.

    Raises:
        ProtocolError: On invalid JSON, an unknown type, or a schema mismatch.
    """
    return _parse(text, _CLIENT_MESSAGES)


def parse_server_message(text: Union[str, bytes]) -> ServerMessage:
    """
    Parse a message received by the edge client.

    Raises:
        ProtocolError: On invalid JSON, an unknown type, or a schema mismatch.
    """
    return _parse(text, _SERVER_MESSAGES)


def error_message(reason: str) -> str:
    """Serialized ``error`` message for the given reason."""
    return ErrorMessage(message=reason).model_dump_json()


def hello_message() -> str:
    """Serialized ``hello`` liveness message."""
    return HelloMessage().model_dump_json()
