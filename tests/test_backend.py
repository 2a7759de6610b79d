"""
Tests for the inference backend HTTP client.
"""

import base64
import json
import time
from unittest.mock import MagicMock

import pytest
import requests

from server.backend import (
    BackendClient,
    BackendError,
    BackendTimeout,
    CancelToken,
    build_payload,
)


def _response(status=200, headers=None, chunks=(b"",), delay=0.0):
    response = MagicMock()
    response.ok = 200 <= status < 300
    response.status_code = status
    response.headers = requests.structures.CaseInsensitiveDict(headers or {})
    response.__enter__.return_value = response
    response.__exit__.return_value = False

    def _iter(chunk_size=1):
        for chunk in chunks:
            if delay:
                time.sleep(delay)
            yield chunk

    response.iter_content.side_effect = _iter
    return response


def _client(response=None, side_effect=None, timeout_s=1.0, transport="raw"):
    client = BackendClient(
        base_url="http://backend.local/",
        endpoints={"face": "/run_facemask", "seg": "/run_segmentation", "text": "/run_text"},
        timeout_s=timeout_s,
        transport=transport,
    )
    client._session = MagicMock()
    if side_effect is not None:
        client._session.post.side_effect = side_effect
    else:
        client._session.post.return_value = response
    return client


class TestBuildPayload:
    """Tests for the two backend transport modes."""

    def test_raw_body(self):
        body, headers = build_payload(b"\xff\xd8jpeg", "jpeg", "raw")
        assert body == b"\xff\xd8jpeg"
        assert headers == {"Content-Type": "image/jpeg"}

    def test_png_mime(self):
        _, headers = build_payload(b"png", "png", "raw")
        assert headers["Content-Type"] == "image/png"

    def test_json_data_url(self):
        body, headers = build_payload(b"abc", "png", "json")
        assert headers == {"Content-Type": "application/json"}
        assert json.loads(body) == {"image": "data:image/png;base64," + base64.b64encode(b"abc").decode()}

    def test_unknown_transport(self):
        with pytest.raises(ValueError):
            build_payload(b"abc", "jpeg", "multipart")


class TestBackendClient:
    """Tests for response classification and failure handling."""

    def test_json_response(self):
        client = _client(_response(headers={"Content-Type": "application/json"}, chunks=[b'{"boxes": []}']))
        assert client.call("face", b"img", "jpeg") == {"boxes": []}

        args, kwargs = client._session.post.call_args
        assert args[0] == "http://backend.local/run_facemask"
        assert kwargs["data"] == b"img"
        assert kwargs["stream"] is True

    def test_mask_header_is_base64_framed(self):
        payload = b"\x00\x02\x00\x09\x00\x02\xf0\x80\x00\x00"
        client = _client(_response(
            headers={"X-Mask-Format": "PackBits", "Content-Type": "application/octet-stream"},
            chunks=[payload[:4], payload[4:]],
        ))
        result = client.call("seg", b"img", "jpeg")
        assert result == {"kind": "mask", "format": "packbits", "data_b64": base64.b64encode(payload).decode()}

    def test_other_bytes(self):
        client = _client(_response(headers={"Content-Type": "text/plain"}, chunks=[b"hi"]))
        result = client.call("text", b"img", "jpeg")
        assert result["kind"] == "bytes"
        assert result["content_type"] == "text/plain"

    def test_non_2xx_raises(self):
        client = _client(_response(status=503))
        with pytest.raises(BackendError, match="503"):
            client.call("face", b"img", "jpeg")

    def test_invalid_json_raises(self):
        client = _client(_response(headers={"Content-Type": "application/json"}, chunks=[b"{oops"]))
        with pytest.raises(BackendError):
            client.call("face", b"img", "jpeg")

    def test_connect_timeout_becomes_backend_timeout(self):
        client = _client(side_effect=requests.exceptions.ConnectTimeout("slow"))
        with pytest.raises(BackendTimeout):
            client.call("face", b"img", "jpeg")

    def test_transport_error_propagates(self):
        client = _client(side_effect=requests.exceptions.ConnectionError("refused"))
        with pytest.raises(requests.exceptions.ConnectionError):
            client.call("face", b"img", "jpeg")

    def test_slow_body_is_aborted_and_closed(self):
        response = _response(
            headers={"Content-Type": "application/json"},
            chunks=[b"{", b'"a"', b": 1", b"}"],
            delay=0.05,
        )
        client = _client(response, timeout_s=0.08)
        with pytest.raises(BackendTimeout):
            client.call("face", b"img", "jpeg")
        response.close.assert_called()


class TestCancelToken:
    """Tests for the timer-driven cancellation token."""

    def test_fires_callbacks_on_expiry(self):
        fired = []
        token = CancelToken(0.01)
        token.on_cancel(lambda: fired.append(True))
        token.start()
        time.sleep(0.05)
        assert token.cancelled
        assert fired == [True]

    def test_dispose_stops_timer(self):
        token = CancelToken(0.02).start()
        token.dispose()
        time.sleep(0.05)
        assert not token.cancelled

    def test_late_callback_runs_immediately(self):
        token = CancelToken(10)
        token.cancel()
        fired = []
        token.on_cancel(lambda: fired.append(True))
        assert fired == [True]
