"""
Tests for the edge client's message routing and receive loop.
"""

import json
import threading

import pytest
from websockets.sync.server import serve

from edge.client import RelayClient


@pytest.fixture
def received():
    return []


@pytest.fixture
def client(received):
    c = RelayClient("http://127.0.0.1:3000", "ws://127.0.0.1:3000/ws", on_inference=received.append)
    yield c
    c.stop()


def test_inference_routed(client, received):
    client.handle_message(json.dumps({
        "type": "inference", "id": 4, "ts": 10, "latencyMs": 55,
        "faces": [{"x": 0.1, "y": 0.1, "w": 0.2, "h": 0.2}], "texts": [], "seg": None,
    }))
    assert len(received) == 1
    assert received[0].id == 4
    assert received[0].latency_ms == 55


def test_hello_and_error_not_routed(client, received):
    client.handle_message(json.dumps({"type": "hello", "message": "ml-ready"}))
    client.handle_message(json.dumps({"type": "error", "message": "invalid-json"}))
    assert received == []


def test_malformed_messages_dropped(client, received):
    client.handle_message("not json")
    client.handle_message(json.dumps({"type": "mystery"}))
    client.handle_message(json.dumps({"type": "inference", "id": "x"}))
    assert received == []


def test_callback_errors_contained(received):
    def explode(message):
        raise RuntimeError("boom")

    c = RelayClient("http://h", "ws://h/ws", on_inference=explode)
    c.handle_message(json.dumps({"type": "inference", "id": 1}))
    c.stop()


def test_send_without_connection(client):
    assert not client.connected
    with pytest.raises(ConnectionError):
        client.send("{}")


def test_non_string_type_dropped(client, received):
    client.handle_message(json.dumps({"type": []}))
    client.handle_message(json.dumps({"type": {"a": 1}}))
    assert received == []


def _inference(frame_id):
    return json.dumps({"type": "inference", "id": frame_id, "ts": 0, "latencyMs": 1})


@pytest.fixture
def relay_server():
    """Local WebSocket server that sends a fixed script and then closes."""
    script = []

    def handler(connection):
        for text in script:
            connection.send(text)
        connection.close()

    server = serve(handler, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    port = server.socket.getsockname()[1]
    yield script, f"ws://127.0.0.1:{port}/ws"
    server.shutdown()
    thread.join(timeout=5.0)


class TestReceiveLoop:
    """Tests for the background connect/receive thread."""

    def test_disconnect_callback_after_close(self, relay_server, received):
        script, ws_url = relay_server
        script.extend([json.dumps({"type": []}), _inference(1), _inference(2)])
        disconnected = threading.Event()

        c = RelayClient("http://127.0.0.1:1", ws_url, on_inference=received.append,
                        on_disconnect=disconnected.set)
        c.start()
        try:
            assert disconnected.wait(timeout=5.0)
        finally:
            c.stop()

        assert [m.id for m in received[:2]] == [1, 2]
        assert not c.connected

    def test_handler_error_keeps_loop_running(self, relay_server, received, monkeypatch):
        script, ws_url = relay_server
        script.extend([_inference(1), _inference(2)])
        disconnected = threading.Event()

        c = RelayClient("http://127.0.0.1:1", ws_url, on_inference=received.append,
                        on_disconnect=disconnected.set)
        original = c.handle_message
        calls = []

        def flaky(text):
            calls.append(text)
            if len(calls) == 1:
                raise RuntimeError("handler blew up")
            original(text)

        monkeypatch.setattr(c, "handle_message", flaky)
        c.start()
        try:
            assert disconnected.wait(timeout=5.0)
        finally:
            c.stop()

        assert received and received[0].id == 2
