"""Unit tests for the companion transport client."""

import json
import socket
import tempfile
import threading
from pathlib import Path

import pytest

from outboard import ProtocolError
from outboard import TransportFailureError
from outboard.transport import CompanionResponse
from outboard.transport import TransportClient
from outboard.transport import _decode_reply
from outboard.transport import build_path
from outboard.transport import probe


def test_build_path_quotes_segments() -> None:
    """Verify request targets quote each segment and mark a missing context."""
    assert build_path("pkg.Mod", None, "__define__") == "/pkg.Mod/-/__define__"
    assert build_path("pkg.<locals>.Cls@1", "abc", "run") == "/pkg.%3Clocals%3E.Cls%401/abc/run"
    assert build_path("a/b", "c d", "op") == "/a%2Fb/c%20d/op"


def test_response_payload() -> None:
    """Verify reply bodies decode to values, empty meaning None."""
    assert CompanionResponse(200, "").payload() is None
    assert CompanionResponse(200, "[1, 2]").payload() == [1, 2]
    assert CompanionResponse(204, "").ok is True
    assert CompanionResponse(404, "").ok is False
    with pytest.raises(ProtocolError):
        CompanionResponse(200, "{broken").payload()


def test_decode_reply_validates_envelopes() -> None:
    """Verify reply envelopes must carry an integer status and text body."""
    response: CompanionResponse = _decode_reply(json.dumps({"status": 200, "body": "1"}).encode())
    assert response == CompanionResponse(200, "1")
    assert _decode_reply(b'{"status": 500, "body": null}') == CompanionResponse(500, "")

    for raw in (b"", b"nope", b"[]", b'{"status": "200"}', b'{"status": true}', b'{"status": 200, "body": 5}'):
        with pytest.raises(ProtocolError):
            _decode_reply(raw)


def test_missing_socket_is_transport_failure(tmp_path: Path) -> None:
    """Verify connecting to an absent socket fails as a transport error."""
    socket_path: Path = tmp_path / "absent.sock"
    assert probe(socket_path) is False
    client: TransportClient = TransportClient(socket_path)
    with pytest.raises(TransportFailureError):
        client.send("pkg.Mod", None, "__define__", '""', 1.0)


def test_connection_closed_without_reply_is_transport_failure() -> None:
    """Verify a peer that reads the request and hangs up surfaces as a transport failure."""
    scratch_dir: str = tempfile.mkdtemp(prefix="ob-")
    socket_path: Path = Path(scratch_dir) / "s.sock"
    listener: socket.socket = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(str(socket_path))
    listener.listen(1)

    def hang_up() -> None:
        """Accept one connection, drain the request and close it."""
        connection, _ = listener.accept()
        with connection:
            while len(connection.recv(4096)) > 0:
                pass

    server: threading.Thread = threading.Thread(target=hang_up)
    server.start()
    try:
        client: TransportClient = TransportClient(socket_path)
        with pytest.raises(TransportFailureError, match="without replying"):
            client.send("pkg.Mod", "ctx", "run", "[]", 5.0)
    finally:
        server.join(timeout=5.0)
        listener.close()
        socket_path.unlink(missing_ok=True)
        Path(scratch_dir).rmdir()
