"""Host-side client for the companion socket."""

import json
import logging
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from outboard.errors import CallTimeoutError
from outboard.errors import ProtocolError
from outboard.errors import TransportFailureError

CONTENT_TYPE: str = "application/json"
NO_CONTEXT: str = "-"
_RECV_CHUNK: int = 65536

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompanionResponse:
    """Status and raw JSON body of one reply."""

    status: int
    body: str

    @property
    def ok(self) -> bool:
        """Report whether the status is in the 2xx range.

        :returns: ``True`` for success statuses.
        """
        return 200 <= self.status < 300

    def payload(self) -> object:
        """Decode the body; an empty body decodes to ``None``.

        :returns: Decoded JSON value.
        :raises ProtocolError: If the body is not valid JSON.
        """
        if len(self.body.strip()) == 0:
            return None
        try:
            return json.loads(self.body)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Companion returned invalid JSON with status {self.status}") from exc


def build_path(clsid: str, context_id: str | None, operation: str) -> str:
    """Build a request target.

    :param clsid: Class identity.
    :param context_id: Caller-instance identity, or ``None``.
    :param operation: Operation or method name.
    :returns: ``/<clsid>/<context>/<operation>`` with quoted segments.
    """
    context_segment: str = NO_CONTEXT
    if context_id is not None:
        context_segment = context_id
    segments: list[str] = [quote(segment, safe="") for segment in (clsid, context_segment, operation)]
    return "/" + "/".join(segments)


def _decode_reply(raw: bytes) -> CompanionResponse:
    """Decode one reply envelope.

    :param raw: Bytes read until EOF.
    :returns: Decoded response.
    :raises ProtocolError: If the envelope is malformed.
    """
    if len(raw) == 0:
        raise ProtocolError("Companion closed the connection without replying")
    try:
        envelope: object = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError("Companion reply is not a JSON envelope") from exc
    if isinstance(envelope, dict) is False:
        raise ProtocolError("Companion reply envelope must be an object")

    status: object = envelope.get("status")
    if isinstance(status, int) is False or isinstance(status, bool) is True:
        raise ProtocolError("Companion reply is missing an integer status")
    body: object = envelope.get("body", "")
    if body is None:
        body = ""
    if isinstance(body, str) is False:
        raise ProtocolError("Companion reply body must be JSON text")
    return CompanionResponse(status=status, body=body)


class TransportClient:
    """Send one request per connection over the companion's Unix socket."""

    socket_path: Path

    def __init__(self, socket_path: Path) -> None:
        """Initialize the client.

        :param socket_path: Companion socket path.
        """
        self.socket_path = socket_path

    def send(
        self,
        clsid: str,
        context_id: str | None,
        operation: str,
        body: str,
        timeout: float,
    ) -> CompanionResponse:
        """Send one request and wait for its reply.

        :param clsid: Class identity.
        :param context_id: Caller-instance identity, or ``None``.
        :param operation: Operation or method name.
        :param body: JSON body text.
        :param timeout: Seconds the whole exchange may take.
        :returns: Reply status and body.
        :raises CallTimeoutError: If no complete reply arrives within ``timeout``.
        :raises TransportFailureError: If the socket fails or closes without a reply.
        :raises ProtocolError: If the reply is malformed.
        """
        path: str = build_path(clsid, context_id, operation)
        request: dict[str, object] = {
            "method": "POST",
            "path": path,
            "content_type": CONTENT_TYPE,
            "body": body,
        }
        data: bytes = json.dumps(request, ensure_ascii=False).encode("utf-8")
        deadline: float = time.monotonic() + timeout

        chunks: list[bytes] = []
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as connection:
                connection.settimeout(timeout)
                connection.connect(str(self.socket_path))
                connection.sendall(data)
                connection.shutdown(socket.SHUT_WR)
                while True:
                    remaining: float = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError
                    connection.settimeout(remaining)
                    chunk: bytes = connection.recv(_RECV_CHUNK)
                    if len(chunk) == 0:
                        break
                    chunks.append(chunk)
            if len(chunks) == 0:
                raise TransportFailureError(
                    f"Companion closed the connection during {clsid}#{operation} without replying"
                )
        except TimeoutError as exc:
            raise CallTimeoutError(f"{clsid}#{operation} timed out after {timeout:g}s") from exc
        except OSError as exc:
            raise TransportFailureError(f"Companion process failed during {clsid}#{operation}: {exc}") from exc

        response: CompanionResponse = _decode_reply(b"".join(chunks))
        logger.debug("%s -> %d", path, response.status)
        return response


def probe(socket_path: Path) -> bool:
    """Try one connection to the companion socket and close it at once.

    :param socket_path: Companion socket path.
    :returns: ``True`` when the socket accepted the connection.
    """
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as connection:
            connection.settimeout(1.0)
            connection.connect(str(socket_path))
    except OSError:
        return False
    return True
