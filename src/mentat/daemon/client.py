"""Blocking client for the daemon, used by ``mentat query``."""

from __future__ import annotations

import json
import socket
from typing import Any, Dict

from mentat.errors import ProtocolError
from mentat.daemon.protocol import DELIMITER, encode_request


def send_request(
    payload: Dict[str, Any],
    *,
    host: str = "127.0.0.1",
    port: int = 6667,
    timeout: float = 30.0,
) -> Dict[str, Any]:
    """Send one request and return the decoded response object."""
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(encode_request(payload))
            sock.shutdown(socket.SHUT_WR)
            buffer = bytearray()
            while DELIMITER not in buffer:
                data = sock.recv(65536)
                if not data:
                    break
                buffer.extend(data)
    except OSError as exc:
        raise ProtocolError(f"Unable to reach daemon at {host}:{port}: {exc}") from exc

    line = bytes(buffer).split(DELIMITER, 1)[0]
    if not line:
        raise ProtocolError("Daemon closed the connection without a response")
    try:
        response = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Malformed response: {exc}") from exc
    if not isinstance(response, dict):
        raise ProtocolError("Malformed response: expected a JSON object")
    return response
