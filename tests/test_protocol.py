"""Tests for the daemon wire format."""

from __future__ import annotations

import asyncio
import json

import pytest

from mentat.daemon.protocol import (
    Request,
    Response,
    encode_request,
    encode_response,
    parse_request,
    read_frame,
)
from mentat.errors import ProtocolError


class TestParseRequest:
    def test_defaults(self) -> None:
        request = parse_request(b'{"cmd": "search", "query": "needle"}')

        assert request == Request(cmd="search", query="needle", topk=5, text="")

    def test_unknown_fields_ignored(self) -> None:
        assert parse_request(b'{"cmd": "ping", "extra": 1}').cmd == "ping"

    @pytest.mark.parametrize("raw", [b"", b"   ", b"{not json", b"\xc3\x28", b"[1, 2]"])
    def test_parse_errors(self, raw: bytes) -> None:
        with pytest.raises(ProtocolError, match="Parse error"):
            parse_request(raw)

    @pytest.mark.parametrize(
        "payload", [{}, {"cmd": "search", "topk": -1}, {"cmd": "search", "topk": "many"}]
    )
    def test_invalid_requests(self, payload: dict) -> None:
        with pytest.raises(ProtocolError, match="Invalid request"):
            parse_request(json.dumps(payload).encode())


class TestEncoding:
    def test_response_omits_unset_fields(self) -> None:
        encoded = encode_response(Response(ok=True))

        assert encoded.endswith(b"\n")
        assert json.loads(encoded) == {"ok": True}

    def test_search_results_are_pairs(self) -> None:
        encoded = encode_response(Response(ok=True, results=[(3, 0.75), (1, 0.5)]))

        assert json.loads(encoded) == {"ok": True, "results": [[3, 0.75], [1, 0.5]]}

    def test_error_response(self) -> None:
        assert json.loads(encode_response(Response(error="boom"))) == {"error": "boom"}

    def test_encode_request(self) -> None:
        assert encode_request({"cmd": "ping"}) == b'{"cmd": "ping"}\n'


def _read(data: bytes, max_bytes: int = 64, eof: bool = True) -> bytes:
    async def go() -> bytes:
        reader = asyncio.StreamReader(limit=max_bytes)
        reader.feed_data(data)
        if eof:
            reader.feed_eof()
        return await read_frame(reader, max_bytes=max_bytes)

    return asyncio.run(go())


class TestReadFrame:
    def test_newline_terminated(self) -> None:
        assert _read(b'{"cmd":"ping"}\n{"cmd":"other"}\n', eof=False) == b'{"cmd":"ping"}'

    def test_eof_terminated(self) -> None:
        assert _read(b'{"cmd":"ping"}') == b'{"cmd":"ping"}'

    def test_empty_stream(self) -> None:
        assert _read(b"") == b""

    def test_oversized_request_rejected(self) -> None:
        with pytest.raises(ProtocolError, match="exceeds 64 bytes"):
            _read(b"x" * 200 + b"\n")

    def test_oversized_without_newline_rejected(self) -> None:
        with pytest.raises(ProtocolError, match="exceeds"):
            _read(b"x" * 200)
