"""Wire format of the daemon: newline-delimited JSON objects.

A request is a single JSON object followed by ``\\n`` (end of stream also
terminates it). Requests longer than the configured limit are rejected
rather than truncated. Every response is one JSON object followed by ``\\n``
with unset fields omitted.
"""

from __future__ import annotations

import asyncio
import json
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from mentat.errors import ProtocolError

DELIMITER = b"\n"


class Request(BaseModel):
    cmd: str
    query: str = ""
    topk: int = Field(default=5, ge=0)
    text: str = ""


class Response(BaseModel):
    ok: Optional[bool] = None
    results: Optional[List[Tuple[int, float]]] = None
    embedding: Optional[List[float]] = None
    state: Optional[str] = None
    count: Optional[int] = None
    error: Optional[str] = None


def parse_request(raw: bytes) -> Request:
    if not raw.strip():
        raise ProtocolError("Parse error: empty request")
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"Parse error: {exc}") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("Parse error: request must be a JSON object")
    try:
        return Request.model_validate(payload)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ProtocolError(f"Invalid request: {errors}") from exc


def encode_response(response: Response) -> bytes:
    return response.model_dump_json(exclude_none=True).encode("utf-8") + DELIMITER


def encode_request(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8") + DELIMITER


async def read_frame(reader: asyncio.StreamReader, *, max_bytes: int) -> bytes:
    """Read one delimited frame; the reader's own limit must be ``max_bytes``."""
    try:
        frame = await reader.readuntil(DELIMITER)
    except asyncio.IncompleteReadError as exc:
        frame = exc.partial
    except asyncio.LimitOverrunError as exc:
        raise ProtocolError(f"Request exceeds {max_bytes} bytes") from exc
    if len(frame) > max_bytes + len(DELIMITER):
        raise ProtocolError(f"Request exceeds {max_bytes} bytes")
    return frame.rstrip(DELIMITER)
