"""
Graph wire protocol — the JSON frames peers exchange over websockets.

Envelope (one JSON object per text frame):
    type     — PUT | GET | ACK | DATA | NOT_FOUND
    version  — protocol version ("1.0")
    payload  — type-specific object
    ts       — sender clock, ms since epoch
    nonce    — 16 hex chars; a relayed frame keeps its nonce so each node
               processes it once

Exchanges:
    PUT  {path, record[, states]}  -> ACK {ref, ok}
    GET  {path}                    -> DATA {path, record, states} | NOT_FOUND {path}

A DATA frame arriving without a pending GET is merged like a PUT.
"""

from __future__ import annotations

import json
import secrets
import time
from typing import Any

from air import GRAPH_MAX_MESSAGE, GRAPH_PROTOCOL_VERSION

PUT = "PUT"
GET = "GET"
ACK = "ACK"
DATA = "DATA"
NOT_FOUND = "NOT_FOUND"

VALID_TYPES = frozenset({PUT, GET, ACK, DATA, NOT_FOUND})

_ENVELOPE = ("type", "version", "payload", "ts", "nonce")

_PAYLOAD_SCHEMA: dict[str, tuple[str, ...]] = {
    PUT: ("path", "record"),
    GET: ("path",),
    ACK: ("ref", "ok"),
    DATA: ("path", "record"),
    NOT_FOUND: ("path",),
}


class ProtocolError(Exception):
    """A frame that is not a valid graph message."""


def make_message(msg_type: str, payload: dict[str, Any] | None = None) -> dict:
    if msg_type not in VALID_TYPES:
        raise ProtocolError(f"Unknown message type: {msg_type!r}")
    return {
        "type": msg_type,
        "version": GRAPH_PROTOCOL_VERSION,
        "payload": dict(payload or {}),
        "ts": int(time.time() * 1000),
        "nonce": secrets.token_hex(8),
    }


def _check_payload(msg_type: str, payload: dict[str, Any]) -> None:
    absent = [name for name in _PAYLOAD_SCHEMA[msg_type] if name not in payload]
    if absent:
        raise ProtocolError(f"{msg_type} payload lacks: {', '.join(absent)}")

    path = payload.get("path", "-")
    if not isinstance(path, str) or not path:
        raise ProtocolError(f"{msg_type} path must be a non-empty string")
    if "record" in payload and not isinstance(payload["record"], dict):
        raise ProtocolError(f"{msg_type} record must be an object")


def validate_message(msg: Any) -> None:
    """Raise ProtocolError unless ``msg`` is a well-formed graph message."""
    if not isinstance(msg, dict):
        raise ProtocolError("Frame is not a JSON object")
    absent = [name for name in _ENVELOPE if name not in msg]
    if absent:
        raise ProtocolError(f"Envelope lacks: {', '.join(absent)}")
    if msg["type"] not in VALID_TYPES:
        raise ProtocolError(f"Unknown message type: {msg['type']!r}")
    nonce = msg["nonce"]
    if not isinstance(nonce, str) or len(nonce) < 4:
        raise ProtocolError("Envelope nonce must be a string of 4+ chars")
    if not isinstance(msg["payload"], dict):
        raise ProtocolError("Envelope payload must be an object")
    _check_payload(msg["type"], msg["payload"])


def encode(msg: dict) -> str:
    validate_message(msg)
    text = json.dumps(msg, separators=(",", ":"))
    size = len(text.encode("utf-8"))
    if size > GRAPH_MAX_MESSAGE:
        raise ProtocolError(f"Message too large: {size} > {GRAPH_MAX_MESSAGE} bytes")
    return text


def decode(frame: str | bytes) -> dict:
    """Parse one websocket frame into a validated message."""
    if isinstance(frame, bytes):
        if len(frame) > GRAPH_MAX_MESSAGE:
            raise ProtocolError(f"Message too large: {len(frame)} > {GRAPH_MAX_MESSAGE} bytes")
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not UTF-8: {e}") from e
    try:
        msg = json.loads(frame)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON payload: {e}") from e
    validate_message(msg)
    return msg
