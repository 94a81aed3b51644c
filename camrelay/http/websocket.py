"""
Minimal RFC 6455 support for the frame relay.

The relay only ever sends unmasked single-fragment messages (binary frames,
pong, close) and only needs to read the small control frames browsers send
back, so this module covers exactly that.
"""

import base64
import hashlib
import logging
import struct
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# WebSocket magic string per RFC 6455
WEBSOCKET_MAGIC_STRING = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

OPCODE_CONTINUATION = 0x0
OPCODE_TEXT = 0x1
OPCODE_BINARY = 0x2
OPCODE_CLOSE = 0x8
OPCODE_PING = 0x9
OPCODE_PONG = 0xA

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001

# Client frames larger than this are a protocol error for us; browsers only
# send control frames (<= 125 bytes) to a one-way relay
MAX_CLIENT_PAYLOAD = 64 * 1024


class WebSocketError(Exception):
    """WebSocket protocol error."""
    pass


def generate_accept_key(sec_websocket_key: str) -> str:
    """SHA-1 of key + magic string, base64 encoded (RFC 6455 section 1.3)."""
    digest = hashlib.sha1((sec_websocket_key + WEBSOCKET_MAGIC_STRING).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def parse_headers(lines) -> Dict[str, str]:
    headers = {}
    for line in lines:
        if not line.strip():
            break
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


def parse_upgrade_request(request_str: str) -> Optional[dict]:
    """
    Parse an HTTP request and return its WebSocket handshake fields.

    Returns:
        {'path', 'headers', 'sec-websocket-key'} or None if the request is
        not a valid version 13 upgrade
    """
    lines = request_str.split("\r\n")
    parts = lines[0].split() if lines else []
    if len(parts) < 3 or parts[0] != "GET":
        return None

    headers = parse_headers(lines[1:])

    if headers.get("upgrade", "").lower() != "websocket":
        return None

    # Connection may carry several tokens, e.g. "keep-alive, Upgrade"
    connection_tokens = [t.strip().lower() for t in headers.get("connection", "").split(",")]
    if "upgrade" not in connection_tokens:
        return None

    key = headers.get("sec-websocket-key")
    if not key:
        return None

    if headers.get("sec-websocket-version") != "13":
        return None

    return {
        "path": parts[1],
        "headers": headers,
        "sec-websocket-key": key,
    }


def create_upgrade_response(sec_websocket_key: str) -> bytes:
    """Build the 101 Switching Protocols response."""
    response = (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {generate_accept_key(sec_websocket_key)}\r\n"
        "\r\n"
    )
    return response.encode("ascii")


def encode_websocket_frame(payload: bytes, opcode: int = OPCODE_BINARY) -> bytes:
    """
    Encode one unmasked, final (FIN=1) server-to-client frame.

    Payload length uses the 7-bit, 16-bit or 64-bit form as required.
    """
    header = 0x80 | (opcode & 0x0F)
    length = len(payload)
    if length < 126:
        prefix = struct.pack("!BB", header, length)
    elif length < 65536:
        prefix = struct.pack("!BBH", header, 126, length)
    else:
        prefix = struct.pack("!BBQ", header, 127, length)
    return prefix + payload


def encode_binary_message(frame: bytes) -> bytes:
    """One relay message: the frame bytes as a single binary frame."""
    return encode_websocket_frame(frame, opcode=OPCODE_BINARY)


def decode_websocket_frame(data: bytes) -> Tuple[Optional[int], Optional[bytes], int]:
    """
    Decode the first frame in data.

    Returns:
        (opcode, payload, bytes_consumed), or (None, None, 0) when data does
        not yet hold a whole frame

    Raises:
        WebSocketError: If the declared payload exceeds MAX_CLIENT_PAYLOAD
    """
    if len(data) < 2:
        return None, None, 0

    opcode = data[0] & 0x0F
    masked = bool(data[1] & 0x80)
    length = data[1] & 0x7F

    offset = 2
    if length == 126:
        if len(data) < 4:
            return None, None, 0
        length = struct.unpack("!H", data[2:4])[0]
        offset = 4
    elif length == 127:
        if len(data) < 10:
            return None, None, 0
        length = struct.unpack("!Q", data[2:10])[0]
        offset = 10

    if length > MAX_CLIENT_PAYLOAD:
        raise WebSocketError(f"Client frame too large: {length} bytes")

    mask_key = b""
    if masked:
        if len(data) < offset + 4:
            return None, None, 0
        mask_key = data[offset:offset + 4]
        offset += 4

    if len(data) < offset + length:
        return None, None, 0

    payload = bytes(data[offset:offset + length])
    if masked:
        payload = bytes(b ^ mask_key[i % 4] for i, b in enumerate(payload))

    return opcode, payload, offset + length


def create_close_frame(code: int = CLOSE_NORMAL, reason: str = "") -> bytes:
    """Close frame carrying a status code and optional UTF-8 reason."""
    return encode_websocket_frame(struct.pack("!H", code) + reason.encode("utf-8"), opcode=OPCODE_CLOSE)
