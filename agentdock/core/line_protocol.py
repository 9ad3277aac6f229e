"""
Newline-delimited JSON line protocol.

LineDecoder turns an arbitrarily chunked byte stream into decoded
messages; a trailing partial line is kept until its terminator arrives,
so the decoded sequence does not depend on chunk boundaries.
LineWriter serializes outbound messages so concurrent writers never
interleave partial lines.

Usage:
    decoder = LineDecoder()
    for message in decoder.feed(chunk):
        handle(message)
    for message in decoder.flush():  # at EOF
        handle(message)
"""
import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Optional, Sequence

from .constants import (
    CONTROL_CAN_USE_TOOL,
    DEFAULT_MAX_LINE_BYTES,
    LOG_PREVIEW_LENGTH,
    MSG_CONTROL_REQUEST,
    MSG_CONTROL_RESPONSE,
    MSG_USER,
)
from .exceptions import ProtocolDecodeError, ProtocolDesyncError, WriteError
from .schemas import Attachment

logger = logging.getLogger(__name__)

# CSI sequences, OSC sequences terminated by BEL, and carriage returns
ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\][^\x07]*\x07|\r")


class LineDecoder:
    """
    Incremental decoder for the agent's output stream.

    Lines that are not JSON objects are skipped; a line that looks like
    JSON but fails to parse is counted and logged at DEBUG.
    """

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> None:
        self._buffer = bytearray()
        self._max_line_bytes = max_line_bytes
        self.decode_errors = 0
        self.lines_decoded = 0

    @property
    def pending_bytes(self) -> int:
        """Size of the buffered partial line."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """
        Consume a chunk and return every message it completes.

        Raises:
            ProtocolDesyncError: If a line exceeds max_line_bytes. Messages
                completed earlier in the chunk travel on the exception.
        """
        self._buffer.extend(chunk)
        messages: list[dict[str, Any]] = []

        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            self._check_size(len(raw), messages)
            message = self._decode_line(raw)
            if message is not None:
                messages.append(message)

        self._check_size(len(self._buffer), messages)
        return messages

    def flush(self) -> list[dict[str, Any]]:
        """Decode whatever remains in the buffer at end of stream."""
        if not self._buffer:
            return []
        raw = bytes(self._buffer)
        self._buffer.clear()
        message = self._decode_line(raw)
        return [message] if message is not None else []

    def _check_size(self, size: int, decoded: list[dict[str, Any]]) -> None:
        if size > self._max_line_bytes:
            raise ProtocolDesyncError(
                f"Line exceeds {self._max_line_bytes} bytes without terminator",
                messages=decoded,
            )

    def _decode_line(self, raw: bytes) -> Optional[dict[str, Any]]:
        text = ANSI_PATTERN.sub("", raw.decode("utf-8", errors="replace")).strip()
        if not text.startswith("{"):
            if text:
                logger.debug(f"Skipping non-JSON output: {text[:LOG_PREVIEW_LENGTH]}")
            return None
        try:
            message = parse_line(text)
        except ProtocolDecodeError as e:
            self.decode_errors += 1
            logger.debug(f"{e}: {text[:LOG_PREVIEW_LENGTH]}")
            return None
        self.lines_decoded += 1
        return message


def parse_line(text: str) -> dict[str, Any]:
    """
    Parse one protocol line.

    Raises:
        ProtocolDecodeError: If the line is not a JSON object.
    """
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolDecodeError(f"Malformed JSON line: {e}") from e
    if not isinstance(value, dict):
        raise ProtocolDecodeError("Line is not a JSON object")
    return value


def encode_message(message: dict[str, Any]) -> bytes:
    """Encode one outbound message as a newline-terminated JSON line."""
    return (json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


class LineWriter:
    """
    Serialized writer over an async byte sink.

    Each message is written whole under a lock. Delivery failures are
    reported as False, since writes racing process exit are expected.
    """

    def __init__(self, write: Callable[[bytes], Awaitable[None]]) -> None:
        self._write = write
        self._lock = asyncio.Lock()
        self.messages_written = 0

    async def send(self, message: dict[str, Any]) -> bool:
        data = encode_message(message)
        async with self._lock:
            try:
                await self._write(data)
            except (WriteError, OSError) as e:
                logger.warning(f"Failed to write {message.get('type')} message: {e}")
                return False
        self.messages_written += 1
        return True


# =============================================================================
# Outbound message builders
# =============================================================================

def build_user_message(
    text: str,
    attachments: Optional[Sequence[Attachment]] = None,
) -> dict[str, Any]:
    """
    Build a user message. Image attachments precede the text block;
    an empty text is omitted when images are attached.

    Args:
        text: Message text.
        attachments: Optional base64 image attachments.

    Returns:
        Message dict ready for encode_message.
    """
    content: list[dict[str, Any]] = []
    for attachment in attachments or ():
        content.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": attachment.media_type,
                "data": attachment.data,
            },
        })
    if text or not content:
        content.append({"type": "text", "text": text})
    return {
        "type": MSG_USER,
        "message": {"role": "user", "content": content},
    }


def build_control_request(
    request_id: str,
    subtype: str,
    payload: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    request: dict[str, Any] = {"subtype": subtype}
    if payload:
        request.update(payload)
    return {
        "type": MSG_CONTROL_REQUEST,
        "request_id": request_id,
        "request": request,
    }


def build_control_response(
    request_id: str,
    response: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
) -> dict[str, Any]:
    """
    Build a control response answering an inbound control request.

    Args:
        request_id: Id of the request being answered.
        response: Success payload.
        error: Error message; when set the response is an error.

    Returns:
        Message dict ready for encode_message.
    """
    if error is not None:
        body: dict[str, Any] = {
            "subtype": "error",
            "request_id": request_id,
            "error": error,
        }
    else:
        body = {
            "subtype": "success",
            "request_id": request_id,
            "response": response or {},
        }
    return {"type": MSG_CONTROL_RESPONSE, "response": body}


def build_permission_decision(
    request_id: str,
    allow: bool,
    tool_input: Optional[dict[str, Any]] = None,
    message: Optional[str] = None,
) -> dict[str, Any]:
    """Build the answer to a can_use_tool permission prompt."""
    if allow:
        decision: dict[str, Any] = {
            "behavior": "allow",
            "updatedInput": tool_input or {},
        }
    else:
        decision = {
            "behavior": "deny",
            "message": message or "Permission denied by user",
        }
    return build_control_response(request_id, response=decision)


def is_permission_prompt(message: dict[str, Any]) -> bool:
    """Whether an inbound message is the agent asking to use a tool."""
    request = message.get("request")
    return (
        message.get("type") == MSG_CONTROL_REQUEST
        and isinstance(request, dict)
        and request.get("subtype") == CONTROL_CAN_USE_TOOL
    )
