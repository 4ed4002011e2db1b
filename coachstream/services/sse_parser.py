"""
Incremental parser for the inference event stream.

Bytes arrive in arbitrary network-sized pieces. The parser keeps a residual
text buffer between ``feed`` calls and only ever consumes complete lines, so a
frame split across reads is emitted exactly once, after its last byte lands.
"""

import codecs
import json
import logging
from typing import Any, Optional, Union

from coachstream.schemas.chat import ContentDelta, StreamDone, StreamError
from coachstream.services.errors import MalformedFrameError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

ParsedFrame = Union[ContentDelta, StreamDone, StreamError]


def extract_data_payload(line: str) -> Optional[str]:
    """
    Return the trimmed payload of a ``data:`` line.

    Returns:
        Payload text, or None for blank lines, ``:`` comments and any other
        field (``event:``, ``id:``, ``retry:``). The prefix match is exact and
        case-sensitive.
    """
    if line.endswith("\r"):
        line = line[:-1]
    if not line.strip() or line.startswith(":"):
        return None
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX):].strip()


def _error_from_payload(error: Any) -> StreamError:
    if isinstance(error, dict):
        message = str(error.get("message") or error.get("error") or "stream error")
        code = error.get("code") if isinstance(error.get("code"), int) else None
        return StreamError(message=message, status_code=code)
    return StreamError(message=str(error))


def parse_data_payload(payload: str) -> Optional[ParsedFrame]:
    """
    Decode one JSON payload into a frame.

    Only ``choices[0].delta.content`` is consumed; a payload without a
    non-empty fragment yields None. A top-level ``error`` field yields a
    StreamError.

    Raises:
        MalformedFrameError: payload is not valid JSON
    """
    try:
        parsed = json.loads(payload)
    except (json.JSONDecodeError, ValueError) as e:
        raise MalformedFrameError(f"Invalid frame payload: {e}", response_text=payload) from e

    if not isinstance(parsed, dict):
        return None

    if parsed.get("error"):
        return _error_from_payload(parsed["error"])

    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return ContentDelta(content=content)
    return None


class SSEStreamParser:
    """
    Stateful line scanner over a chunked byte stream.

    A payload that fails to parse is pushed back, newline included, to the
    front of the buffer and scanning stops for the current chunk. It is
    retried on every later ``feed``. Nothing after it is emitted until it
    parses, which for a genuinely broken line means never; the transport's
    idle timeout is the only bound on that.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._done = False

    @property
    def done(self) -> bool:
        """True once ``data: [DONE]`` has been seen."""
        return self._done

    @property
    def pending(self) -> str:
        """Residual text not yet consumed as a complete frame."""
        return self._buffer

    def feed(self, chunk: Union[bytes, str]) -> list[ParsedFrame]:
        if self._done:
            return []
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        self._buffer += text
        return self._scan()

    def finish(self) -> list[ParsedFrame]:
        """Flush at end of stream. A trailing incomplete line is dropped."""
        if self._done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        frames = self._scan()
        if not self._done and self._buffer.strip():
            logger.warning(
                "Stream ended with %d unparsed characters; dropping them", len(self._buffer)
            )
        self._buffer = ""
        return frames

    def _scan(self) -> list[ParsedFrame]:
        frames: list[ParsedFrame] = []
        while True:
            newline_index = self._buffer.find("\n")
            if newline_index == -1:
                break

            line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1:]

            payload = extract_data_payload(line)
            if payload is None:
                continue

            if payload == DONE_SENTINEL:
                self._done = True
                frames.append(StreamDone())
                break

            try:
                frame = parse_data_payload(payload)
            except MalformedFrameError:
                # Partial JSON, wait for more data
                self._buffer = line + "\n" + self._buffer
                break

            if frame is not None:
                frames.append(frame)
        return frames
