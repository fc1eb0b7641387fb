"""
Frame normalization for upstream stream output.

The upstream backend is inconsistent about how it frames messages. A single
chunk may be any of:

- an SSE line that is already well formed (``data: {...}``)
- a block mixing an ``id:`` line with a ``data:`` line carrying a JSON-RPC result
- a bare JSON object, or a JSON array wrapping one
- plain text

Every chunk is turned into zero or more ``Frame`` objects, each of which is
written to the client as exactly one SSE event. Chunks are handled one at a
time with no buffering across chunk boundaries.
"""

import json
import logging
from typing import Any

from .types import DATA_PREFIX, SSE_SEPARATOR, Frame

__all__ = ["JSON_DECODE_ERRORS", "FrameNormalizer", "dump_json"]

logger = logging.getLogger(__name__)

ID_FIELD_MARKER = "id: "
EVENT_TERMINATOR = SSE_SEPARATOR * 2
# Longest text excerpt written to the logs
LOG_EXCERPT_SIZE = 500
# Deeply nested documents exhaust the recursion limit instead of raising ValueError
JSON_DECODE_ERRORS = (ValueError, RecursionError)


def dump_json(value: Any) -> str:
    """Serialize a value as compact JSON."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class FrameNormalizer:
    """Turns raw upstream chunks into canonical SSE frames."""

    def normalize(self, chunk: str) -> list[Frame]:
        """Normalize one upstream chunk."""
        if not chunk.strip():
            return []

        if ID_FIELD_MARKER in chunk:
            return self._from_id_block(chunk)

        if chunk.startswith(DATA_PREFIX):
            logger.debug("Forwarding SSE chunk: %s", chunk.strip())
            return [Frame(data=chunk.rstrip("\r\n") + EVENT_TERMINATOR, verbatim=True)]

        return [self.normalize_document(chunk)]

    def normalize_document(self, text: str) -> Frame:
        """Normalize a complete JSON document, falling back to the raw text."""
        try:
            frame = self.normalize_json(json.loads(text))
        except JSON_DECODE_ERRORS:
            logger.debug("Forwarding non-JSON text: %s", text[:LOG_EXCERPT_SIZE].strip())
            frame = None
        if frame is None:
            return Frame(data=text.rstrip("\r\n"))
        return frame

    def normalize_json(self, value: Any) -> Frame | None:
        """Normalize an already decoded JSON document.

        Arrays are unwrapped to their first element. Returns None for an empty array.
        """
        if isinstance(value, list):
            if not value:
                return None
            value = value[0]
        data = dump_json(value)
        logger.debug("Converted JSON to SSE: %s", data)
        return Frame(data=data)

    @staticmethod
    def _from_id_block(chunk: str) -> list[Frame]:
        # Only JSON-RPC result lines survive; the id echo and anything else is dropped.
        frames = []
        for line in chunk.splitlines():
            if "jsonrpc" not in line or "result" not in line:
                continue
            if line.startswith(DATA_PREFIX):
                line = line[len(DATA_PREFIX) :]
            frames.append(Frame(data=line))
            logger.debug("Forwarding JSON-RPC line from id block: %s", line)
        return frames
