from dataclasses import dataclass
from typing import Any

from aiohttp_sse import EventSourceResponse  # noqa: F401

__all__ = ["DATA_PREFIX", "EventSourceResponse", "HEARTBEAT_COMMENT", "SSE_SEPARATOR", "Frame", "JSONObject"]

JSONObject = dict[str, Any]

SSE_SEPARATOR = "\n"
DATA_PREFIX = "data: "
HEARTBEAT_COMMENT = ":" + SSE_SEPARATOR * 2


@dataclass(frozen=True, slots=True)
class Frame:
    """One SSE event produced from upstream output.

    ``data`` is the event payload, sent as the data field of one event. A
    ``verbatim`` frame already carries its own ``data:`` framing and is
    written to the client untouched.
    """

    data: str
    verbatim: bool = False
