import logging
from typing import Any

import anyio

from .exceptions import SinkClosedError
from .normalizer import dump_json
from .types import HEARTBEAT_COMMENT, EventSourceResponse, Frame

__all__ = ["StreamSink"]

logger = logging.getLogger(__name__)


class StreamSink:
    """Write end of one client SSE connection.

    All writes go through a per-sink lock so frames coming from the upstream
    stream, heartbeats and pushed RPC replies never interleave on the wire.
    """

    __slots__ = ("_closed", "_lock", "_response", "_session_id")

    def __init__(self, session_id: str, response: EventSourceResponse) -> None:
        self._session_id = session_id
        self._response = response
        self._lock = anyio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        return f"<StreamSink session_id={self._session_id!r} closed={self._closed}>"

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Mark the sink closed. Later writes raise SinkClosedError."""
        self._closed = True

    async def send_message(self, message: dict[str, Any]) -> None:
        """Send a JSON message as one data event."""
        await self.send_frame(Frame(data=dump_json(message)))

    async def send_frame(self, frame: Frame) -> None:
        """Send a normalized frame."""
        async with self._lock:
            self._check_open()
            try:
                if frame.verbatim:
                    await self._response.write(frame.data.encode("utf-8"))
                else:
                    await self._response.send(frame.data)
            except (ConnectionResetError, RuntimeError) as err:
                # RuntimeError - writing after EOF
                self._mark_lost(err)
        logger.debug("Sent frame to session %s: %s", self._session_id, frame.data)

    async def send_comment(self) -> None:
        """Send an SSE comment, used as a heartbeat."""
        async with self._lock:
            self._check_open()
            try:
                await self._response.write(HEARTBEAT_COMMENT.encode("utf-8"))
            except (ConnectionResetError, RuntimeError) as err:
                self._mark_lost(err)

    def _check_open(self) -> None:
        if self._closed:
            raise SinkClosedError(f"Stream for session {self._session_id} is closed")

    def _mark_lost(self, err: Exception) -> None:
        self._closed = True
        logger.debug("Lost client connection for session %s: %s", self._session_id, err)
        raise SinkClosedError(f"Stream for session {self._session_id} is closed") from err
