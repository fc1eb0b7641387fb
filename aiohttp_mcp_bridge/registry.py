import logging
import time

import anyio

from .transport import StreamSink

__all__ = ["SessionRegistry"]

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps session IDs to the open client stream of that session.

    One registry is owned by the application and shared by the stream and
    JSON-RPC handlers. Entries live exactly as long as the client stream.
    """

    __slots__ = ("_last_id_ms", "_lock", "_sinks")

    def __init__(self) -> None:
        self._sinks: dict[str, StreamSink] = {}
        self._lock = anyio.Lock()
        self._last_id_ms = 0

    def __len__(self) -> int:
        return len(self._sinks)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sinks

    def new_session_id(self) -> str:
        """Generate a session ID from a strictly increasing millisecond timestamp."""
        now_ms = time.time_ns() // 1_000_000
        self._last_id_ms = max(now_ms, self._last_id_ms + 1)
        return f"session_{self._last_id_ms}"

    async def register(self, session_id: str, sink: StreamSink) -> None:
        """Register the sink for a session, replacing any previous one."""
        async with self._lock:
            previous = self._sinks.get(session_id)
            self._sinks[session_id] = sink
        if previous is not None and previous is not sink:
            logger.warning("Session %s already had an open stream, replacing it", session_id)
        logger.debug("Registered session %s", session_id)

    async def lookup(self, session_id: str) -> StreamSink | None:
        """Return the open sink of a session, if any."""
        async with self._lock:
            sink = self._sinks.get(session_id)
        if sink is not None and sink.closed:
            return None
        return sink

    async def remove(self, session_id: str, sink: StreamSink | None = None) -> None:
        """Remove a session. Does nothing if it is not registered.

        When ``sink`` is given, the entry is only removed if it still points to
        that sink, so a closing stale connection cannot drop a newer one.
        """
        async with self._lock:
            current = self._sinks.get(session_id)
            if current is None or (sink is not None and current is not sink):
                return
            del self._sinks[session_id]
        logger.debug("Removed session %s", session_id)
