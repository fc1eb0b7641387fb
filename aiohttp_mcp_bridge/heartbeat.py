import logging

import anyio

from .exceptions import SinkClosedError
from .transport import StreamSink

__all__ = ["DEFAULT_HEARTBEAT_INTERVAL", "HeartbeatScheduler"]

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 5.0


class HeartbeatScheduler:
    """Keeps idle client streams alive with periodic SSE comments."""

    __slots__ = ("_interval",)

    def __init__(self, interval: float = DEFAULT_HEARTBEAT_INTERVAL) -> None:
        if interval <= 0:
            raise ValueError(f"Heartbeat interval must be positive, got {interval}")
        self._interval = interval

    async def run(self, sink: StreamSink) -> None:
        """Send heartbeats until the sink is closed.

        Runs until cancelled or until a write fails, which means the client is gone.
        """
        logger.debug("Starting heartbeat for session %s every %ss", sink.session_id, self._interval)
        deadline = anyio.current_time()
        while True:
            # Absolute deadlines keep the beats from drifting
            deadline += self._interval
            await anyio.sleep_until(deadline)
            try:
                await sink.send_comment()
            except SinkClosedError:
                logger.debug("Stopping heartbeat for session %s, stream closed", sink.session_id)
                return
            logger.debug("Sent heartbeat for session %s", sink.session_id)
