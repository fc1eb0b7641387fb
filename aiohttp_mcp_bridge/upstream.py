import asyncio
import codecs
import logging
from collections.abc import AsyncIterator
from types import TracebackType
from typing import Any

import aiohttp
from typing_extensions import Self

from .exceptions import UpstreamConnectError, UpstreamTimeoutError, UpstreamUnavailableError
from .normalizer import dump_json

__all__ = ["UpstreamClient", "UpstreamStream"]

logger = logging.getLogger(__name__)

CONTENT_TYPE_JSON = "application/json"


class UpstreamStream:
    """An open upstream stream for one client subscription."""

    __slots__ = ("_response", "_session_id")

    def __init__(self, session_id: str, response: aiohttp.ClientResponse) -> None:
        self._session_id = session_id
        self._response = response

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_json(self) -> bool:
        """Whether upstream answered with a single JSON document instead of a stream."""
        # Matches variants such as application/json-rpc as well
        return CONTENT_TYPE_JSON in self._response.content_type

    async def iter_text(self) -> AsyncIterator[str]:
        """Yield decoded chunks in the order they arrive."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for data in self._response.content.iter_any():
            text = decoder.decode(data)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    async def read_text(self) -> str:
        """Read the whole body."""
        return await self._response.text(errors="replace")

    def close(self) -> None:
        """Close the upstream connection. Safe to call more than once."""
        if not self._response.closed:
            logger.debug("Closing upstream stream for session %s", self._session_id)
        self._response.close()


class UpstreamClient:
    """HTTP client for the upstream backend.

    Owns a single ``aiohttp.ClientSession`` for the lifetime of the bridge.
    """

    __slots__ = ("_connect_timeout", "_rpc_timeout", "_rpc_url", "_session", "_stream_url")

    def __init__(
        self,
        stream_url: str,
        rpc_url: str,
        rpc_timeout: float = 30.0,
        connect_timeout: float = 10.0,
    ) -> None:
        self._stream_url = stream_url
        self._rpc_url = rpc_url
        self._rpc_timeout = rpc_timeout
        self._connect_timeout = connect_timeout
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            logger.debug("Started upstream HTTP session")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
            logger.debug("Closed upstream HTTP session")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Upstream client is not started")
        return self._session

    async def open_stream(self, session_id: str) -> UpstreamStream:
        """Open the upstream stream for a session.

        Raises:
            UpstreamConnectError: upstream answered with a non-success status
            UpstreamUnavailableError: upstream could not be reached
        """
        logger.info("Connecting to upstream stream at %s for session %s", self._stream_url, session_id)
        # The stream is long-lived, only establishing the connection is bounded
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout)
        try:
            response = await self._get_session().get(
                self._stream_url,
                params={"id": session_id},
                timeout=timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise UpstreamUnavailableError(f"Could not connect to upstream stream: {err!r}") from err

        if not response.ok:
            response.close()
            raise UpstreamConnectError(response.status, response.reason)

        logger.info("Connected to upstream stream for session %s", session_id)
        return UpstreamStream(session_id, response)

    async def call_rpc(self, envelope: dict[str, Any]) -> tuple[int, str]:
        """POST a JSON-RPC envelope upstream and return the status and raw body.

        Raises:
            UpstreamTimeoutError: no answer within the RPC timeout
            UpstreamUnavailableError: upstream could not be reached
        """
        timeout = aiohttp.ClientTimeout(total=self._rpc_timeout, sock_connect=self._connect_timeout)
        try:
            async with self._get_session().post(
                self._rpc_url,
                data=dump_json(envelope),
                headers={"Content-Type": CONTENT_TYPE_JSON},
                timeout=timeout,
            ) as response:
                body = await response.text(errors="replace")
                return response.status, body
        except asyncio.TimeoutError as err:
            raise UpstreamTimeoutError(f"Upstream did not answer within {self._rpc_timeout}s") from err
        except aiohttp.ClientError as err:
            raise UpstreamUnavailableError(f"Upstream request failed: {err!r}") from err
