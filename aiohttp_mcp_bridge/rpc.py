import json
import logging
from http import HTTPStatus
from typing import Any

from aiohttp import web
from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, PARSE_ERROR, ErrorData

from .exceptions import SinkClosedError, UpstreamError
from .normalizer import JSON_DECODE_ERRORS, dump_json
from .registry import SessionRegistry
from .types import JSONObject
from .upstream import UpstreamClient

__all__ = ["RPCCorrelator", "error_envelope", "is_numeric_id"]

logger = logging.getLogger(__name__)

# Longest body excerpt written to the logs
LOG_EXCERPT_SIZE = 500

TOOLS_LIST_METHOD = "tools/list"
INITIALIZE_METHOD = "initialize"


def error_envelope(request_id: Any, code: int, message: str) -> JSONObject:
    """Build a JSON-RPC error envelope."""
    error = ErrorData(code=code, message=message)
    return {
        "jsonrpc": "2.0",
        "error": error.model_dump(exclude_none=True),
        "id": request_id,
    }


def is_numeric_id(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


class RPCCorrelator:
    """Forwards JSON-RPC calls upstream under the caller's session ID.

    The request ID sent upstream is always the session ID so upstream can tie
    the call to the session's stream. Numeric client IDs are restored on the
    way back.
    """

    __slots__ = ("_fallback_session_id", "_registry", "_upstream")

    def __init__(self, upstream: UpstreamClient, registry: SessionRegistry, fallback_session_id: str) -> None:
        self._upstream = upstream
        self._registry = registry
        self._fallback_session_id = fallback_session_id

    def resolve_session_id(self, envelope: JSONObject, explicit: str | None = None) -> str:
        """Pick the session ID for a call.

        The explicit ID wins, then a non-empty string request ID, then the fallback.
        """
        if explicit:
            logger.debug("Using session ID from URL: %s", explicit)
            return explicit
        request_id = envelope.get("id")
        if isinstance(request_id, str) and request_id:
            logger.debug("Using session ID from request body: %s", request_id)
            return request_id
        logger.debug("Using fallback session ID: %s", self._fallback_session_id)
        return self._fallback_session_id

    async def correlate(self, envelope: JSONObject, explicit: str | None = None) -> tuple[int, Any]:
        """Forward a call upstream and return the HTTP status and the body for the client."""
        client_id = envelope.get("id")
        session_id = self.resolve_session_id(envelope, explicit)
        outbound = {**envelope, "id": session_id}
        logger.info("Forwarding %s to upstream with ID %s", envelope.get("method"), session_id)

        try:
            status, text = await self._upstream.call_rpc(outbound)
        except UpstreamError as err:
            logger.error("Upstream JSON-RPC call failed: %s", err)
            return HTTPStatus.INTERNAL_SERVER_ERROR, error_envelope(
                client_id, INTERNAL_ERROR, f"Internal server error: {err}"
            )

        try:
            reply = json.loads(text)
        except JSON_DECODE_ERRORS:
            logger.error("Invalid JSON from upstream (status %s): %s", status, text[:LOG_EXCERPT_SIZE])
            return HTTPStatus.BAD_GATEWAY, error_envelope(
                client_id, INTERNAL_ERROR, "Invalid JSON response from server"
            )

        logger.debug("Upstream response status %s: %s", status, text[:LOG_EXCERPT_SIZE])
        if not isinstance(reply, dict):
            return status, reply

        method = envelope.get("method")
        if method == TOOLS_LIST_METHOD and isinstance(reply.get("result"), list):
            logger.debug("Wrapping tools/list result")
            reply["result"] = {"tools": reply["result"]}

        if is_numeric_id(client_id):
            reply["id"] = client_id

        if method == INITIALIZE_METHOD:
            await self._push_to_stream(session_id, reply)

        return status, reply

    async def _push_to_stream(self, session_id: str, reply: JSONObject) -> None:
        sink = await self._registry.lookup(session_id)
        if sink is None:
            return
        try:
            await sink.send_message(reply)
            logger.info("Pushed initialize response to stream of session %s", session_id)
        except SinkClosedError:
            logger.warning("Stream of session %s closed before initialize response could be pushed", session_id)

    async def handle_rpc(self, request: web.Request) -> web.Response:
        """Handle a JSON-RPC call over HTTP."""
        body = await request.text()
        logger.debug(
            "%s %s query=%s body=%s", request.method, request.path_qs, dict(request.query), body[:LOG_EXCERPT_SIZE]
        )

        try:
            envelope = json.loads(body)
        except JSON_DECODE_ERRORS as err:
            return self._json_response(error_envelope(None, PARSE_ERROR, f"Parse error: {err}"), HTTPStatus.BAD_REQUEST)

        if not isinstance(envelope, dict):
            return self._json_response(
                error_envelope(None, INVALID_REQUEST, "Request must be a JSON object"), HTTPStatus.BAD_REQUEST
            )

        status, reply = await self.correlate(envelope, request.query.get("id"))
        return self._json_response(reply, status)

    @staticmethod
    def _json_response(body: Any, status: int) -> web.Response:
        return web.json_response(body, status=int(status), dumps=dump_json)
