__all__ = [
    "BridgeError",
    "SinkClosedError",
    "UpstreamConnectError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "UpstreamUnavailableError",
]


class BridgeError(Exception):
    """Base class for all bridge errors."""


class UpstreamError(BridgeError):
    """The upstream backend could not serve the request."""


class UpstreamConnectError(UpstreamError):
    """The upstream stream endpoint answered with a non-success status."""

    def __init__(self, status: int, reason: str | None = None) -> None:
        self.status = status
        self.reason = reason
        super().__init__(f"Upstream returned {status} {reason or ''}".rstrip())


class UpstreamUnavailableError(UpstreamError):
    """The upstream backend could not be reached."""


class UpstreamTimeoutError(UpstreamError):
    """The upstream backend did not answer in time."""


class SinkClosedError(BridgeError):
    """The client connection behind a sink is gone."""
