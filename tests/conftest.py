import pytest

from aiohttp_mcp_bridge import BridgeConfig


@pytest.fixture
def anyio_backend() -> str:
    """Return the backend name for anyio. Test only against asyncio. Trio is not supported."""
    return "asyncio"


@pytest.fixture
def config() -> BridgeConfig:
    return BridgeConfig(
        upstream_stream_url="http://upstream.test/stream",
        upstream_rpc_url="http://upstream.test/jsonrpc",
    )
