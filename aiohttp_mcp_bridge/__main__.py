import logging

from aiohttp import web

from .app import RPC_PATH, STREAM_PATH, build_bridge_app
from .config import BridgeConfig

logger = logging.getLogger(__name__)


def main() -> None:
    config = BridgeConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = build_bridge_app(config)
    logger.info("Bridge listening on %s:%s", config.host, config.port)
    logger.info("Stream endpoint %s -> %s", STREAM_PATH, config.upstream_stream_url)
    logger.info("JSON-RPC endpoint %s -> %s", RPC_PATH, config.upstream_rpc_url)
    web.run_app(app, host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
