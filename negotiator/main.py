"""
Signalling server entrypoint.

Resolves the negotiation profile, initialises logging and serves the FastAPI
app from :mod:`negotiator.api.server` under uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from .api.server import create_app
from .config import NegotiatorConfig, load_config
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


async def serve(config: NegotiatorConfig, host: str = "127.0.0.1", port: int = 8081) -> None:
    """
    Run the signalling API inside an asyncio loop.

    Parameters
    ----------
    config:
        Negotiation configuration applied to server-side peers.
    host, port:
        Bind address for the uvicorn server.
    """

    import uvicorn

    app = create_app(config=config)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)
    LOG.info("Signalling server listening on %s:%s (profile=%s)", host, port, config.profile)
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Perfect negotiation signalling server")
    parser.add_argument("--profile", default="default", help="negotiation profile to load")
    parser.add_argument("--host", default="127.0.0.1", help="bind host for the API server")
    parser.add_argument("--port", type=int, default=8081, help="bind port for the API server")
    parser.add_argument("--log-level", default="INFO", help="root log level")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    config = load_config(args.profile)

    try:
        asyncio.run(serve(config=config, host=args.host, port=args.port))
    except KeyboardInterrupt:
        LOG.info("Signalling server interrupted by user.")


if __name__ == "__main__":
    run()
