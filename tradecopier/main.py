"""
Trade Copier Relay - Main Entry Point

Usage:
    python -m tradecopier.main
    python -m tradecopier.main --config config/production.yaml
"""

# Load .env FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import sys

import uvicorn
from fastapi import FastAPI

from tradecopier import __version__
from tradecopier.api.server import create_app
from tradecopier.api.state import RelayState
from tradecopier.core.clients import ClientRegistry
from tradecopier.core.store import CopierStore
from tradecopier.infrastructure.config import AppConfig, SecretsConfig, load_config, load_secrets
from tradecopier.infrastructure.logging import configure_logging, get_logger
from tradecopier.infrastructure.metrics import metrics
from tradecopier.storage import create_backend


def build_app(config: AppConfig, secrets: SecretsConfig) -> FastAPI:
    """Construct backend, store and client registry once and wire the app."""
    backend = create_backend(config.storage)
    store = CopierStore.from_config(config.retention, backend)
    store.load()
    clients = ClientRegistry(backend, clock=store.clock)
    return create_app(RelayState.build(config, secrets, store, clients))


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Trade copier relay (master push, slave poll/ack)"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (defaults only when omitted)",
    )
    parser.add_argument("--host", type=str, default=None, help="Override server.host")
    parser.add_argument("--port", type=int, default=None, help="Override server.port")
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Use clean, minimal log format for easier terminal reading",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    return parser.parse_args()


async def async_main() -> None:
    """Async entry point."""
    args = parse_args()

    config = load_config(args.config)
    secrets = load_secrets()
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    log_format = "clean" if args.clean else config.observability.log_format
    log_level = "DEBUG" if args.verbose else config.observability.log_level
    configure_logging(log_level=log_level, log_format=log_format)

    logger = get_logger(__name__)
    logger.info(
        "Copier relay configured",
        version=__version__,
        environment=config.environment,
        config_file=args.config,
        overrides=config.diff_from_defaults(),
        master_protected=bool(secrets.master_key),
    )

    if config.is_production and not secrets.master_key:
        logger.warning("MASTER_KEY is empty: pushes are unauthenticated")

    if config.observability.metrics_enabled:
        metrics.start_server(port=config.observability.metrics_port)
        metrics.set_relay_info(
            version=__version__,
            environment=config.environment,
            backend=config.storage.backend,
        )

    app = build_app(config, secrets)

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level="warning",
    ))
    await server.serve()


def main() -> None:
    """Main entry point."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
