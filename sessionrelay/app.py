"""Command-line entry point: ``sessionrelay [--host] [--port] [--config]``."""
from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from dotenv import load_dotenv

from sessionrelay.engine.config import RelayConfig
from sessionrelay.engine.yaml_config import load_yaml_config
from sessionrelay.shared.services.log_buffer import LogRingHandler


def configure_logging(config: RelayConfig) -> LogRingHandler:
    """Root logging: rotating file, stderr, and the in-memory ring for /logs."""
    config.log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        config.log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    ring = LogRingHandler(capacity=config.log_ring_size)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    root.addHandler(ring)
    return ring


def main() -> None:
    import argparse

    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="sessionrelay",
        description="Relay server that drives claude CLI sessions over a WebSocket",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: RELAY_HOST or 0.0.0.0)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (default: RELAY_PORT / PORT or 3000)",
    )
    parser.add_argument(
        "--config", metavar="PATH", default=None,
        help="YAML file overlaid on the environment configuration",
    )
    args = parser.parse_args()

    config = RelayConfig.from_env()
    if args.config:
        config_path = Path(args.config).expanduser()
        if not config_path.is_file():
            parser.error(f"config file not found: {config_path}")
        config = load_yaml_config(config_path, base=config)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port

    ring = configure_logging(config)
    log = logging.getLogger(__name__)
    log.info(
        "Starting relay server host=%s port=%s config=%s log=%s",
        config.host, config.port, args.config, config.log_file,
    )
    if config.uses_default_password:
        log.warning(
            "Using the default password; set RELAY_PASSWORD (or CLAUDE_PASSWORD) before exposing this server"
        )

    from sessionrelay.gateway.server import RelayServer

    server = RelayServer(config, log_ring=ring)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
