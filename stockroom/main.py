#!/usr/bin/env python3
"""
main.py — Stock Room Trading Server Entry Point

Starts the room-scoped trading server:
1. Loads configuration from the environment (.env honoured)
2. Configures logging (stdout + rotating file)
3. Serves the WebSocket endpoint and status routes with uvicorn

Usage:
    python main.py [--host 0.0.0.0] [--port 8080] [--tick-interval 5] [--log-level INFO]

Environment:
    See .env.example for available overrides.
"""

import argparse
import sys
from dataclasses import replace
from typing import Optional

import uvicorn
from loguru import logger

from config import ServerConfig
from server import create_app


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = "logs/stockroom.log") -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="7 days",
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stock Room Trading Server")
    parser.add_argument("--host", help="Bind address (default from STOCKROOM_HOST)")
    parser.add_argument("--port", type=int, help="Listen port (default from STOCKROOM_PORT)")
    parser.add_argument("--tick-interval", type=float,
                        help="Seconds between price ticks per room")
    parser.add_argument("--log-level", help="Console log level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    cfg = ServerConfig.from_env()
    overrides = {
        "host": args.host,
        "port": args.port,
        "tick_interval": args.tick_interval,
        "log_level": args.log_level,
    }
    return replace(cfg, **{k: v for k, v in overrides.items() if v is not None})


def main(argv=None) -> None:
    cfg = build_config(parse_args(argv))
    setup_logging(cfg.log_level, cfg.log_file)

    logger.info("=" * 60)
    logger.info("Stock Room Trading Server")
    logger.info(f"Listening: ws://{cfg.host}:{cfg.port}/ws")
    logger.info(f"Tick interval: {cfg.tick_interval}s | Walk: ±{cfg.max_price_delta} | History: {cfg.history_limit}")
    logger.info("=" * 60)

    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())


if __name__ == "__main__":
    main()
