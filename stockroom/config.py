"""
Runtime configuration for the stock room server and client.

Defaults reproduce the live trading room behavior (5 s ticks, ±500 walk,
100-point history, 3 s / 3-attempt client connect policy). Every field can be
overridden through environment variables; a local .env file is honoured.

Usage:
    cfg = ServerConfig.from_env()
    client_cfg = ClientConfig(url="ws://localhost:8080/ws", connect_timeout=0.5)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv

T = TypeVar("T")


# ─── Exceptions ───────────────────────────────────────────────────────────────


class ConfigError(ValueError):
    """Raised when an environment override cannot be parsed."""


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _env(name: str, default: T, cast: Callable[[str], T]) -> T:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc


# ─── Server ───────────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """Trading room server parameters."""
    host: str = "0.0.0.0"
    port: int = 8080
    tick_interval: float = 5.0          # seconds between price ticks
    max_price_delta: int = 500          # walk step drawn from [-delta, +delta]
    min_price: int = 1                  # price floor
    history_limit: int = 100            # FIFO cap on price history
    default_base_price: int = 500       # seed for instruments outside the catalog
    min_balance: int = 10_000           # starting wallet balance range (inclusive)
    max_balance: int = 49_999
    send_timeout: float = 5.0           # per-subscriber delivery bound
    log_level: str = "INFO"
    log_file: Optional[str] = "logs/stockroom.log"

    def __post_init__(self) -> None:
        if self.tick_interval <= 0:
            raise ConfigError(f"tick_interval must be positive, got {self.tick_interval}")
        if self.history_limit < 1:
            raise ConfigError(f"history_limit must be >= 1, got {self.history_limit}")
        if self.min_price < 1:
            raise ConfigError(f"min_price must be >= 1, got {self.min_price}")
        if self.send_timeout <= 0:
            raise ConfigError(f"send_timeout must be positive, got {self.send_timeout}")
        if self.min_balance < 0 or self.max_balance < self.min_balance:
            raise ConfigError(
                f"invalid balance range [{self.min_balance}, {self.max_balance}]"
            )

    @classmethod
    def from_env(cls) -> "ServerConfig":
        load_dotenv()
        return cls(
            host=_env("STOCKROOM_HOST", cls.host, str),
            port=_env("STOCKROOM_PORT", cls.port, int),
            tick_interval=_env("STOCKROOM_TICK_INTERVAL", cls.tick_interval, float),
            max_price_delta=_env("STOCKROOM_MAX_PRICE_DELTA", cls.max_price_delta, int),
            history_limit=_env("STOCKROOM_HISTORY_LIMIT", cls.history_limit, int),
            default_base_price=_env("STOCKROOM_DEFAULT_BASE_PRICE", cls.default_base_price, int),
            send_timeout=_env("STOCKROOM_SEND_TIMEOUT", cls.send_timeout, float),
            log_level=_env("LOG_LEVEL", cls.log_level, str),
            log_file=_env("STOCKROOM_LOG_FILE", cls.log_file, str),
        )


# ─── Client ───────────────────────────────────────────────────────────────────


@dataclass
class ClientConfig:
    """Client sync agent parameters."""
    url: str = "ws://localhost:8080/ws"
    connect_timeout: float = 3.0        # per attempt
    max_attempts: int = 3               # consecutive failures before fallback
    tick_interval: float = 5.0          # fallback ticker period
    max_price_delta: int = 500
    min_price: int = 1
    history_limit: int = 100
    fallback_balance: int = 25_000
    seed_points: int = 10               # synthetic history length in fallback

    @classmethod
    def from_env(cls) -> "ClientConfig":
        load_dotenv()
        return cls(
            url=_env("STOCKROOM_URL", cls.url, str),
            connect_timeout=_env("STOCKROOM_CONNECT_TIMEOUT", cls.connect_timeout, float),
            max_attempts=_env("STOCKROOM_MAX_ATTEMPTS", cls.max_attempts, int),
        )


# ─── History ──────────────────────────────────────────────────────────────────

HISTORY_URL = os.getenv(
    "STOCKROOM_HISTORY_URL",
    "https://dev-1gyvfva3nqtb0v4.api.raw-labs.com/mock/portfolio-transactions",
)
HISTORY_TIMEOUT = 8.0
