"""
test_config.py — Tests for configuration loading, instruments and CLI wiring.
"""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import ClientConfig, ConfigError, ServerConfig
from instruments import DEFAULT_BASE_PRICE, Instrument, derive_symbol, get_instrument, list_instruments
from main import build_config, parse_args, setup_logging


class TestServerConfig:
    def test_defaults(self):
        cfg = ServerConfig()
        assert cfg.port == 8080
        assert cfg.tick_interval == 5.0
        assert cfg.max_price_delta == 500
        assert cfg.history_limit == 100
        assert cfg.send_timeout == 5.0

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("STOCKROOM_PORT", "9090")
        monkeypatch.setenv("STOCKROOM_TICK_INTERVAL", "0.5")
        monkeypatch.setenv("STOCKROOM_SEND_TIMEOUT", "1.5")
        cfg = ServerConfig.from_env()
        assert cfg.port == 9090
        assert cfg.tick_interval == 0.5
        assert cfg.send_timeout == 1.5

    def test_bad_env_value(self, monkeypatch):
        monkeypatch.setenv("STOCKROOM_PORT", "eighty")
        with pytest.raises(ConfigError):
            ServerConfig.from_env()

    @pytest.mark.parametrize("field,value", [
        ("tick_interval", 0), ("history_limit", 0), ("min_price", 0), ("max_balance", 1), ("send_timeout", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigError):
            ServerConfig(**{field: value})


class TestClientConfig:
    def test_defaults(self):
        cfg = ClientConfig()
        assert cfg.url == "ws://localhost:8080/ws"
        assert cfg.connect_timeout == 3.0
        assert cfg.max_attempts == 3
        assert cfg.fallback_balance == 25_000
        assert cfg.seed_points == 10

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("STOCKROOM_URL", "ws://example.test/ws")
        monkeypatch.setenv("STOCKROOM_MAX_ATTEMPTS", "5")
        cfg = ClientConfig.from_env()
        assert cfg.url == "ws://example.test/ws"
        assert cfg.max_attempts == 5


class TestInstruments:
    def test_catalog_lookup(self):
        tcs = get_instrument("TCS")
        assert tcs.symbol == "TCS"
        assert tcs.base_price == DEFAULT_BASE_PRICE

    def test_unknown_instrument(self):
        inst = get_instrument("Wipro")
        assert inst.symbol == "WIP"
        assert inst.base_price == DEFAULT_BASE_PRICE

    def test_derive_symbol(self):
        assert derive_symbol("Zomato") == "ZOM"
        assert Instrument("hdfc").symbol == "HDF"

    def test_list_instruments(self):
        assert {"name": "Zomato", "symbol": "ZOM", "base_price": 500} in list_instruments()


class TestMain:
    def test_cli_overrides_env(self, monkeypatch):
        monkeypatch.setenv("STOCKROOM_PORT", "9000")
        cfg = build_config(parse_args(["--port", "7000", "--log-level", "DEBUG"]))
        assert cfg.port == 7000
        assert cfg.log_level == "DEBUG"

    def test_unset_flags_keep_env(self, monkeypatch):
        monkeypatch.setenv("STOCKROOM_PORT", "9000")
        assert build_config(parse_args([])).port == 9000

    def test_setup_logging_file_sink(self, tmp_path):
        log_file = tmp_path / "stockroom.log"
        setup_logging("INFO", str(log_file))
        from loguru import logger
        logger.info("hello")
        logger.remove()
        assert "hello" in log_file.read_text()
