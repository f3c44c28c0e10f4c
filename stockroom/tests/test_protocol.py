"""
test_protocol.py — Tests for envelope parsing and message builders.
"""

from __future__ import annotations

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from price_engine import PricePoint, PriceState, PriceUpdated
from protocol import (
    CLIENT_TYPES,
    MalformedMessage,
    build_identity,
    build_join,
    build_leave,
    build_live_trade,
    build_order_result,
    build_pong,
    build_price_snapshot,
    build_price_updated,
    build_room_notice,
    build_submit_order,
    parse_envelope,
)
from wallet_ledger import Order, Wallet, settle


# ─── parse_envelope ───────────────────────────────────────────────────────────


class TestParseEnvelope:
    def test_text_frame(self):
        assert parse_envelope('{"type": "join_room", "instrument": "TCS"}') == {
            "type": "join_room", "instrument": "TCS",
        }

    def test_bytes_frame(self):
        assert parse_envelope(b'{"type": "ping"}')["type"] == "ping"

    def test_dict_passthrough(self):
        assert parse_envelope({"type": "ping"}) == {"type": "ping"}

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2, 3]",
        '"join_room"',
        "{}",
        '{"type": 5}',
        '{"type": ""}',
        b"\xff\xfe",
        None,
    ])
    def test_malformed(self, raw):
        with pytest.raises(MalformedMessage):
            parse_envelope(raw)

    def test_malformed_is_value_error(self):
        assert issubclass(MalformedMessage, ValueError)


# ─── Builders ─────────────────────────────────────────────────────────────────


class TestBuilders:
    def test_identity(self):
        msg = build_identity("sid", "Amey", Wallet(balance=25000))
        assert msg == {
            "type": "identity",
            "session_id": "sid",
            "user_name": "Amey",
            "wallet": {"balance": 25000.0, "holdings": {}},
        }

    def test_snapshot(self):
        state = PriceState("TCS", 510, (PricePoint(510, "t1"),))
        msg = build_price_snapshot(state)
        assert msg["type"] == "price_snapshot"
        assert msg["history"] == [{"price": 510, "timestamp": "t1"}]

    def test_price_updated(self):
        event = PriceUpdated("TCS", 500, 510, 10, 2.0, "t1")
        msg = build_price_updated(event)
        assert msg["type"] == "price_updated"
        assert msg["percent_change"] == 2.0
        assert msg["previous_price"] == 500

    def test_order_result_and_live_trade(self):
        order = Order.from_payload({"instrument": "TCS", "price": 500, "quantity": 2, "side": "buy"})
        result = settle(Wallet(balance=25000), order, user="Rohan")
        msg = build_order_result(result)
        assert msg["type"] == "order_result"
        assert msg["reason"] is None
        assert msg["wallet"]["balance"] == 24000.0
        assert msg["trade"]["status"] == "executed"
        live = build_live_trade(result.trade)
        assert live == {"type": "live_trade", "trade": msg["trade"]}

    def test_room_notice(self):
        msg = build_room_notice("TCS", "Divya joined the room")
        assert msg["type"] == "room_notice"
        assert msg["message"] == "Divya joined the room"
        assert "timestamp" in msg

    def test_pong_echo(self):
        assert build_pong(7)["echo"] == 7
        assert "echo" not in build_pong()

    def test_client_builders_are_client_types(self):
        for msg in (build_join("TCS"), build_leave("TCS"), build_submit_order("TCS", 1, 1, "buy")):
            assert msg["type"] in CLIENT_TYPES

    def test_leave_without_instrument(self):
        assert build_leave() == {"type": "leave_room"}

    def test_builders_are_json_serializable(self):
        order = Order.from_payload({"instrument": "TCS", "price": "12.5", "quantity": 1, "side": "buy"})
        result = settle(Wallet(balance=100), order)
        for msg in (build_order_result(result), build_submit_order("TCS", 12.5, 1, "buy")):
            json.dumps(msg)
