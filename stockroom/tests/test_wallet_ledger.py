"""
test_wallet_ledger.py — Tests for wallets and order settlement.

Covers:
  - Buy/sell settlement and the Zomato end-to-end scenario
  - Rejections leave the wallet untouched
  - Order payload validation (InvalidOrder)
  - Trade record parsing from legacy keys
  - WalletLedger per-session wallets and serialized submission
"""

from __future__ import annotations

import asyncio
import os
import random
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from wallet_ledger import (
    InsufficientBalance,
    InsufficientHoldings,
    InvalidOrder,
    Order,
    Side,
    Trade,
    TradeStatus,
    Wallet,
    WalletLedger,
    reject,
    settle,
)


def _order(instrument="Zomato", price="142.32", quantity=100, side="buy") -> Order:
    return Order.from_payload({
        "instrument": instrument, "price": price, "quantity": quantity, "side": side,
    })


# ─── Settlement ───────────────────────────────────────────────────────────────


class TestSettle:
    def test_zomato_scenario(self):
        wallet = Wallet(balance=25000)
        result = settle(wallet, _order(price=142.32, quantity=100, side="buy"))
        assert result.executed
        assert wallet.balance == Decimal("10768")
        assert wallet.holdings["Zomato"] == 100

        result = settle(wallet, _order(price=142.32, quantity=150, side="sell"))
        assert not result.executed
        assert result.reason == InsufficientHoldings.code
        assert wallet.balance == Decimal("10768")
        assert wallet.holdings["Zomato"] == 100

    def test_buy_rejected_on_insufficient_balance(self):
        wallet = Wallet(balance=1000)
        result = settle(wallet, _order(price=500, quantity=3))
        assert result.reason == InsufficientBalance.code
        assert result.trade.status is TradeStatus.REJECTED
        assert wallet.balance == Decimal("1000")
        assert wallet.holdings == {}

    def test_buy_exact_balance_allowed(self):
        wallet = Wallet(balance=1500)
        result = settle(wallet, _order(price=500, quantity=3))
        assert result.executed
        assert wallet.balance == 0

    def test_sell_credits_balance(self):
        wallet = Wallet(balance=0, holdings={"TCS": 10})
        result = settle(wallet, _order(instrument="TCS", price=600, quantity=4, side="sell"))
        assert result.executed
        assert wallet.balance == Decimal("2400")
        assert wallet.holdings["TCS"] == 6

    def test_sell_with_no_holding_rejected(self):
        wallet = Wallet(balance=100)
        result = settle(wallet, _order(side="sell", quantity=1))
        assert result.reason == "InsufficientHoldings"
        assert "Insufficient holdings" in result.message

    def test_result_wallet_snapshot(self):
        wallet = Wallet(balance=25000)
        result = settle(wallet, _order())
        assert result.wallet == {"balance": 10768.0, "holdings": {"Zomato": 100}}

    def test_trade_record_fields(self):
        result = settle(Wallet(balance=25000), _order(), user="Priya", timestamp="2026-01-01T00:00:00+00:00")
        trade = result.trade.to_dict()
        assert trade == {
            "instrument": "Zomato",
            "symbol": "ZOM",
            "price": 142.32,
            "quantity": 100,
            "side": "buy",
            "timestamp": "2026-01-01T00:00:00+00:00",
            "status": "executed",
            "user": "Priya",
        }

    def test_balance_and_holdings_never_negative(self):
        wallet = Wallet(balance=5000)
        rng = random.Random(11)
        for _ in range(300):
            side = rng.choice(["buy", "sell"])
            settle(wallet, _order(instrument="TCS", price=rng.randint(1, 900), quantity=rng.randint(1, 20), side=side))
            assert wallet.balance >= 0
            assert wallet.holding("TCS") >= 0


# ─── Order validation ─────────────────────────────────────────────────────────


class TestOrderFromPayload:
    def test_valid_payload(self):
        order = _order(side="SELL")
        assert order.side is Side.SELL
        assert order.price == Decimal("142.32")
        assert order.notional == Decimal("14232.00")

    @pytest.mark.parametrize("quantity", [0, -5, 1.5, "10", True, None])
    def test_bad_quantity(self, quantity):
        with pytest.raises(InvalidOrder):
            _order(quantity=quantity)

    def test_integral_float_quantity_accepted(self):
        assert _order(quantity=10.0).quantity == 10

    @pytest.mark.parametrize("price", [0, -1, "abc", None, "NaN", "Infinity"])
    def test_bad_price(self, price):
        with pytest.raises(InvalidOrder):
            _order(price=price)

    def test_bad_side(self):
        with pytest.raises(InvalidOrder):
            _order(side="short")

    def test_empty_instrument(self):
        with pytest.raises(InvalidOrder):
            _order(instrument="")

    def test_reject_builds_result_without_touching_wallet(self):
        wallet = Wallet(balance=100)
        payload = {"instrument": "TCS", "price": 10, "quantity": -1, "side": "buy"}
        result = reject(payload, wallet, InvalidOrder("quantity must be a positive integer"))
        assert result.reason == "InvalidOrder"
        assert result.trade.quantity == 0
        assert result.wallet["balance"] == 100.0


# ─── Trade parsing ────────────────────────────────────────────────────────────


class TestTradeFromDict:
    def test_legacy_keys(self):
        trade = Trade.from_dict({
            "stock_name": "Reliance",
            "stock_symbol": "REL",
            "transaction_price": 2500.75,
            "timestamp": "2026-01-01T00:00:00Z",
            "status": "Passed",
            "quantity": 50,
            "action": "buy",
        })
        assert trade.instrument == "Reliance"
        assert trade.symbol == "REL"
        assert trade.price == Decimal("2500.75")
        assert trade.executed

    @pytest.mark.parametrize("status,executed", [
        ("success", True), ("Success", True), ("executed", True),
        ("failed", False), ("Failed", False), ("rejected", False),
    ])
    def test_status_mapping(self, status, executed):
        trade = Trade.from_dict({"instrument": "TCS", "price": 1, "quantity": 1, "side": "buy", "status": status})
        assert trade.executed is executed

    @pytest.mark.parametrize("raw,expected", [
        (None, ""),
        (1767268800, "2026-01-01T12:00:00+00:00"),
        (0.0, "1970-01-01T00:00:00+00:00"),
        (True, ""),
        (["2026"], ""),
        ("2026-01-01T00:00:00Z", "2026-01-01T00:00:00Z"),
    ])
    def test_timestamp_normalized(self, raw, expected):
        trade = Trade.from_dict({"instrument": "TCS", "price": 1, "quantity": 1, "side": "buy", "timestamp": raw})
        assert trade.timestamp == expected

    def test_round_trip_of_own_record(self):
        original = settle(Wallet(balance=25000), _order(), user="Neha").trade
        assert Trade.from_dict(original.to_dict()) == original


# ─── WalletLedger ─────────────────────────────────────────────────────────────


class TestWalletLedger:
    def test_starting_balance_in_range(self):
        ledger = WalletLedger(rng=random.Random(0))
        for i in range(50):
            wallet = ledger.open_wallet(f"s{i}")
            assert 10_000 <= wallet.balance <= 49_999
            assert wallet.holdings == {}

    def test_explicit_balance(self):
        ledger = WalletLedger()
        assert ledger.open_wallet("s1", 25000).balance == Decimal("25000")

    def test_close_wallet(self):
        ledger = WalletLedger()
        ledger.open_wallet("s1")
        ledger.close_wallet("s1")
        assert ledger.get("s1") is None
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_submit_unknown_session(self):
        with pytest.raises(KeyError):
            await WalletLedger().submit("nobody", _order())

    @pytest.mark.asyncio
    async def test_concurrent_submits_never_overspend(self):
        ledger = WalletLedger()
        ledger.open_wallet("s1", 1000)
        orders = [_order(instrument="TCS", price=300, quantity=1) for _ in range(10)]
        results = await asyncio.gather(*(ledger.submit("s1", o) for o in orders))
        executed = [r for r in results if r.executed]
        assert len(executed) == 3
        wallet = ledger.get("s1")
        assert wallet.balance == Decimal("100")
        assert wallet.holding("TCS") == 3

    @pytest.mark.asyncio
    async def test_wallets_are_isolated(self):
        ledger = WalletLedger()
        ledger.open_wallet("a", 25000)
        ledger.open_wallet("b", 25000)
        await ledger.submit("a", _order())
        assert ledger.get("b").balance == Decimal("25000")
        assert ledger.get("b").holdings == {}
