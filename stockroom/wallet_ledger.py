"""
In-memory wallets and order settlement.

settle() is the single validate-and-apply step used both by the server's
WalletLedger and by the client's offline fallback. It is all-or-nothing: an
order either executes in full (balance and holding both updated) or is
rejected with a reason and the wallet is untouched.

Rules:
    buy   rejected with InsufficientBalance   if price * quantity > balance
    sell  rejected with InsufficientHoldings  if holdings[instrument] < quantity

Money is held as Decimal so balances are exact (25000 - 142.32 * 100 == 10768).

Usage:
    ledger = WalletLedger()
    wallet = ledger.open_wallet("session-1")
    result = await ledger.submit("session-1", order, user="Priya")
    if not result.executed:
        logger.info(f"Rejected: {result.reason}")
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger


# ─── Constants ────────────────────────────────────────────────────────────────

MIN_STARTING_BALANCE = 10_000
MAX_STARTING_BALANCE = 49_999


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    EXECUTED = "executed"
    REJECTED = "rejected"


# ─── Exceptions ───────────────────────────────────────────────────────────────


class SettlementError(Exception):
    """Base exception for order rejections."""

    code = "SettlementError"


class InsufficientBalance(SettlementError):
    code = "InsufficientBalance"


class InsufficientHoldings(SettlementError):
    code = "InsufficientHoldings"


class InvalidOrder(SettlementError):
    code = "InvalidOrder"


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidOrder(f"not a number: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidOrder(f"not a number: {value!r}") from exc


def _money(value: Decimal) -> float:
    return float(value)


def _timestamp(value: Any) -> str:
    """ISO-8601 string for a record timestamp. Epoch seconds are converted, anything else is blank."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            return ""
    return ""


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass
class Wallet:
    balance: Decimal
    holdings: Dict[str, int] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.balance = to_decimal(self.balance)

    def holding(self, instrument: str) -> int:
        return self.holdings.get(instrument, 0)

    def to_dict(self) -> dict:
        return {
            "balance": _money(self.balance),
            "holdings": dict(self.holdings),
        }


@dataclass(frozen=True)
class Order:
    instrument: str
    price: Decimal
    quantity: int
    side: Side
    symbol: str = ""

    @property
    def notional(self) -> Decimal:
        return self.price * self.quantity

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Order":
        """Build an order from a submit_order envelope, raising InvalidOrder."""
        instrument = payload.get("instrument")
        if not isinstance(instrument, str) or not instrument:
            raise InvalidOrder("instrument must be a non-empty string")

        quantity = payload.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)):
            raise InvalidOrder(f"quantity must be a positive integer, got {quantity!r}")
        if isinstance(quantity, float):
            if not quantity.is_integer():
                raise InvalidOrder(f"quantity must be a positive integer, got {quantity!r}")
            quantity = int(quantity)
        if quantity <= 0:
            raise InvalidOrder(f"quantity must be a positive integer, got {quantity!r}")

        price = to_decimal(payload.get("price"))
        if not price.is_finite() or price <= 0:
            raise InvalidOrder(f"price must be positive, got {payload.get('price')!r}")

        try:
            side = Side(str(payload.get("side", "")).lower())
        except ValueError as exc:
            raise InvalidOrder(f"side must be buy or sell, got {payload.get('side')!r}") from exc

        return cls(
            instrument=instrument,
            price=price,
            quantity=quantity,
            side=side,
            symbol=str(payload.get("symbol") or ""),
        )


@dataclass(frozen=True)
class Trade:
    """An order plus its settlement outcome."""
    instrument: str
    symbol: str
    price: Decimal
    quantity: int
    side: Side
    timestamp: str
    status: TradeStatus
    user: str = ""

    @property
    def executed(self) -> bool:
        return self.status is TradeStatus.EXECUTED

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "symbol": self.symbol,
            "price": _money(self.price),
            "quantity": self.quantity,
            "side": self.side.value,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "user": self.user,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        """Parse a trade record, accepting the legacy portfolio-API keys."""
        instrument = data.get("instrument", data.get("stock_name", ""))
        raw_status = str(data.get("status", "")).lower()
        status = (
            TradeStatus.EXECUTED
            if raw_status in ("executed", "success", "passed")
            else TradeStatus.REJECTED
        )
        return cls(
            instrument=instrument,
            symbol=data.get("symbol", data.get("stock_symbol", "")) or instrument[:3].upper(),
            price=to_decimal(data.get("price", data.get("transaction_price", 0))),
            quantity=int(data.get("quantity", 0)),
            side=Side(str(data.get("side", data.get("action", "buy"))).lower()),
            timestamp=_timestamp(data.get("timestamp")),
            status=status,
            user=data.get("user", ""),
        )


@dataclass(frozen=True)
class SettlementResult:
    trade: Trade
    wallet: dict
    reason: Optional[str] = None
    message: str = ""

    @property
    def executed(self) -> bool:
        return self.trade.executed


# ─── Settlement ───────────────────────────────────────────────────────────────


def _apply(wallet: Wallet, order: Order) -> None:
    if order.side is Side.BUY:
        cost = order.notional
        if cost > wallet.balance:
            raise InsufficientBalance(
                f"Insufficient balance: need {cost}, have {wallet.balance}"
            )
        wallet.balance -= cost
        wallet.holdings[order.instrument] = wallet.holding(order.instrument) + order.quantity
    else:
        held = wallet.holding(order.instrument)
        if held < order.quantity:
            raise InsufficientHoldings(
                f"Insufficient holdings: want to sell {order.quantity}, hold {held}"
            )
        wallet.holdings[order.instrument] = held - order.quantity
        wallet.balance += order.notional


def settle(
    wallet: Wallet,
    order: Order,
    *,
    user: str = "",
    timestamp: Optional[str] = None,
) -> SettlementResult:
    """Validate and apply one order. Never raises for business rejections."""
    reason: Optional[str] = None
    message = ""
    try:
        _apply(wallet, order)
        status = TradeStatus.EXECUTED
    except SettlementError as exc:
        status = TradeStatus.REJECTED
        reason = exc.code
        message = str(exc)

    trade = Trade(
        instrument=order.instrument,
        symbol=order.symbol or order.instrument[:3].upper(),
        price=order.price,
        quantity=order.quantity,
        side=order.side,
        timestamp=timestamp or _now_iso(),
        status=status,
        user=user,
    )
    return SettlementResult(trade=trade, wallet=wallet.to_dict(), reason=reason, message=message)


def reject(order_payload: Dict[str, Any], wallet: Wallet, error: SettlementError, *, user: str = "") -> SettlementResult:
    """Result for a payload that never became a valid Order."""
    instrument = order_payload.get("instrument")
    instrument = instrument if isinstance(instrument, str) else ""
    try:
        price = to_decimal(order_payload.get("price", 0))
        if not price.is_finite():
            price = Decimal(0)
    except InvalidOrder:
        price = Decimal(0)
    quantity = order_payload.get("quantity")
    side_raw = str(order_payload.get("side", "")).lower()
    trade = Trade(
        instrument=instrument,
        symbol=str(order_payload.get("symbol") or instrument[:3].upper()),
        price=price,
        quantity=quantity if isinstance(quantity, int) and not isinstance(quantity, bool) else 0,
        side=Side(side_raw) if side_raw in (Side.BUY.value, Side.SELL.value) else Side.BUY,
        timestamp=_now_iso(),
        status=TradeStatus.REJECTED,
        user=user,
    )
    return SettlementResult(trade=trade, wallet=wallet.to_dict(), reason=error.code, message=str(error))


# ─── Ledger ───────────────────────────────────────────────────────────────────


class WalletLedger:
    """
    One wallet per session, created with a random starting balance.

    submit() serializes orders per wallet through the wallet's own lock, so
    back-to-back orders from one session settle strictly one at a time while
    different sessions never contend.
    """

    def __init__(
        self,
        *,
        min_balance: int = MIN_STARTING_BALANCE,
        max_balance: int = MAX_STARTING_BALANCE,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._min_balance = min_balance
        self._max_balance = max_balance
        self._rng = rng or random.Random()
        self._wallets: Dict[str, Wallet] = {}

    def open_wallet(self, session_id: str, balance: Optional[Any] = None) -> Wallet:
        if balance is None:
            balance = self._rng.randint(self._min_balance, self._max_balance)
        wallet = Wallet(balance=to_decimal(balance))
        self._wallets[session_id] = wallet
        return wallet

    def close_wallet(self, session_id: str) -> None:
        self._wallets.pop(session_id, None)

    def get(self, session_id: str) -> Optional[Wallet]:
        return self._wallets.get(session_id)

    async def submit(self, session_id: str, order: Order, *, user: str = "") -> SettlementResult:
        wallet = self._wallets.get(session_id)
        if wallet is None:
            raise KeyError(f"No wallet for session {session_id}")
        async with wallet.lock:
            result = settle(wallet, order, user=user)
        if result.executed:
            logger.info(
                f"{user or session_id}: {order.side.value} {order.quantity} "
                f"{order.instrument} @ {order.price} executed"
            )
        else:
            logger.info(
                f"{user or session_id}: {order.side.value} {order.quantity} "
                f"{order.instrument} @ {order.price} rejected ({result.reason})"
            )
        return result

    def __len__(self) -> int:
        return len(self._wallets)
