"""
Wire protocol for the trading room WebSocket.

Client → server:
    {"type": "join_room", "instrument": "TCS"}
    {"type": "leave_room", "instrument": "TCS"}
    {"type": "submit_order", "instrument": ..., "symbol": ..., "price": ...,
     "quantity": ..., "side": "buy" | "sell"}
    {"type": "ping", "id": ...}

Server → client:
    {"type": "identity", "session_id": ..., "user_name": ..., "wallet": {...}}
    {"type": "price_snapshot", "instrument": ..., "price": ..., "history": [...]}
    {"type": "price_updated", "instrument": ..., "previous_price": ..., "price": ...,
     "delta": ..., "percent_change": ..., "timestamp": ...}
    {"type": "order_result", "trade": {...}, "wallet": {...}, "reason": ..., "message": ...}
    {"type": "live_trade", "trade": {...}}
    {"type": "room_notice", "instrument": ..., "message": ..., "timestamp": ...}
    {"type": "pong", "ts": ..., "echo": ...}
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from price_engine import PriceState, PriceUpdated
from wallet_ledger import SettlementResult, Trade, Wallet


# ─── Message Types ────────────────────────────────────────────────────────────

IDENTITY = "identity"
JOIN_ROOM = "join_room"
LEAVE_ROOM = "leave_room"
PRICE_SNAPSHOT = "price_snapshot"
PRICE_UPDATED = "price_updated"
SUBMIT_ORDER = "submit_order"
ORDER_RESULT = "order_result"
LIVE_TRADE = "live_trade"
ROOM_NOTICE = "room_notice"
PING = "ping"
PONG = "pong"

CLIENT_TYPES = frozenset({JOIN_ROOM, LEAVE_ROOM, SUBMIT_ORDER, PING})


# ─── Exceptions ───────────────────────────────────────────────────────────────


class MalformedMessage(ValueError):
    """Raised when an inbound frame is not a JSON object with a string type."""


# ─── Parsing ──────────────────────────────────────────────────────────────────


def parse_envelope(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessage("frame is not valid UTF-8") from exc
    if isinstance(raw, str):
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise MalformedMessage(f"invalid JSON: {exc}") from exc
    else:
        msg = raw
    if not isinstance(msg, dict):
        raise MalformedMessage(f"envelope must be an object, got {type(msg).__name__}")
    mtype = msg.get("type")
    if not isinstance(mtype, str) or not mtype:
        raise MalformedMessage("envelope has no type")
    return msg


# ─── Builders ─────────────────────────────────────────────────────────────────


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_identity(session_id: str, user_name: str, wallet: Wallet) -> dict:
    return {
        "type": IDENTITY,
        "session_id": session_id,
        "user_name": user_name,
        "wallet": wallet.to_dict(),
    }


def build_price_snapshot(state: PriceState) -> dict:
    return {"type": PRICE_SNAPSHOT, **state.to_dict()}


def build_price_updated(event: PriceUpdated) -> dict:
    return {"type": PRICE_UPDATED, **event.to_dict()}


def build_order_result(result: SettlementResult) -> dict:
    return {
        "type": ORDER_RESULT,
        "trade": result.trade.to_dict(),
        "wallet": result.wallet,
        "reason": result.reason,
        "message": result.message,
    }


def build_live_trade(trade: Trade) -> dict:
    return {"type": LIVE_TRADE, "trade": trade.to_dict()}


def build_room_notice(instrument: str, message: str) -> dict:
    return {
        "type": ROOM_NOTICE,
        "instrument": instrument,
        "message": message,
        "timestamp": _now_iso(),
    }


def build_pong(echo: Optional[Any] = None) -> dict:
    msg: Dict[str, Any] = {"type": PONG, "ts": time.time()}
    if echo is not None:
        msg["echo"] = echo
    return msg


def build_join(instrument: str) -> dict:
    return {"type": JOIN_ROOM, "instrument": instrument}


def build_leave(instrument: Optional[str] = None) -> dict:
    msg: Dict[str, Any] = {"type": LEAVE_ROOM}
    if instrument is not None:
        msg["instrument"] = instrument
    return msg


def build_submit_order(
    instrument: str,
    price: Any,
    quantity: int,
    side: str,
    symbol: str = "",
) -> dict:
    return {
        "type": SUBMIT_ORDER,
        "instrument": instrument,
        "symbol": symbol,
        "price": float(price),
        "quantity": quantity,
        "side": side,
    }
