"""
Historical transaction fetch for the portfolio view.

Pulls past trades from the portfolio HTTP endpoint and normalizes them to
trade records. Records from the legacy API use stock_name / stock_symbol /
transaction_price / action and statuses like "success", "Passed" or
"Failed"; Trade.from_dict maps all of those.

Any failure (network, HTTP status, bad JSON, unexpected shape) is logged and
answered with a fixed three-record sample so the view always has data.

Usage:
    trades = await fetch_historical_transactions()
    for t in trades:
        print(t.instrument, t.status.value)
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import httpx
from loguru import logger

from config import HISTORY_TIMEOUT, HISTORY_URL
from wallet_ledger import SettlementError, Trade


def sample_transactions(now: Optional[datetime] = None) -> List[Trade]:
    """Built-in records returned when the endpoint is unreachable."""
    now = now or datetime.now(timezone.utc)
    raw = [
        {
            "stock_name": "Zomato",
            "stock_symbol": "ZOM",
            "transaction_price": 142.32,
            "timestamp": (now - timedelta(hours=1)).isoformat(),
            "status": "Passed",
            "quantity": 100,
            "action": "buy",
        },
        {
            "stock_name": "Reliance",
            "stock_symbol": "REL",
            "transaction_price": 2500.75,
            "timestamp": (now - timedelta(hours=2)).isoformat(),
            "status": "Passed",
            "quantity": 50,
            "action": "buy",
        },
        {
            "stock_name": "TCS",
            "stock_symbol": "TCS",
            "transaction_price": 3450.20,
            "timestamp": (now - timedelta(hours=3)).isoformat(),
            "status": "Failed",
            "quantity": 200,
            "action": "buy",
        },
    ]
    return [Trade.from_dict(r) for r in raw]


def _records(payload: Any) -> List[dict]:
    if isinstance(payload, dict):
        payload = payload.get("transactions", payload.get("data"))
    if not isinstance(payload, list):
        raise ValueError(f"expected a list of transactions, got {type(payload).__name__}")
    return payload


def normalize(records: List[dict]) -> List[Trade]:
    """Parse raw records into trades, newest first. Unparseable records are skipped."""
    trades: List[Trade] = []
    for record in records:
        if not isinstance(record, dict):
            logger.debug(f"Skipping non-object transaction record: {record!r}")
            continue
        try:
            trades.append(Trade.from_dict(record))
        except (SettlementError, ValueError, TypeError) as exc:
            logger.debug(f"Skipping transaction record {record!r}: {exc}")
    # blank timestamps sort last
    trades.sort(key=lambda t: t.timestamp, reverse=True)
    return trades


async def fetch_historical_transactions(
    url: str = HISTORY_URL,
    timeout: float = HISTORY_TIMEOUT,
    client: Optional[httpx.AsyncClient] = None,
) -> List[Trade]:
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as own:
                resp = await own.get(url)
        else:
            resp = await client.get(url, timeout=timeout)
        resp.raise_for_status()
        trades = normalize(_records(resp.json()))
        logger.info(f"Fetched {len(trades)} historical transactions")
        return trades
    except Exception as exc:
        logger.warning(f"Transaction history fetch failed, using sample data: {exc}")
        return sample_transactions()
