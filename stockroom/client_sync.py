"""
Client-side connection manager with offline fallback.

State machine:

    DISCONNECTED → CONNECTING → CONNECTED
                       ↓ (max_attempts consecutive failures/timeouts)
               FALLBACK_SIMULATED   (absorbing, no further connect attempts)

Each connection attempt is bounded by connect_timeout. A failed attempt is
retried immediately until max_attempts is reached; then the agent switches to
a local FallbackSimulator for the rest of its life.

Whether connected or simulated, the agent produces the same envelopes
(identity, price_snapshot, price_updated, order_result, live_trade) and folds
them into the same ClientState. The simulator runs the server's own walk step
(price_engine.advance) and settlement rule (wallet_ledger.settle), so the two
modes cannot drift apart.

Usage:
    agent = ClientSyncAgent(ClientConfig(), on_event=print)
    await agent.connect()
    await agent.join_room("TCS")
    await agent.submit_order("TCS", price=512, quantity=10, side="buy")
    await agent.close()
"""

from __future__ import annotations

import asyncio
import json
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import websockets
import websockets.exceptions
from loguru import logger

from config import ClientConfig
from price_engine import PricePoint, PriceState, advance
from protocol import (
    IDENTITY,
    LIVE_TRADE,
    ORDER_RESULT,
    PRICE_SNAPSHOT,
    PRICE_UPDATED,
    ROOM_NOTICE,
    MalformedMessage,
    build_identity,
    build_join,
    build_leave,
    build_live_trade,
    build_order_result,
    build_price_snapshot,
    build_price_updated,
    build_submit_order,
    parse_envelope,
)
from wallet_ledger import InvalidOrder, Order, Wallet, reject, settle


# ─── Constants ────────────────────────────────────────────────────────────────

MOCK_SESSION_ID = "mock-user-id"
MOCK_USER_NAME = "MockUser"
MAX_NOTICES = 50


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FALLBACK_SIMULATED = "fallback_simulated"


class ConnectionFailure(Exception):
    """A single connection attempt failed or timed out."""


Connector = Callable[[str], Awaitable[Any]]
EventHandler = Callable[[dict], None]


async def _websocket_connector(url: str) -> Any:
    return await websockets.connect(url)


# ─── Client-side view ─────────────────────────────────────────────────────────


@dataclass
class ClientState:
    """What the UI renders. Fed identically by server and simulator events."""
    session_id: Optional[str] = None
    user_name: Optional[str] = None
    wallet: Dict[str, Any] = field(default_factory=lambda: {"balance": 0.0, "holdings": {}})
    instrument: Optional[str] = None
    price: Optional[float] = None
    previous_price: Optional[float] = None
    percent_change: float = 0.0
    price_history: Deque[dict] = field(default_factory=lambda: deque(maxlen=100))
    order_history: List[dict] = field(default_factory=list)
    live_trades: List[dict] = field(default_factory=list)
    notices: Deque[dict] = field(default_factory=lambda: deque(maxlen=MAX_NOTICES))

    def clear_room(self) -> None:
        self.instrument = None
        self.price = None
        self.previous_price = None
        self.percent_change = 0.0
        self.price_history.clear()
        self.order_history.clear()
        self.live_trades.clear()

    def apply(self, msg: dict) -> None:
        mtype = msg.get("type")
        if mtype == IDENTITY:
            self.session_id = msg.get("session_id")
            self.user_name = msg.get("user_name")
            self.wallet = msg.get("wallet", self.wallet)
        elif mtype == PRICE_SNAPSHOT:
            self.instrument = msg.get("instrument")
            self.price = msg.get("price")
            self.price_history.clear()
            self.price_history.extend(msg.get("history", []))
        elif mtype == PRICE_UPDATED:
            self.previous_price = msg.get("previous_price")
            self.price = msg.get("price")
            self.percent_change = msg.get("percent_change", 0.0)
            self.price_history.append({"price": msg.get("price"), "timestamp": msg.get("timestamp")})
        elif mtype == ORDER_RESULT:
            self.wallet = msg.get("wallet", self.wallet)
            trade = msg.get("trade") or {}
            if trade.get("status") == "executed":
                self.order_history.append(trade)
        elif mtype == LIVE_TRADE:
            self.live_trades.append(msg.get("trade"))
        elif mtype == ROOM_NOTICE:
            self.notices.append(msg)


# ─── Fallback simulator ───────────────────────────────────────────────────────


class FallbackSimulator:
    """Local stand-in for the server: one mock wallet, one room, one ticker."""

    def __init__(
        self,
        config: ClientConfig,
        emit: EventHandler,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._emit = emit
        self._rng = rng or random.Random()
        self.wallet = Wallet(balance=config.fallback_balance)
        self.instrument: Optional[str] = None
        self.state: Optional[PriceState] = None
        self._task: Optional[asyncio.Task] = None

    def identity(self) -> dict:
        return build_identity(MOCK_SESSION_ID, MOCK_USER_NAME, self.wallet)

    def seed_state(self, instrument: str) -> PriceState:
        """Synthetic history of seed_points points, 5 s apart, ending now."""
        n = self._config.seed_points
        now = datetime.now(timezone.utc)
        seed = 500 + self._rng.randint(0, 199)
        points = []
        for i in range(n - 1):
            ts = now - timedelta(seconds=(n - 1 - i) * self._config.tick_interval)
            price = max(self._config.min_price, seed - 100 + self._rng.randint(0, 199))
            points.append(PricePoint(price, ts.isoformat()))
        points.append(PricePoint(seed, now.isoformat()))
        return PriceState(instrument, seed, tuple(points))

    def join(self, instrument: str) -> dict:
        self.leave()
        self.instrument = instrument
        self.state = self.seed_state(instrument)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"fallback-{instrument}"
        )
        logger.info(f"[fallback] joined {instrument} at {self.state.price}")
        return build_price_snapshot(self.state)

    def leave(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.instrument = None
        self.state = None

    def tick(self) -> Optional[dict]:
        if self.state is None:
            return None
        self.state, event = advance(
            self.state,
            self._rng,
            max_delta=self._config.max_price_delta,
            min_price=self._config.min_price,
            history_limit=self._config.history_limit,
        )
        return build_price_updated(event)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._config.tick_interval)
            msg = self.tick()
            if msg is not None:
                self._emit(msg)

    def submit(self, payload: Dict[str, Any]) -> List[dict]:
        """Settle locally. Returns the envelopes the server would have sent us."""
        try:
            order = Order.from_payload(payload)
        except InvalidOrder as exc:
            return [build_order_result(reject(payload, self.wallet, exc, user=MOCK_USER_NAME))]
        result = settle(self.wallet, order, user=MOCK_USER_NAME)
        out = [build_order_result(result)]
        if result.executed and order.instrument == self.instrument:
            out.append(build_live_trade(result.trade))
        return out


# ─── Agent ────────────────────────────────────────────────────────────────────


class ClientSyncAgent:
    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        on_event: Optional[EventHandler] = None,
        connector: Optional[Connector] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self._on_event = on_event
        self._connector = connector or _websocket_connector
        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self.total_attempts = 0
        self._transport: Any = None
        self._reader: Optional[asyncio.Task] = None
        self.view = ClientState(price_history=deque(maxlen=self.config.history_limit))
        self.simulator = FallbackSimulator(self.config, self._deliver, rng)
        self.current_room: Optional[str] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    # ── Events ────────────────────────────────────────────────────────────────

    def _deliver(self, msg: dict) -> None:
        self.view.apply(msg)
        if self._on_event is not None:
            try:
                self._on_event(msg)
            except Exception as exc:
                logger.error(f"Event handler failed on {msg.get('type')}: {exc}")

    # ── Connection ────────────────────────────────────────────────────────────

    async def connect(self) -> bool:
        """
        Try to reach the server, up to max_attempts consecutive times.

        Returns True once connected. After the cap is hit the agent enters
        FALLBACK_SIMULATED and every later call returns False without trying.
        """
        if self._state is ConnectionState.FALLBACK_SIMULATED:
            return False
        if self._state is ConnectionState.CONNECTED:
            return True

        while self._attempts < self.config.max_attempts:
            self._attempts += 1
            self.total_attempts += 1
            self._state = ConnectionState.CONNECTING
            try:
                self._transport = await self._attempt()
            except ConnectionFailure as exc:
                logger.warning(f"Connection attempt {self._attempts} failed: {exc}")
                self._state = ConnectionState.DISCONNECTED
                continue

            logger.info(f"Connected to {self.config.url}")
            self._attempts = 0
            self._state = ConnectionState.CONNECTED
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())
            await self._resume_room()
            return self.is_connected

        self._enter_fallback()
        return False

    async def _attempt(self) -> Any:
        try:
            return await asyncio.wait_for(
                self._connector(self.config.url), timeout=self.config.connect_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ConnectionFailure(f"timed out after {self.config.connect_timeout}s") from exc
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise ConnectionFailure(str(exc)) from exc

    def _enter_fallback(self) -> None:
        logger.warning(
            f"No server after {self.total_attempts} attempts, switching to local simulation"
        )
        self._state = ConnectionState.FALLBACK_SIMULATED
        self._deliver(self.simulator.identity())

    async def _read_loop(self) -> None:
        transport = self._transport
        try:
            async for raw in transport:
                try:
                    msg = parse_envelope(raw)
                except MalformedMessage as exc:
                    logger.warning(f"Dropping malformed server message: {exc}")
                    continue
                self._deliver(msg)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"Connection lost: {exc}")
        finally:
            if self._transport is transport:
                self._transport = None
                if self._state is ConnectionState.CONNECTED:
                    self._state = ConnectionState.DISCONNECTED
                    logger.info("Connection closed")

    async def _resume_room(self) -> None:
        """Hand a locally simulated room over to the server."""
        room = self.current_room
        if room is None or self.simulator.instrument is None:
            return
        self.simulator.leave()
        self.view.clear_room()
        logger.info(f"Resuming room {room} on the server")
        if not await self._send(build_join(room)):
            self._deliver(self.simulator.join(room))

    def _drop_connection(self, transport: Any) -> None:
        if self._transport is not transport:
            return
        self._transport = None
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        if self._state is ConnectionState.CONNECTED:
            self._state = ConnectionState.DISCONNECTED

    async def _send(self, msg: dict) -> bool:
        """Send over the live connection. Returns False if it has gone away."""
        transport = self._transport
        if transport is None:
            return False
        try:
            await transport.send(json.dumps(msg))
            return True
        except (websockets.exceptions.ConnectionClosed, OSError) as exc:
            logger.warning(f"Sending {msg.get('type')} failed, connection lost: {exc}")
            self._drop_connection(transport)
            return False

    # ── Room / order API ──────────────────────────────────────────────────────

    async def join_room(self, instrument: str) -> None:
        if self.current_room is not None and self.current_room != instrument:
            await self.leave_room()
        self.view.clear_room()
        self.current_room = instrument

        if self.is_connected and await self._send(build_join(instrument)):
            return
        logger.info(f"Not connected, simulating room {instrument}")
        self._deliver(self.simulator.join(instrument))

    async def leave_room(self) -> None:
        room = self.current_room
        self.simulator.leave()
        self.current_room = None
        if room is not None and self.is_connected:
            await self._send(build_leave(room))

    async def submit_order(
        self,
        instrument: str,
        price: Any,
        quantity: int,
        side: str,
        symbol: str = "",
    ) -> None:
        msg = build_submit_order(instrument, price, quantity, side, symbol)
        if self.is_connected and await self._send(msg):
            return
        logger.info("Not connected, settling order locally")
        for reply in self.simulator.submit(msg):
            self._deliver(reply)

    async def close(self) -> None:
        self.simulator.leave()
        transport, self._transport = self._transport, None
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:
                logger.debug(f"Error closing transport: {exc}")
        if self._state is ConnectionState.CONNECTED:
            self._state = ConnectionState.DISCONNECTED
