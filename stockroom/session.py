"""
Per-connection session: identity, current room, inbound dispatch.

A session is created when a socket connects and is given an opaque id, a
display name from a fixed pool and a fresh wallet. Inbound envelopes are
dispatched one at a time in arrival order; malformed frames and unknown
types are logged and dropped without a reply.
"""

from __future__ import annotations

import random
import uuid
from typing import TYPE_CHECKING, Any, Dict, Optional

from loguru import logger

from protocol import (
    CLIENT_TYPES,
    JOIN_ROOM,
    LEAVE_ROOM,
    SUBMIT_ORDER,
    MalformedMessage,
    build_identity,
    build_live_trade,
    build_order_result,
    build_pong,
    parse_envelope,
)
from wallet_ledger import InvalidOrder, Order, Wallet, reject

if TYPE_CHECKING:
    from server import TradingRoomServer


NAME_POOL = (
    "Sayan", "Aakash", "Amey", "Rahul", "Priya",
    "Neha", "Vikram", "Anjali", "Rohan", "Kavita",
    "Arjun", "Divya", "Karan", "Meera", "Rajiv",
)


def generate_session_id() -> str:
    return str(uuid.uuid4())


def pick_display_name(rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(NAME_POOL)


class ConnectionSession:
    """Binds one transport to its identity, wallet and room."""

    def __init__(
        self,
        server: "TradingRoomServer",
        transport: Any,
        session_id: str,
        user_name: str,
        wallet: Wallet,
    ) -> None:
        self.server = server
        self.transport = transport
        self.session_id = session_id
        self.user_name = user_name
        self.wallet = wallet
        self.closed = False

    @property
    def room(self) -> Optional[str]:
        return self.server.registry.room_of(self.session_id)

    # ── Outbound ──────────────────────────────────────────────────────────────

    async def send(self, message: dict) -> None:
        """Deliver one message. Transport errors propagate to the caller."""
        if self.closed:
            return
        await self.transport.send_json(message)

    async def greet(self) -> None:
        await self.send(build_identity(self.session_id, self.user_name, self.wallet))

    # ── Inbound ───────────────────────────────────────────────────────────────

    async def handle(self, raw: Any) -> None:
        try:
            msg = parse_envelope(raw)
        except MalformedMessage as exc:
            logger.warning(f"Malformed message from {self.session_id}: {exc}")
            return

        mtype = msg["type"]
        if mtype not in CLIENT_TYPES:
            logger.warning(f"Unknown message type from {self.session_id}: {mtype}")
        elif mtype == JOIN_ROOM:
            await self._on_join(msg)
        elif mtype == LEAVE_ROOM:
            await self._on_leave(msg)
        elif mtype == SUBMIT_ORDER:
            await self._on_order(msg)
        else:  # ping
            await self.send(build_pong(msg.get("id")))

    async def _on_join(self, msg: Dict[str, Any]) -> None:
        instrument = msg.get("instrument")
        if not isinstance(instrument, str) or not instrument:
            logger.warning(f"join_room without instrument from {self.session_id}")
            return
        await self.server.registry.join(self, instrument)

    async def _on_leave(self, msg: Dict[str, Any]) -> None:
        instrument = msg.get("instrument")
        if instrument is not None and not isinstance(instrument, str):
            logger.warning(f"leave_room with bad instrument from {self.session_id}")
            return
        await self.server.registry.leave(self, instrument)

    async def _on_order(self, msg: Dict[str, Any]) -> None:
        try:
            order = Order.from_payload(msg)
        except InvalidOrder as exc:
            logger.info(f"Invalid order from {self.user_name}: {exc}")
            await self.send(build_order_result(reject(msg, self.wallet, exc, user=self.user_name)))
            return

        result = await self.server.ledger.submit(self.session_id, order, user=self.user_name)
        try:
            await self.send(build_order_result(result))
        finally:
            if result.executed:
                await self.server.hub.publish(order.instrument, build_live_trade(result.trade))

    # ── Teardown ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        if self.closed:
            return
        await self.server.registry.leave(self)
        self.closed = True
