"""
Room membership and per-instrument simulation lifecycle.

A room exists exactly while it has at least one member: the first join starts
the instrument's price feed, the last leave stops it. Membership changes and
the matching engine start/stop happen under one lock, so the engine's state
always follows the final member count regardless of how joins, leaves and
disconnects interleave.

A session occupies at most one room. Joining a different room first leaves
the current one; once leave() has returned the session receives nothing
further from the old room.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from loguru import logger

from broadcast_hub import BroadcastHub, Subscriber
from instruments import get_instrument
from price_engine import PriceEngine, PriceState
from protocol import build_price_snapshot, build_room_notice


class Member(Subscriber, Protocol):
    user_name: str


@dataclass
class RoomInfo:
    instrument: str
    members: int
    state: str
    price: Optional[float]
    history_length: int

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "members": self.members,
            "state": self.state,
            "price": self.price,
            "history_length": self.history_length,
        }


class RoomRegistry:
    def __init__(
        self,
        engine: PriceEngine,
        hub: BroadcastHub,
        *,
        default_base_price: int = 500,
    ) -> None:
        self._engine = engine
        self._hub = hub
        self._default_base_price = default_base_price
        self._room_of: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    # ── Operations ────────────────────────────────────────────────────────────

    async def join(self, member: Member, instrument: str) -> PriceState:
        """
        Subscribe member to instrument and send it the current snapshot.

        Returns the snapshot that was delivered to the joining session.
        """
        left_room: Optional[str] = None
        async with self._lock:
            current = self._room_of.get(member.session_id)
            rejoin = current == instrument
            if current is not None and not rejoin:
                self._remove_locked(member.session_id, current)
                left_room = current
            if not self._engine.is_running(instrument):
                base = get_instrument(instrument, self._default_base_price).base_price
                self._engine.start(instrument, base)
            self._hub.subscribe(instrument, member)
            self._room_of[member.session_id] = instrument
            snapshot = self._engine.snapshot(instrument)

        # snapshot goes out before any await, so no tick can overtake it
        await member.send(build_price_snapshot(snapshot))
        if left_room is not None:
            await self._hub.publish(
                left_room,
                build_room_notice(left_room, f"{member.user_name} left the room"),
                exclude=member.session_id,
            )
        if not rejoin:
            logger.info(f"{member.user_name} joined room {instrument}")
            await self._hub.publish(
                instrument,
                build_room_notice(instrument, f"{member.user_name} joined the room"),
                exclude=member.session_id,
            )
        return snapshot

    async def leave(self, member: Member, instrument: Optional[str] = None) -> Optional[str]:
        """
        Remove member from its current room. Returns the room left, or None.

        If instrument is given and is not the member's current room, nothing
        happens.
        """
        async with self._lock:
            current = self._room_of.get(member.session_id)
            if current is None:
                return None
            if instrument is not None and instrument != current:
                logger.debug(
                    f"{member.user_name} asked to leave {instrument} but is in {current}"
                )
                return None
            self._remove_locked(member.session_id, current)

        logger.info(f"{member.user_name} left room {current}")
        await self._hub.publish(
            current,
            build_room_notice(current, f"{member.user_name} left the room"),
            exclude=member.session_id,
        )
        return current

    def _remove_locked(self, session_id: str, instrument: str) -> None:
        self._hub.unsubscribe(instrument, session_id)
        self._room_of.pop(session_id, None)
        if self.member_count(instrument) == 0:
            self._engine.stop(instrument)

    # ── Queries ───────────────────────────────────────────────────────────────

    def room_of(self, session_id: str) -> Optional[str]:
        return self._room_of.get(session_id)

    def member_count(self, instrument: str) -> int:
        return self._hub.subscriber_count(instrument)

    def rooms(self) -> List[RoomInfo]:
        result = []
        for instrument in self._engine.active_instruments:
            state = self._engine.snapshot(instrument)
            result.append(RoomInfo(
                instrument=instrument,
                members=self.member_count(instrument),
                state=self._engine.run_state(instrument).value,
                price=state.price if state else None,
                history_length=len(state.history) if state else 0,
            ))
        return result
