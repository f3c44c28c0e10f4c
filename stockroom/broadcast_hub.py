"""
Topic-based fan-out for room events.

Each topic (one per instrument) holds a set of subscribers keyed by session
id. publish() delivers to every current member except an optional excluded
session. Delivery is failure-isolated: a closed socket on one subscriber is
logged and skipped, the rest of the room still receives the event.

Deliveries run concurrently and each is bounded by send_timeout; a stalled
transport costs the publisher at most that long and never holds up its
siblings. Membership is re-checked when each delivery starts, so a
subscriber removed before its turn receives nothing.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol

from loguru import logger


class Subscriber(Protocol):
    session_id: str

    async def send(self, message: dict) -> None: ...


SEND_TIMEOUT = 5.0


class BroadcastHub:
    """Per-topic subscriber sets with exclusion-aware publishing."""

    def __init__(self, send_timeout: float = SEND_TIMEOUT) -> None:
        self._topics: Dict[str, Dict[str, Subscriber]] = {}
        self._send_timeout = send_timeout
        self._delivered: int = 0
        self._failed: int = 0

    # ── Membership ────────────────────────────────────────────────────────────

    def subscribe(self, topic: str, subscriber: Subscriber) -> None:
        self._topics.setdefault(topic, {})[subscriber.session_id] = subscriber

    def unsubscribe(self, topic: str, session_id: str) -> bool:
        """Remove a subscriber. Returns True if it was a member."""
        members = self._topics.get(topic)
        if not members or session_id not in members:
            return False
        del members[session_id]
        if not members:
            del self._topics[topic]
        return True

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, {}))

    # ── Delivery ──────────────────────────────────────────────────────────────

    async def publish(
        self,
        topic: str,
        message: dict,
        exclude: Optional[str] = None,
    ) -> int:
        """Send message to every member of topic except exclude. Returns deliveries."""
        targets = [
            (session_id, subscriber)
            for session_id, subscriber in self._topics.get(topic, {}).items()
            if session_id != exclude
        ]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._deliver(topic, sid, sub, message) for sid, sub in targets)
        )
        delivered = sum(results)
        self._delivered += delivered
        return delivered

    async def _deliver(self, topic: str, session_id: str, subscriber: Subscriber, message: dict) -> bool:
        current = self._topics.get(topic)
        if current is None or current.get(session_id) is not subscriber:
            return False
        try:
            await asyncio.wait_for(subscriber.send(message), timeout=self._send_timeout)
            return True
        except asyncio.TimeoutError:
            self._failed += 1
            logger.warning(
                f"Delivery of {message.get('type')} to {session_id} in {topic} "
                f"timed out after {self._send_timeout}s"
            )
        except Exception as exc:
            self._failed += 1
            logger.warning(
                f"Delivery of {message.get('type')} to {session_id} in {topic} failed: {exc}"
            )
        return False

    def stats(self) -> Dict[str, Any]:
        return {
            "topics": len(self._topics),
            "delivered": self._delivered,
            "failed": self._failed,
        }
