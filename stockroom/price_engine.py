"""
Per-instrument synthetic price feed.

Each active instrument runs a bounded random walk on its own asyncio task:

    new_price = max(min_price, price + randint(-max_delta, max_delta))

Every tick appends {price, timestamp} to a FIFO history capped at
history_limit points and emits a PriceUpdated event to the engine's sink.

The walk step itself is the pure function advance(), shared with the client's
offline fallback simulator so both produce identical ticks from the same
random source.

Usage:
    engine = PriceEngine(sink=on_tick, tick_interval=5.0)
    engine.start("TCS", base_price=500)
    snap = engine.snapshot("TCS")
    engine.stop("TCS")
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger


# ─── Constants ────────────────────────────────────────────────────────────────

TICK_INTERVAL = 5.0
MAX_PRICE_DELTA = 500
MIN_PRICE = 1
HISTORY_LIMIT = 100


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PricePoint:
    price: float
    timestamp: str

    def to_dict(self) -> dict:
        return {"price": self.price, "timestamp": self.timestamp}


@dataclass(frozen=True)
class PriceState:
    """Current price plus chronological history. Replaced, never mutated."""
    instrument: str
    price: float
    history: Tuple[PricePoint, ...] = ()

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "price": self.price,
            "history": [p.to_dict() for p in self.history],
        }


@dataclass(frozen=True)
class PriceUpdated:
    """One tick for one instrument."""
    instrument: str
    previous_price: float
    price: float
    delta: float
    percent_change: float
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "previous_price": self.previous_price,
            "price": self.price,
            "delta": self.delta,
            "percent_change": self.percent_change,
            "timestamp": self.timestamp,
        }


class RunState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


# ─── Pure walk step ───────────────────────────────────────────────────────────


def advance(
    state: PriceState,
    rng: random.Random,
    *,
    max_delta: int = MAX_PRICE_DELTA,
    min_price: int = MIN_PRICE,
    history_limit: int = HISTORY_LIMIT,
    timestamp: Optional[str] = None,
) -> Tuple[PriceState, PriceUpdated]:
    """
    Compute the next tick without side effects.

    Returns the new PriceState and the PriceUpdated event describing the move.
    percent_change is relative to the previous price; the min_price floor keeps
    the divisor positive, so moves near the floor can produce large swings.
    """
    ts = timestamp or _now_iso()
    previous = state.price
    step = rng.randint(-max_delta, max_delta)
    new_price = max(min_price, previous + step)
    percent = (new_price - previous) / previous * 100 if previous else 0.0

    history: List[PricePoint] = list(state.history)
    history.append(PricePoint(new_price, ts))
    if len(history) > history_limit:
        history = history[len(history) - history_limit:]

    new_state = PriceState(state.instrument, new_price, tuple(history))
    event = PriceUpdated(
        instrument=state.instrument,
        previous_price=previous,
        price=new_price,
        delta=new_price - previous,
        percent_change=percent,
        timestamp=ts,
    )
    return new_state, event


# ─── Engine ───────────────────────────────────────────────────────────────────

TickSink = Callable[[PriceUpdated], Awaitable[None]]


@dataclass
class _Runner:
    state: PriceState
    task: Optional[asyncio.Task] = None
    ticks: int = 0


class PriceEngine:
    """
    Owns one PriceState and one periodic task per active instrument.

    start() and stop() are idempotent and synchronous; callers that need them
    to track membership (RoomRegistry) invoke them under their own lock.
    """

    def __init__(
        self,
        sink: Optional[TickSink] = None,
        *,
        tick_interval: float = TICK_INTERVAL,
        max_delta: int = MAX_PRICE_DELTA,
        min_price: int = MIN_PRICE,
        history_limit: int = HISTORY_LIMIT,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._sink = sink
        self._tick_interval = tick_interval
        self._max_delta = max_delta
        self._min_price = min_price
        self._history_limit = history_limit
        self._rng = rng or random.Random()
        self._runners: Dict[str, _Runner] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self, instrument: str, base_price: float) -> bool:
        """Begin ticking an instrument. Returns False if it was already running."""
        if instrument in self._runners:
            return False
        runner = _Runner(state=PriceState(instrument, max(self._min_price, base_price)))
        self._runners[instrument] = runner
        runner.task = asyncio.get_running_loop().create_task(
            self._run(instrument, runner), name=f"price-{instrument}"
        )
        logger.info(f"Started price feed for {instrument} at {runner.state.price}")
        return True

    def stop(self, instrument: str) -> bool:
        """Cancel an instrument's timer and drop its state. No-op if not running."""
        runner = self._runners.pop(instrument, None)
        if runner is None:
            return False
        if runner.task is not None:
            runner.task.cancel()
        logger.info(f"Stopped price feed for {instrument} after {runner.ticks} ticks")
        return True

    async def shutdown(self) -> None:
        tasks = [r.task for r in self._runners.values() if r.task is not None]
        self._runners.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Ticking ───────────────────────────────────────────────────────────────

    def tick(self, instrument: str) -> Optional[PriceUpdated]:
        """Advance one step synchronously. Returns None if the instrument is idle."""
        runner = self._runners.get(instrument)
        if runner is None:
            return None
        runner.state, event = advance(
            runner.state,
            self._rng,
            max_delta=self._max_delta,
            min_price=self._min_price,
            history_limit=self._history_limit,
        )
        runner.ticks += 1
        return event

    async def _run(self, instrument: str, runner: _Runner) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            if self._runners.get(instrument) is not runner:
                return
            event = self.tick(instrument)
            if event is None or self._sink is None:
                continue
            try:
                await self._sink(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Tick delivery failed for {instrument}: {exc}")

    # ── Queries ───────────────────────────────────────────────────────────────

    def snapshot(self, instrument: str) -> Optional[PriceState]:
        runner = self._runners.get(instrument)
        return runner.state if runner else None

    def run_state(self, instrument: str) -> RunState:
        return RunState.RUNNING if instrument in self._runners else RunState.STOPPED

    def is_running(self, instrument: str) -> bool:
        return instrument in self._runners

    @property
    def active_instruments(self) -> List[str]:
        return list(self._runners)

    @property
    def tick_interval(self) -> float:
        return self._tick_interval
