"""
FastAPI trading room server.

WebSocket Endpoint:
  WS /ws            — identity on connect, then join/leave/order messages

HTTP Endpoints:
  GET /health       — liveness, session and room counts
  GET /rooms        — active rooms with member count and current price
  GET /instruments  — built-in instrument catalog

TradingRoomServer owns every piece of shared state: the broadcast hub, the
price engine, the room registry, the wallet ledger and the live sessions.
Nothing lives at module level except the default app instance.

Run standalone:
    cd stockroom/
    uvicorn server:app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import random
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from broadcast_hub import BroadcastHub
from config import ServerConfig
from instruments import list_instruments
from price_engine import PriceEngine, PriceUpdated
from protocol import build_price_updated
from room_registry import RoomRegistry
from session import ConnectionSession, generate_session_id, pick_display_name
from wallet_ledger import WalletLedger


# ─── Coordinator ──────────────────────────────────────────────────────────────


class TradingRoomServer:
    """Single owner of rooms, price feeds, wallets and sessions."""

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or ServerConfig()
        self._rng = rng or random.Random()
        self._started_at = time.time()

        self.hub = BroadcastHub(send_timeout=self.config.send_timeout)
        self.engine = PriceEngine(
            self._on_tick,
            tick_interval=self.config.tick_interval,
            max_delta=self.config.max_price_delta,
            min_price=self.config.min_price,
            history_limit=self.config.history_limit,
            rng=self._rng,
        )
        self.registry = RoomRegistry(
            self.engine,
            self.hub,
            default_base_price=self.config.default_base_price,
        )
        self.ledger = WalletLedger(
            min_balance=self.config.min_balance,
            max_balance=self.config.max_balance,
            rng=self._rng,
        )
        self.sessions: Dict[str, ConnectionSession] = {}

    async def _on_tick(self, event: PriceUpdated) -> None:
        await self.hub.publish(event.instrument, build_price_updated(event))

    # ── Session lifecycle ─────────────────────────────────────────────────────

    def open_session(self, transport) -> ConnectionSession:
        session_id = generate_session_id()
        user_name = pick_display_name(self._rng)
        wallet = self.ledger.open_wallet(session_id)
        session = ConnectionSession(self, transport, session_id, user_name, wallet)
        self.sessions[session_id] = session
        logger.info(f"User {user_name} ({session_id}) connected")
        return session

    async def close_session(self, session: ConnectionSession) -> None:
        await session.close()
        self.sessions.pop(session.session_id, None)
        self.ledger.close_wallet(session.session_id)
        logger.info(f"User {session.user_name} ({session.session_id}) disconnected")

    async def handle_connection(self, websocket: WebSocket) -> None:
        await websocket.accept()
        session = self.open_session(websocket)
        try:
            await session.greet()
            while True:
                raw = await websocket.receive_text()
                await session.handle(raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning(f"WS error for {session.session_id}: {e}")
        finally:
            await self.close_session(session)

    async def shutdown(self) -> None:
        await self.engine.shutdown()

    # ── Status ────────────────────────────────────────────────────────────────

    def health(self) -> dict:
        return {
            "status": "ok",
            "uptime_seconds": round(time.time() - self._started_at, 2),
            "sessions": len(self.sessions),
            "rooms": len(self.engine.active_instruments),
            "broadcast": self.hub.stats(),
        }

    def rooms(self) -> dict:
        rooms = [r.to_dict() for r in self.registry.rooms()]
        return {"rooms": rooms, "count": len(rooms)}


# ─── App ──────────────────────────────────────────────────────────────────────


def create_app(config: Optional[ServerConfig] = None, rng: Optional[random.Random] = None) -> FastAPI:
    trading = TradingRoomServer(config, rng)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await trading.shutdown()

    app = FastAPI(
        title="Stock Room Trading Server",
        description="Room-scoped live price feeds and simulated order settlement",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.trading = trading

    @app.get("/health")
    async def health() -> dict:
        return trading.health()

    @app.get("/rooms")
    async def rooms() -> dict:
        return trading.rooms()

    @app.get("/instruments")
    async def instruments() -> dict:
        return {"instruments": list_instruments()}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await trading.handle_connection(websocket)

    return app


app = create_app(ServerConfig.from_env())
