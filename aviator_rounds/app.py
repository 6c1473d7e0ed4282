# app.py
"""
Aviator Rounds – Service Entry Point

Responsibilities:
- FastAPI HTTP + WebSocket server
- Request Validation (Pydantic)
- Wiring: BroadcastHub <-> RoundSupervisor <-> ledger / history
- Engine errors -> JSON error bodies

The participant identity is whatever the auth layer in front of this
service hands over (`user_id`); nothing here authenticates.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, Optional, Type

from fastapi import (
    APIRouter,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .db import SqlBalanceLedger, SqlRoundHistory, init_db
from .engine import CommandRejected, GameConfig, RejectReason
from .hub import BroadcastHub, Subscription
from .supervisor import RoundSupervisor

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("aviator.app")

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class UserInitRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)

class BetRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    auto_cashout: Optional[Decimal] = Field(None, gt=1)

class CashoutRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)

# =====================================================
# ROUTES
# =====================================================

router = APIRouter()


def _supervisor(request: Request) -> RoundSupervisor:
    return request.app.state.supervisor


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    supervisor = _supervisor(request)
    return {
        "status": "healthy" if supervisor.running else "starting",
        "subscribers": request.app.state.hub.subscriber_count,
    }


@router.get("/api/state")
async def api_state(request: Request) -> Dict[str, Any]:
    """
    Snapshot of the current round plus recent results.
    Same payload a WebSocket client receives on connect.
    """
    return _supervisor(request).snapshot()


@router.get("/api/history")
async def api_history(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
) -> Dict[str, Any]:
    entries = await request.app.state.history.recent(limit)
    return {"items": [entry.to_dict() for entry in entries]}


@router.get("/api/rounds/{round_id}/verify")
async def api_verify_round(request: Request, round_id: int) -> Dict[str, Any]:
    """
    Provably fair check: the revealed seed must hash to the published
    commitment and reproduce the recorded crash point.
    """
    entry = await request.app.state.history.get(round_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Round {round_id} not found")
    generator = _supervisor(request).generator
    return {
        **entry.to_dict(),
        "recomputedCrashPoint": float(generator.generate(entry.seed)),
        "verified": generator.verify(entry.seed, entry.commitment, entry.crash_point),
    }


@router.post("/api/init")
async def api_init(request: Request, payload: UserInitRequest) -> Dict[str, Any]:
    """
    Fetch (or open) the participant's account.
    """
    balance = await request.app.state.ledger.balance(payload.user_id)
    return {
        "user_id": payload.user_id,
        "balance": float(balance),
    }


@router.post("/api/place-bet")
async def api_place_bet(request: Request, payload: BetRequest) -> Dict[str, Any]:
    """
    Same saga as the WebSocket command: reserve, commit, refund on reject.
    """
    supervisor = _supervisor(request)
    bet = await supervisor.place_bet(payload.user_id, payload.amount, payload.auto_cashout)
    return {
        "status": "accepted",
        "round_id": supervisor.current_round.round_id,
        "bet": bet.to_dict(),
    }


@router.post("/api/cashout")
async def api_cashout(request: Request, payload: CashoutRequest) -> Dict[str, Any]:
    """
    Engine is the authority on the multiplier; the client sends no price.
    Payout is credited when the round settles.
    """
    bet = await _supervisor(request).cash_out(payload.user_id)
    return {
        "status": "cashed_out",
        "multiplier": float(bet.cashout_multiplier),
        "payout": float(bet.payout),
    }

# =====================================================
# WEBSOCKET
# =====================================================

def resolve_participant(websocket: WebSocket) -> Optional[str]:
    """Identity supplied by the auth collaborator; absent means watch-only."""
    user_id = (websocket.query_params.get("user_id") or "").strip()
    return user_id or None


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    """Single writer per socket: events and command replies share one queue."""
    try:
        while True:
            message = await subscription.get()
            await websocket.send_json(message)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug(f"Stopped sending to {subscription.participant_id or 'anonymous'}: {e}")


@router.websocket("/ws")
async def ws_stream(websocket: WebSocket) -> None:
    hub: BroadcastHub = websocket.app.state.hub
    await websocket.accept()
    participant_id = resolve_participant(websocket)

    async with hub.subscribe(participant_id) as subscription:
        sender = asyncio.create_task(_pump(websocket, subscription))
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    raw = json.loads(text)
                except json.JSONDecodeError:
                    raw = None
                subscription.reply(await hub.dispatch(participant_id, raw))
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender

# =====================================================
# ERROR HANDLERS
# =====================================================

_REJECT_STATUS = {
    RejectReason.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    RejectReason.INVALID_STAKE: status.HTTP_400_BAD_REQUEST,
    RejectReason.INVALID_AUTO_CASHOUT: status.HTTP_400_BAD_REQUEST,
    RejectReason.INVALID_COMMAND: status.HTTP_400_BAD_REQUEST,
    RejectReason.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
}


async def command_rejected_handler(_, exc: CommandRejected):
    return JSONResponse(
        status_code=_REJECT_STATUS.get(exc.reason, status.HTTP_409_CONFLICT),
        content={"error": "Command Rejected", "reason": exc.reason.value, "detail": exc.detail},
    )

# =====================================================
# APP FACTORY
# =====================================================

def create_app(
    config: Type[GameConfig] = GameConfig,
    ledger=None,
    history=None,
) -> FastAPI:
    init_storage = ledger is None or history is None
    ledger = ledger or SqlBalanceLedger()
    history = history or SqlRoundHistory()
    hub = BroadcastHub(queue_size=config.SUBSCRIBER_QUEUE_SIZE)
    supervisor = RoundSupervisor(hub, ledger, history, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manages startup and shutdown events.
        """
        if init_storage:
            logger.info("Startup: Initializing Database...")
            await init_db()

        logger.info("Startup: Starting round loop...")
        await supervisor.start()

        yield

        logger.info("Shutdown: Stopping round loop...")
        await supervisor.stop()

    app = FastAPI(
        title="Aviator Rounds API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.hub = hub
    app.state.supervisor = supervisor
    app.state.ledger = ledger
    app.state.history = history

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CommandRejected, command_rejected_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
