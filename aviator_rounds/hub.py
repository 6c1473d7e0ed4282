# hub.py
"""
Broadcast hub: round events out, player commands in.

Each connection holds a Subscription with its own bounded queue. Publishing
is synchronous, so every subscriber sees events in the order the engine
produced them. A new subscription is primed with a full snapshot before it
is registered; no tick can slip in between.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Protocol, Set, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .engine import Bet, CommandRejected, RejectReason

logger = logging.getLogger("aviator.hub")

# =====================================================
# INBOUND MESSAGES (Pydantic)
# =====================================================

class PlaceBetMessage(BaseModel):
    type: Literal["placeBet"]
    # Sign is checked by the engine so it can answer INVALID_STAKE
    stake: Decimal = Field(..., decimal_places=2)
    autoCashOutThreshold: Optional[Decimal] = None


class CashOutMessage(BaseModel):
    type: Literal["cashOut"]


InboundMessage = Annotated[
    Union[PlaceBetMessage, CashOutMessage],
    Field(discriminator="type"),
]

_inbound = TypeAdapter(InboundMessage)


class CommandRouter(Protocol):
    def snapshot(self) -> Dict[str, Any]: ...

    async def place_bet(
        self, participant_id: str, stake: Decimal, auto_cashout: Optional[Decimal] = None,
    ) -> Bet: ...

    async def cash_out(self, participant_id: str) -> Bet: ...

# =====================================================
# SUBSCRIPTIONS
# =====================================================

class Subscription:

    def __init__(self, hub: "BroadcastHub", participant_id: Optional[str], maxsize: int) -> None:
        self.hub = hub
        self.participant_id = participant_id
        self.resyncs = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self) -> Dict[str, Any]:
        return await self._queue.get()

    def get_nowait(self) -> Dict[str, Any]:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def push(self, message: Dict[str, Any]) -> None:
        """Queue a message; an overflowing subscriber restarts from a snapshot."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._resync()

    def reply(self, message: Dict[str, Any]) -> None:
        """Answer to this connection's own command. Queued after a resync, never dropped."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._resync()
            self._queue.put_nowait(message)

    def _resync(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self.resyncs += 1
        logger.warning(
            f"Subscriber {self.participant_id or 'anonymous'} fell behind; resending snapshot"
        )
        self._queue.put_nowait(self.hub.snapshot_message())

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.hub._unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()

# =====================================================
# HUB
# =====================================================

class BroadcastHub:

    def __init__(self, queue_size: int = 256) -> None:
        if queue_size < 2:
            raise ValueError("queue_size must be >= 2")
        self.queue_size = queue_size
        self._subscriptions: Set[Subscription] = set()
        self._router: Optional[CommandRouter] = None

    def bind(self, router: CommandRouter) -> None:
        self._router = router

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def snapshot_message(self) -> Dict[str, Any]:
        if self._router is None:
            return {"type": "snapshot", "round": None, "history": []}
        return {"type": "snapshot", **self._router.snapshot()}

    def subscribe(self, participant_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, participant_id, self.queue_size)
        subscription.push(self.snapshot_message())
        self._subscriptions.add(subscription)
        logger.debug(f"Subscribed {participant_id or 'anonymous'} ({self.subscriber_count} total)")
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)
        logger.debug(
            f"Unsubscribed {subscription.participant_id or 'anonymous'} "
            f"({self.subscriber_count} total)"
        )

    def publish(self, message: Dict[str, Any]) -> None:
        for subscription in list(self._subscriptions):
            subscription.push(message)

    # ----- inbound -----

    async def dispatch(self, participant_id: Optional[str], raw: Any) -> Dict[str, Any]:
        """
        Validate and route one inbound command.
        Always answers; rejections come back as error messages.
        """
        try:
            message = _inbound.validate_python(raw)
        except ValidationError as e:
            return CommandRejected(
                RejectReason.INVALID_COMMAND, _first_error(e),
            ).to_message()

        if participant_id is None:
            return CommandRejected(
                RejectReason.UNAUTHENTICATED, "Connect with a participant identity to play",
            ).to_message()
        if self._router is None:
            return CommandRejected(RejectReason.WRONG_PHASE, "No round running").to_message()

        try:
            if isinstance(message, PlaceBetMessage):
                bet = await self._router.place_bet(
                    participant_id, message.stake, message.autoCashOutThreshold,
                )
                return {"type": "betAccepted", "bet": bet.to_dict()}

            bet = await self._router.cash_out(participant_id)
            return {
                "type": "cashOutAccepted",
                "multiplier": float(bet.cashout_multiplier),
                "payout": float(bet.payout),
            }
        except CommandRejected as e:
            logger.debug(f"Rejected {message.type} from {participant_id}: {e}")
            return e.to_message()


def _first_error(error: ValidationError) -> str:
    errors = error.errors()
    if not errors:
        return "Malformed command"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
