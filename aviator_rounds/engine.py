# engine.py
"""
Aviator Round Engine – one round's state machine

Responsibilities:
- Strict State Machine (WAITING -> FLYING -> CRASHED)
- Bet book: one open bet per participant per round
- Crash-wins tie-break: the clock is advanced before any cash-out is honoured
- Auto cash-outs in ascending participant order
- Immutable outcome (history entry + credits) once the round has crashed

The state machine is synchronous and takes `now` explicitly. The caller
(RoundSupervisor) serialises every call behind one lock, so each method
runs as a single atomic step.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .clock import RoundClock
from .utils import quantize_down, utc_now

# =========================
# CONFIGURATION
# =========================

class GameConfig:
    # --- ROUND TIMING ---
    WAITING_DURATION_SEC = float(os.getenv("WAITING_DURATION_SEC", "5"))
    COOLDOWN_SEC = float(os.getenv("COOLDOWN_SEC", "3"))
    TICK_INTERVAL_SEC = float(os.getenv("TICK_INTERVAL_SEC", "0.1"))

    # --- MULTIPLIER CURVE ---
    # Linear: 1.00x at take-off, MAX_MULTIPLIER after FLIGHT_DURATION_SEC
    FLIGHT_DURATION_SEC = Decimal(os.getenv("FLIGHT_DURATION_SEC", "15"))
    MAX_MULTIPLIER = Decimal(os.getenv("MAX_MULTIPLIER", "10.00"))

    # --- FAIRNESS ---
    TARGET_RTP = Decimal(os.getenv("TARGET_RTP", "0.97"))
    FAIRNESS_SALT = os.getenv("FAIRNESS_SALT", "aviator-rounds")

    # --- BROADCAST ---
    HISTORY_SIZE = int(os.getenv("HISTORY_SIZE", "20"))
    SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "256"))

    # --- SETTLEMENT ---
    SETTLEMENT_ATTEMPTS = int(os.getenv("SETTLEMENT_ATTEMPTS", "5"))
    SETTLEMENT_BACKOFF_SEC = float(os.getenv("SETTLEMENT_BACKOFF_SEC", "0.5"))
    SETTLEMENT_BACKOFF_MAX_SEC = float(os.getenv("SETTLEMENT_BACKOFF_MAX_SEC", "8"))

# =========================
# ENUMS & EXCEPTIONS
# =========================

class GameState(str, Enum):
    WAITING = "WAITING"  # Accepting bets
    FLYING = "FLYING"    # Multiplier rising
    CRASHED = "CRASHED"  # Round ended


class RejectReason(str, Enum):
    WRONG_PHASE = "WRONG_PHASE"
    DUPLICATE_BET = "DUPLICATE_BET"
    NO_OPEN_BET = "NO_OPEN_BET"
    ALREADY_CASHED_OUT = "ALREADY_CASHED_OUT"
    INVALID_STAKE = "INVALID_STAKE"
    INVALID_AUTO_CASHOUT = "INVALID_AUTO_CASHOUT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_COMMAND = "INVALID_COMMAND"


class EngineError(Exception):
    """Base engine error"""


class CommandRejected(EngineError):
    """A player command that cannot be applied. User-correctable."""

    def __init__(self, reason: RejectReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail or reason.value
        super().__init__(f"{reason.value}: {self.detail}")

    def to_message(self) -> Dict[str, Any]:
        return {"type": "error", "reason": self.reason.value, "detail": self.detail}


class InvariantViolation(EngineError):
    """Clock or generator produced an impossible value. Fatal for the round."""

# =========================
# DOMAIN MODELS
# =========================

@dataclass(frozen=True)
class Bet:
    participant_id: str
    stake: Decimal
    auto_cashout: Optional[Decimal] = None
    placed_at: float = field(default_factory=time.time)

    # Outcome
    cashed_out: bool = False
    cashout_multiplier: Optional[Decimal] = None
    payout: Decimal = Decimal("0.00")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participantId": self.participant_id,
            "stake": float(self.stake),
            "autoCashOutThreshold": float(self.auto_cashout) if self.auto_cashout else None,
            "cashedOut": self.cashed_out,
            "multiplier": float(self.cashout_multiplier) if self.cashout_multiplier else None,
            "payout": float(self.payout),
        }


@dataclass
class GameRound:
    round_id: int
    crash_point: Decimal
    seed: str
    commitment: str

    created_at: datetime = field(default_factory=utc_now)
    flight_start_at: Optional[float] = None
    crashed_at: Optional[datetime] = None

    state: GameState = GameState.WAITING
    multiplier: Decimal = Decimal("1.00")
    voided: bool = False
    bets: Dict[str, Bet] = field(default_factory=dict)


@dataclass(frozen=True)
class RoundEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.type, **self.data}


@dataclass(frozen=True)
class Credit:
    """Money owed to a participant once the round is over."""
    participant_id: str
    amount: Decimal
    kind: str  # "win" | "refund"


@dataclass(frozen=True)
class RoundHistoryEntry:
    round_id: int
    crash_point: Decimal
    final_multiplier: Decimal
    crashed_at: datetime
    seed: str
    commitment: str
    voided: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roundId": self.round_id,
            "crashPoint": float(self.crash_point),
            "finalMultiplier": float(self.final_multiplier),
            "timestamp": self.crashed_at.isoformat(),
            "seed": self.seed,
            "commitment": self.commitment,
            "voided": self.voided,
        }


@dataclass(frozen=True)
class RoundOutcome:
    entry: RoundHistoryEntry
    credits: Tuple[Credit, ...]

# =========================
# STATE MACHINE
# =========================

class RoundStateMachine:
    """
    Owns one round's mutable state for its whole life.
    Every public method either applies completely or raises before
    touching anything.
    """

    def __init__(
        self,
        round_id: int,
        crash_point: Decimal,
        seed: str,
        commitment: str,
        clock: RoundClock,
    ) -> None:
        if crash_point < Decimal("1.00") or crash_point > clock.max_multiplier:
            raise InvariantViolation(
                f"Round {round_id}: crash point {crash_point} outside "
                f"[1.00, {clock.max_multiplier}]"
            )
        self.clock = clock
        self.round = GameRound(
            round_id=round_id,
            crash_point=crash_point,
            seed=seed,
            commitment=commitment,
        )
        self._events: List[RoundEvent] = []

    # ----- read side -----

    @property
    def round_id(self) -> int:
        return self.round.round_id

    @property
    def state(self) -> GameState:
        return self.round.state

    @property
    def multiplier(self) -> Decimal:
        return self.round.multiplier

    def get_bet(self, participant_id: str) -> Optional[Bet]:
        return self.round.bets.get(participant_id)

    def drain_events(self) -> List[RoundEvent]:
        events, self._events = self._events, []
        return events

    def snapshot(self) -> Dict[str, Any]:
        r = self.round
        data: Dict[str, Any] = {
            "id": r.round_id,
            "phase": r.state.value,
            "multiplier": float(r.multiplier),
            "commitment": r.commitment,
            "bets": [bet.to_dict() for _, bet in sorted(r.bets.items())],
        }
        # The crash point stays secret until it is reached
        if r.state == GameState.CRASHED:
            data["crashPoint"] = float(r.crash_point)
            data["seed"] = r.seed
            data["voided"] = r.voided
        return data

    # ----- bets -----

    def check_bet(
        self,
        participant_id: str,
        stake: Decimal,
        auto_cashout: Optional[Decimal] = None,
    ) -> None:
        """Validate a bet without applying it."""
        if self.round.state != GameState.WAITING:
            raise CommandRejected(
                RejectReason.WRONG_PHASE,
                f"Bets are closed (round {self.round_id} is {self.round.state.value})",
            )
        if not stake.is_finite() or stake <= 0:
            raise CommandRejected(RejectReason.INVALID_STAKE, "Stake must be positive")
        if stake != quantize_down(stake):
            raise CommandRejected(RejectReason.INVALID_STAKE, "Stake must be whole cents")
        if auto_cashout is not None and (not auto_cashout.is_finite() or auto_cashout <= 1):
            raise CommandRejected(
                RejectReason.INVALID_AUTO_CASHOUT,
                "Auto cash-out threshold must be above 1.00x",
            )
        if participant_id in self.round.bets:
            raise CommandRejected(RejectReason.DUPLICATE_BET, "Already holding a bet this round")

    def place_bet(
        self,
        participant_id: str,
        stake: Decimal,
        auto_cashout: Optional[Decimal] = None,
    ) -> Bet:
        self.check_bet(participant_id, stake, auto_cashout)
        bet = Bet(participant_id=participant_id, stake=stake, auto_cashout=auto_cashout)
        self.round.bets[participant_id] = bet
        self._events.append(RoundEvent("betPlaced", {
            "roundId": self.round_id,
            "participantId": participant_id,
            "stake": float(stake),
        }))
        return bet

    # ----- lifecycle -----

    def start_flight(self, now: float) -> None:
        """WAITING -> FLYING. Bets close at this instant."""
        if self.round.state != GameState.WAITING:
            raise InvariantViolation(
                f"Round {self.round_id}: take-off from {self.round.state.value}"
            )
        self.round.state = GameState.FLYING
        self.round.flight_start_at = now
        self._events.append(RoundEvent("flying", {"roundId": self.round_id}))

    def tick(self, now: float) -> Decimal:
        """
        Periodic step: recompute, crash check, auto cash-outs, publish.
        Returns the multiplier after the step.
        """
        if self.round.state != GameState.FLYING:
            return self.round.multiplier
        self._advance(now)
        if self.round.state == GameState.FLYING:
            self._events.append(RoundEvent("tick", {"multiplier": float(self.round.multiplier)}))
        return self.round.multiplier

    def _advance(self, now: float) -> None:
        r = self.round
        current = self.clock.multiplier(r.flight_start_at, now)
        if current < r.multiplier:
            raise InvariantViolation(
                f"Round {r.round_id}: multiplier went back from {r.multiplier} to {current}"
            )

        # Crash is evaluated before any cash-out at the same instant
        if current >= r.crash_point:
            r.multiplier = r.crash_point
            r.state = GameState.CRASHED
            r.crashed_at = utc_now()
            self._events.append(RoundEvent("crashed", {
                "roundId": r.round_id,
                "crashPoint": float(r.crash_point),
                "seed": r.seed,
            }))
            return

        r.multiplier = current
        for participant_id in sorted(r.bets):
            bet = r.bets[participant_id]
            if bet.cashed_out or bet.auto_cashout is None:
                continue
            if bet.auto_cashout <= current:
                self._apply_cash_out(bet)

    def cash_out(self, participant_id: str, now: float) -> Bet:
        if self.round.state == GameState.FLYING:
            self._advance(now)
        if self.round.state != GameState.FLYING:
            raise CommandRejected(
                RejectReason.WRONG_PHASE,
                f"Round {self.round_id} is {self.round.state.value}",
            )

        bet = self.round.bets.get(participant_id)
        if bet is None:
            raise CommandRejected(RejectReason.NO_OPEN_BET, "No bet this round")
        if bet.cashed_out:
            raise CommandRejected(
                RejectReason.ALREADY_CASHED_OUT,
                f"Cashed out at {bet.cashout_multiplier}x",
            )
        return self._apply_cash_out(bet)

    def _apply_cash_out(self, bet: Bet) -> Bet:
        multiplier = self.round.multiplier
        settled = replace(
            bet,
            cashed_out=True,
            cashout_multiplier=multiplier,
            payout=quantize_down(bet.stake * multiplier),
        )
        self.round.bets[bet.participant_id] = settled
        self._events.append(RoundEvent("cashedOut", {
            "roundId": self.round_id,
            "participantId": settled.participant_id,
            "multiplier": float(multiplier),
            "payout": float(settled.payout),
        }))
        return settled

    def abort(self, reason: str) -> None:
        """End the round voided. Every stake is refunded at settlement."""
        r = self.round
        r.state = GameState.CRASHED
        r.voided = True
        r.crashed_at = r.crashed_at or utc_now()
        self._events.append(RoundEvent("roundVoided", {
            "roundId": r.round_id,
            "reason": reason,
        }))

    # ----- settlement -----

    def outcome(self) -> RoundOutcome:
        r = self.round
        if r.state != GameState.CRASHED:
            raise InvariantViolation(f"Round {r.round_id}: outcome requested while {r.state.value}")

        if r.voided:
            credits = tuple(
                Credit(pid, bet.stake, "refund") for pid, bet in sorted(r.bets.items())
            )
        else:
            credits = tuple(
                Credit(pid, bet.payout, "win")
                for pid, bet in sorted(r.bets.items())
                if bet.cashed_out
            )

        entry = RoundHistoryEntry(
            round_id=r.round_id,
            crash_point=r.crash_point,
            final_multiplier=r.multiplier,
            crashed_at=r.crashed_at,
            seed=r.seed,
            commitment=r.commitment,
            voided=r.voided,
        )
        return RoundOutcome(entry=entry, credits=credits)
