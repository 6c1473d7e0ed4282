# supervisor.py
"""
Round Supervisor – sequences rounds end to end

Responsibilities:
- Exactly one current round; the next replaces it only after the
  previous one crashed, was recorded and settled, and cooled down
- Single writer: ticks and player commands mutate the round under one lock
- Saga for bets: reserve stake -> commit bet -> refund if the commit fails
- Outcome is persisted before the ledger is paid; unpaid credits are
  replayed before every new round
- Invariant violations void the round and the loop carries on

Collaborators (duck-typed):
- ledger:  reserve(participant_id, amount, round_id=None) -> bool
           settle(participant_id, delta, round_id=None, key=None, refund=False)
- history: append(outcome), recent(limit), last_round_id(),
           pending_settlements(), mark_settled(round_id, participant_id)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional, Type

from .clock import RoundClock
from .engine import (
    Bet,
    CommandRejected,
    Credit,
    GameConfig,
    GameState,
    InvariantViolation,
    RejectReason,
    RoundHistoryEntry,
    RoundOutcome,
    RoundStateMachine,
)
from .fairness import CrashPointGenerator, commitment, new_seed
from .hub import BroadcastHub
from .utils import format_multiplier, retry_with_backoff, to_decimal

logger = logging.getLogger("aviator.supervisor")


class RoundSupervisor:

    def __init__(
        self,
        hub: BroadcastHub,
        ledger,
        history,
        config: Type[GameConfig] = GameConfig,
        generator: Optional[CrashPointGenerator] = None,
        clock: Callable[[], float] = time.monotonic,
        seed_factory: Callable[[], str] = new_seed,
    ) -> None:
        self.hub = hub
        self.ledger = ledger
        self.history = history
        self.config = config
        self.generator = generator or CrashPointGenerator.from_config(config)
        self.round_clock = RoundClock.from_config(config)
        self.now = clock
        self.seed_factory = seed_factory

        self._lock = asyncio.Lock()
        self._round: Optional[RoundStateMachine] = None
        self._recent: Deque[RoundHistoryEntry] = deque(maxlen=config.HISTORY_SIZE)
        self._unrecorded: List[RoundOutcome] = []
        self._next_round_id = 1
        self._task: Optional[asyncio.Task] = None
        self._running = False

        hub.bind(self)

    # =====================================================
    # READ SIDE
    # =====================================================

    @property
    def current_round(self) -> Optional[RoundStateMachine]:
        return self._round

    @property
    def running(self) -> bool:
        return self._running

    def recent_history(self) -> List[RoundHistoryEntry]:
        return list(self._recent)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "round": self._round.snapshot() if self._round else None,
            "history": [entry.to_dict() for entry in self._recent],
        }

    # =====================================================
    # LIFECYCLE
    # =====================================================

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        await self.prepare()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def prepare(self) -> None:
        """Resume round numbering and prime the recent-results feed."""
        self._next_round_id = await self.history.last_round_id() + 1
        recent = await self.history.recent(self.config.HISTORY_SIZE)
        self._recent.clear()
        # Stored newest first; the deque is newest first too
        self._recent.extend(recent)

    async def run(self) -> None:
        if self._running:
            raise RuntimeError("RoundSupervisor is already running")
        self._running = True
        logger.info("Round loop started")
        try:
            while self._running:
                try:
                    await self.play_round()
                except InvariantViolation:
                    # Already alerted; no round was opened
                    pass
                except Exception as e:
                    logger.error(f"Round loop error: {e}", exc_info=True)
                await asyncio.sleep(self.config.COOLDOWN_SEC)
        finally:
            self._running = False
            logger.info("Round loop stopped")

    async def play_round(self) -> RoundOutcome:
        """One full cycle: WAITING -> FLYING -> CRASHED -> recorded -> settled."""
        await self.replay_pending_settlements()

        sm = await self._open_round()
        try:
            await asyncio.sleep(self.config.WAITING_DURATION_SEC)
            async with self._lock:
                sm.start_flight(self.now())
                self._flush(sm)

            while sm.state == GameState.FLYING:
                tick_started = self.now()
                async with self._lock:
                    sm.tick(self.now())
                    self._flush(sm)
                if sm.state == GameState.FLYING:
                    await asyncio.sleep(
                        self.round_clock.next_tick_delay(tick_started, self.now())
                    )
        except InvariantViolation as e:
            logger.critical(f"ALERT round {sm.round_id} aborted: {e}")
            async with self._lock:
                sm.abort(str(e))
                self._flush(sm)
        except asyncio.CancelledError:
            # Stakes are already debited; the voided round refunds them
            if sm.state != GameState.CRASHED:
                logger.warning(f"Round {sm.round_id} interrupted by shutdown; voiding")
                sm.abort("shutdown")
                self._flush(sm)
            await self._finish_round_uninterrupted(sm.outcome())
            raise

        outcome = sm.outcome()
        await self._finish_round_uninterrupted(outcome)
        return outcome

    async def _open_round(self) -> RoundStateMachine:
        seed = self.seed_factory()
        crash_point = self.generator.generate(seed)
        round_id = self._next_round_id
        self._next_round_id += 1

        async with self._lock:
            try:
                sm = RoundStateMachine(
                    round_id=round_id,
                    crash_point=crash_point,
                    seed=seed,
                    commitment=commitment(seed),
                    clock=self.round_clock,
                )
            except InvariantViolation as e:
                logger.critical(f"ALERT generator produced an invalid round: {e}")
                raise
            self._round = sm
            self.hub.publish({"type": "roundStarted", "round": sm.snapshot()})

        logger.info(f"Round {round_id} open for bets (commitment {sm.round.commitment[:12]}…)")
        return sm

    async def _finish_round_uninterrupted(self, outcome: RoundOutcome) -> None:
        """Record and settle even if the loop is cancelled meanwhile."""
        finishing = asyncio.ensure_future(self._finish_round(outcome))
        try:
            await asyncio.shield(finishing)
        except asyncio.CancelledError:
            await finishing
            raise

    async def _finish_round(self, outcome: RoundOutcome) -> None:
        entry = outcome.entry
        logger.info(
            f"Round {entry.round_id} {'voided' if entry.voided else 'crashed'} at "
            f"{format_multiplier(entry.final_multiplier)}; {len(outcome.credits)} credit(s) owed"
        )

        self._recent.appendleft(entry)
        if await self._record(outcome):
            for credit in outcome.credits:
                await self._settle_credit(entry.round_id, credit)

    async def _record(self, outcome: RoundOutcome) -> bool:
        """Persist the outcome. Nothing is paid until this succeeds."""
        try:
            await retry_with_backoff(
                lambda: self.history.append(outcome),
                attempts=self.config.SETTLEMENT_ATTEMPTS,
                base_delay=self.config.SETTLEMENT_BACKOFF_SEC,
                max_delay=self.config.SETTLEMENT_BACKOFF_MAX_SEC,
                description=f"Recording round {outcome.entry.round_id}",
            )
        except Exception as e:
            logger.error(f"Round {outcome.entry.round_id} kept in memory until storage is back: {e}")
            self._unrecorded.append(outcome)
            return False
        return True

    # =====================================================
    # SETTLEMENT
    # =====================================================

    async def _settle_credit(self, round_id: int, credit: Credit) -> bool:
        key = f"{credit.kind}:{round_id}:{credit.participant_id}"

        async def pay() -> None:
            await self.ledger.settle(
                credit.participant_id,
                credit.amount,
                round_id=round_id,
                key=key,
                refund=credit.kind == "refund",
            )
            await self.history.mark_settled(round_id, credit.participant_id)

        try:
            await retry_with_backoff(
                pay,
                attempts=self.config.SETTLEMENT_ATTEMPTS,
                base_delay=self.config.SETTLEMENT_BACKOFF_SEC,
                max_delay=self.config.SETTLEMENT_BACKOFF_MAX_SEC,
                description=f"Settling {key}",
            )
        except Exception as e:
            # Left pending in the history store; replayed before the next round
            logger.error(f"Settlement {key} deferred: {e}")
            return False
        return True

    async def replay_pending_settlements(self) -> int:
        """Pay credits from earlier rounds that the ledger never acknowledged."""
        unrecorded, self._unrecorded = self._unrecorded, []
        for outcome in unrecorded:
            await self._record(outcome)

        try:
            pending = await self.history.pending_settlements()
        except Exception as e:
            logger.error(f"Could not load pending settlements: {e}")
            return 0
        settled = 0
        for round_id, credit in pending:
            if await self._settle_credit(round_id, credit):
                settled += 1
        if pending:
            logger.info(f"Replayed {settled}/{len(pending)} pending settlement(s)")
        return settled

    # =====================================================
    # COMMANDS
    # =====================================================

    def _active_round(self) -> RoundStateMachine:
        if self._round is None:
            raise CommandRejected(RejectReason.WRONG_PHASE, "No round running")
        return self._round

    async def place_bet(
        self,
        participant_id: str,
        stake,
        auto_cashout=None,
    ) -> Bet:
        """
        SAGA:
        1. Cheap validation against the current round (no ledger call)
        2. Ledger reserve (stake debited)
        3. Commit into the round; refund if the round moved on meanwhile
        """
        try:
            stake = to_decimal(stake)
            auto_cashout = to_decimal(auto_cashout) if auto_cashout is not None else None
        except ValueError as e:
            raise CommandRejected(RejectReason.INVALID_STAKE, str(e)) from e

        sm = self._active_round()
        sm.check_bet(participant_id, stake, auto_cashout)

        if not await self.ledger.reserve(participant_id, stake, round_id=sm.round_id):
            raise CommandRejected(RejectReason.INSUFFICIENT_FUNDS, "Insufficient funds")

        try:
            async with self._lock:
                if self._round is not sm:
                    raise CommandRejected(RejectReason.WRONG_PHASE, "Round changed")
                bet = sm.place_bet(participant_id, stake, auto_cashout)
                self._flush(sm)
        except CommandRejected as e:
            logger.info(f"Bet by {participant_id} rejected after reserve ({e.reason.value}); refunding")
            refund_key = f"refund-reserve:{sm.round_id}:{participant_id}:{uuid.uuid4().hex}"
            await self._refund_reservation(participant_id, stake, sm.round_id, refund_key)
            raise

        logger.debug(f"Bet {participant_id} {stake} accepted for round {sm.round_id}")
        return bet

    async def _refund_reservation(
        self, participant_id: str, stake: Decimal, round_id: int, key: str,
    ) -> None:
        # One key per rejected command; a retry after a lost ack credits once
        try:
            await retry_with_backoff(
                lambda: self.ledger.settle(
                    participant_id, stake, round_id=round_id, key=key, refund=True,
                ),
                attempts=self.config.SETTLEMENT_ATTEMPTS,
                base_delay=self.config.SETTLEMENT_BACKOFF_SEC,
                max_delay=self.config.SETTLEMENT_BACKOFF_MAX_SEC,
                description=f"Refunding {participant_id}",
            )
        except Exception as e:
            logger.error(f"Refund of {stake} to {participant_id} (round {round_id}) failed: {e}")

    async def cash_out(self, participant_id: str) -> Bet:
        async with self._lock:
            sm = self._active_round()
            try:
                return sm.cash_out(participant_id, self.now())
            except InvariantViolation as e:
                logger.critical(f"ALERT round {sm.round_id} aborted: {e}")
                sm.abort(str(e))
                raise CommandRejected(RejectReason.WRONG_PHASE, "Round aborted") from e
            finally:
                # A crash found while advancing is published even if the cash-out lost
                self._flush(sm)

    def _flush(self, sm: RoundStateMachine) -> None:
        for event in sm.drain_events():
            self.hub.publish(event.to_message())
