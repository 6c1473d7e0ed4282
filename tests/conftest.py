import asyncio
from decimal import Decimal

import pytest

from aviator_rounds.clock import RoundClock
from aviator_rounds.engine import GameConfig, RoundStateMachine
from aviator_rounds.fairness import CrashPointGenerator, commitment


class FastConfig(GameConfig):
    WAITING_DURATION_SEC = 0.05
    COOLDOWN_SEC = 0.01
    TICK_INTERVAL_SEC = 0.005
    # 1.00x -> 10.00x in 0.9s: +0.10x every 10ms
    FLIGHT_DURATION_SEC = Decimal("0.9")
    HISTORY_SIZE = 5
    SUBSCRIBER_QUEUE_SIZE = 512
    SETTLEMENT_ATTEMPTS = 3
    SETTLEMENT_BACKOFF_SEC = 0.001
    SETTLEMENT_BACKOFF_MAX_SEC = 0.002


class SlowStartConfig(FastConfig):
    # Round stays open for bets for the whole test
    WAITING_DURATION_SEC = 30.0


class FixedGenerator(CrashPointGenerator):
    """Every round crashes at the same point."""

    def __init__(self, crash_point):
        super().__init__(rtp=Decimal("0.97"), max_multiplier=Decimal("10.00"))
        self.crash_point = Decimal(crash_point)

    def generate(self, seed):
        return self.crash_point


class MemoryLedger:

    def __init__(self, starting=Decimal("100.00"), failures=0, lost_acks=0):
        self.starting = starting
        self.balances = {}
        self.failures_left = failures
        # Settlements that are applied but then reported as failed
        self.lost_acks = lost_acks
        self.keys = set()
        self.settlements = []
        self.on_reserve = None

    async def balance(self, participant_id):
        return self.balances.setdefault(participant_id, self.starting)

    async def reserve(self, participant_id, amount, round_id=None):
        balance = await self.balance(participant_id)
        if balance < amount:
            return False
        self.balances[participant_id] = balance - amount
        if self.on_reserve:
            self.on_reserve()
        return True

    async def settle(self, participant_id, delta, round_id=None, key=None, refund=False):
        if self.failures_left > 0:
            self.failures_left -= 1
            raise ConnectionError("ledger unreachable")
        if key is not None:
            if key in self.keys:
                return
            self.keys.add(key)
        self.balances[participant_id] = await self.balance(participant_id) + delta
        self.settlements.append((participant_id, delta, round_id, refund))
        if self.lost_acks > 0:
            self.lost_acks -= 1
            raise ConnectionError("ack lost")


class MemoryHistory:

    def __init__(self):
        self.entries = []
        self.pending = []

    async def append(self, outcome):
        if any(e.round_id == outcome.entry.round_id for e in self.entries):
            return
        self.entries.append(outcome.entry)
        self.pending.extend((outcome.entry.round_id, c) for c in outcome.credits)

    async def recent(self, limit=20):
        return list(reversed(self.entries))[:limit]

    async def get(self, round_id):
        return next((e for e in self.entries if e.round_id == round_id), None)

    async def last_round_id(self):
        return max((e.round_id for e in self.entries), default=0)

    async def pending_settlements(self):
        return list(self.pending)

    async def mark_settled(self, round_id, participant_id):
        self.pending = [
            (rid, c) for rid, c in self.pending
            if not (rid == round_id and c.participant_id == participant_id)
        ]


async def wait_until(predicate, timeout=5.0, interval=0.002):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture()
def round_clock():
    # 1.00x + 1.00x per second of flight, capped at 10.00x
    return RoundClock(Decimal("9"), Decimal("10.00"), 0.1)


@pytest.fixture()
def make_round(round_clock):
    def factory(crash_point, round_id=1, seed="test-seed"):
        return RoundStateMachine(
            round_id=round_id,
            crash_point=Decimal(crash_point),
            seed=seed,
            commitment=commitment(seed),
            clock=round_clock,
        )
    return factory


@pytest.fixture()
def ledger():
    return MemoryLedger()


@pytest.fixture()
def history():
    return MemoryHistory()
