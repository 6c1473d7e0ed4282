import asyncio
import time
from decimal import Decimal

import pytest

from aviator_rounds.engine import CommandRejected, GameState, RejectReason
from aviator_rounds.hub import BroadcastHub
from aviator_rounds.supervisor import RoundSupervisor

from conftest import FastConfig, FixedGenerator, MemoryLedger, SlowStartConfig, wait_until


def _supervisor(ledger, history, crash_point=None, config=FastConfig, clock=time.monotonic):
    hub = BroadcastHub(queue_size=config.SUBSCRIBER_QUEUE_SIZE)
    generator = FixedGenerator(crash_point) if crash_point else None
    return RoundSupervisor(hub, ledger, history, config, generator=generator, clock=clock)


def _drain(subscription):
    messages = []
    while subscription.pending():
        messages.append(subscription.get_nowait())
    return messages


def test_round_pays_winner_and_keeps_loser_stake(ledger, history):
    async def scenario():
        sup = _supervisor(ledger, history, "2.00")
        await sup.prepare()
        feed = sup.hub.subscribe()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)

        await sup.place_bet("alice", Decimal("10"), Decimal("1.50"))
        await sup.place_bet("bob", "10")
        outcome = await task
        return sup, outcome, _drain(feed)

    sup, outcome, messages = asyncio.run(scenario())

    alice = sup.current_round.get_bet("alice")
    assert outcome.entry.crash_point == Decimal("2.00")
    assert outcome.entry.final_multiplier == Decimal("2.00")
    # Auto cash-out lands on the first tick at or past the threshold
    assert Decimal("1.50") <= alice.cashout_multiplier < Decimal("2.00")
    assert alice.payout == Decimal("10") * alice.cashout_multiplier
    assert ledger.balances == {"alice": Decimal("90") + alice.payout, "bob": Decimal("90")}
    assert history.entries == [outcome.entry]
    assert history.pending == []
    assert sup.recent_history() == [outcome.entry]

    types = [m["type"] for m in messages]
    assert types[0] == "snapshot"
    assert types[1] == "roundStarted"
    assert types.index("flying") < types.index("cashedOut") < types.index("crashed")
    assert "crashPoint" not in messages[1]["round"]


def test_bet_after_take_off_never_touches_ledger(ledger, history):
    async def scenario():
        sup = _supervisor(ledger, history, "9.00")
        await sup.prepare()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None
                         and sup.current_round.state == GameState.FLYING)
        try:
            with pytest.raises(CommandRejected) as excinfo:
                await sup.place_bet("alice", Decimal("10"))
            return excinfo.value.reason
        finally:
            task.cancel()

    assert asyncio.run(scenario()) == RejectReason.WRONG_PHASE
    assert ledger.balances == {}


def test_insufficient_funds(history):
    ledger = MemoryLedger(starting=Decimal("5"))

    async def scenario():
        sup = _supervisor(ledger, history, config=SlowStartConfig)
        await sup.prepare()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)
        try:
            with pytest.raises(CommandRejected) as excinfo:
                await sup.place_bet("alice", Decimal("10"))
            return excinfo.value.reason, sup.current_round.get_bet("alice")
        finally:
            task.cancel()

    reason, bet = asyncio.run(scenario())
    assert reason == RejectReason.INSUFFICIENT_FUNDS
    assert bet is None
    assert ledger.balances == {"alice": Decimal("5")}


def test_reservation_refunded_when_round_takes_off_meanwhile(ledger, history):
    async def scenario():
        sup = _supervisor(ledger, history, config=SlowStartConfig)
        await sup.prepare()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)
        sm = sup.current_round
        # Bets close while the ledger call is in flight
        ledger.on_reserve = lambda: sm.start_flight(sup.now())
        try:
            with pytest.raises(CommandRejected) as excinfo:
                await sup.place_bet("alice", Decimal("10"))
            return excinfo.value.reason, sm.get_bet("alice")
        finally:
            task.cancel()

    reason, bet = asyncio.run(scenario())
    assert reason == RejectReason.WRONG_PHASE
    assert bet is None
    assert ledger.balances == {"alice": Decimal("100.00")}
    assert ledger.settlements[-1][3] is True


def test_duplicate_bet_reserves_only_once(ledger, history):
    async def scenario():
        sup = _supervisor(ledger, history, config=SlowStartConfig)
        await sup.prepare()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)
        try:
            await sup.place_bet("alice", Decimal("10"))
            with pytest.raises(CommandRejected) as excinfo:
                await sup.place_bet("alice", Decimal("10"))
            return excinfo.value.reason, dict(ledger.balances)
        finally:
            task.cancel()

    reason, balances = asyncio.run(scenario())
    assert reason == RejectReason.DUPLICATE_BET
    assert balances == {"alice": Decimal("90.00")}


def test_cash_out_through_supervisor(ledger, history):
    async def scenario():
        sup = _supervisor(ledger, history, "9.00")
        await sup.prepare()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)
        await sup.place_bet("alice", Decimal("10"))
        await wait_until(lambda: sup.current_round.multiplier >= Decimal("1.30"))
        bet = await sup.cash_out("alice")
        with pytest.raises(CommandRejected) as excinfo:
            await sup.cash_out("nobody")
        await task
        return bet, excinfo.value.reason

    bet, reason = asyncio.run(scenario())
    assert bet.cashout_multiplier >= Decimal("1.30")
    assert bet.payout == (Decimal("10") * bet.cashout_multiplier).quantize(Decimal("0.01"))
    assert reason == RejectReason.NO_OPEN_BET
    assert ledger.balances["alice"] == Decimal("90.00") + bet.payout


def test_settlement_retried_until_ledger_answers(history):
    ledger = MemoryLedger(failures=2)

    async def scenario():
        sup = _supervisor(ledger, history, "1.50")
        await sup.prepare()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)
        await sup.place_bet("alice", Decimal("10"), Decimal("1.20"))
        await task
        return sup.current_round.get_bet("alice")

    bet = asyncio.run(scenario())
    assert bet.cashed_out
    assert ledger.balances["alice"] == Decimal("90.00") + bet.payout
    assert history.pending == []


def test_unpaid_credit_replayed_before_next_round(history):
    ledger = MemoryLedger(failures=10)

    async def scenario():
        sup = _supervisor(ledger, history, "1.50")
        await sup.prepare()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)
        await sup.place_bet("alice", Decimal("10"), Decimal("1.20"))
        await task
        pending_after_round = list(history.pending)

        ledger.failures_left = 0
        replayed = await sup.replay_pending_settlements()
        again = await sup.replay_pending_settlements()
        return sup.current_round.get_bet("alice"), pending_after_round, replayed, again

    bet, pending, replayed, again = asyncio.run(scenario())
    assert [(rid, c.participant_id, c.amount) for rid, c in pending] == [(1, "alice", bet.payout)]
    assert replayed == 1
    assert again == 0
    assert ledger.balances["alice"] == Decimal("90.00") + bet.payout


def test_clock_going_back_voids_round_and_refunds(ledger, history):
    offset = {"value": 0.0}

    def clock():
        return time.monotonic() + offset["value"]

    async def scenario():
        sup = _supervisor(ledger, history, "9.00", clock=clock)
        await sup.prepare()
        feed = sup.hub.subscribe()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)
        await sup.place_bet("alice", Decimal("10"))
        await wait_until(lambda: sup.current_round.multiplier >= Decimal("1.20"))
        offset["value"] = -60.0
        outcome = await task
        return outcome, _drain(feed)

    outcome, messages = asyncio.run(scenario())
    assert outcome.entry.voided
    assert ledger.balances["alice"] == Decimal("100.00")
    assert "roundVoided" in [m["type"] for m in messages]
    assert "crashed" not in [m["type"] for m in messages]


def test_round_ids_resume_from_history(ledger, history):
    async def scenario():
        first = _supervisor(ledger, history, "1.10")
        await first.prepare()
        await first.play_round()
        await first.play_round()

        second = _supervisor(ledger, history, "1.10")
        await second.prepare()
        outcome = await second.play_round()
        return outcome, second.snapshot()

    outcome, snapshot = asyncio.run(scenario())
    assert outcome.entry.round_id == 3
    assert [h["roundId"] for h in snapshot["history"]] == [3, 2, 1]


def test_only_one_round_flies_at_a_time(ledger, history):
    async def scenario():
        sup = _supervisor(ledger, history)
        feed = sup.hub.subscribe()
        await sup.start()
        await wait_until(lambda: sup.running)
        with pytest.raises(RuntimeError):
            await sup.run()

        messages = []

        def crashed_rounds():
            messages.extend(_drain(feed))
            return sum(1 for m in messages if m["type"] in ("crashed", "roundVoided"))

        try:
            await wait_until(lambda: crashed_rounds() >= 3, timeout=10)
        finally:
            await sup.stop()
        return messages

    messages = asyncio.run(scenario())
    flying = None
    for message in messages:
        if message["type"] == "flying":
            assert flying is None
            flying = message["roundId"]
        elif message["type"] in ("crashed", "roundVoided"):
            assert message["roundId"] == flying
            flying = None


def test_reservation_refund_survives_lost_ack(history):
    ledger = MemoryLedger(lost_acks=1)

    async def scenario():
        sup = _supervisor(ledger, history, config=SlowStartConfig)
        await sup.prepare()
        task = asyncio.create_task(sup.play_round())
        await wait_until(lambda: sup.current_round is not None)
        sm = sup.current_round
        ledger.on_reserve = lambda: sm.start_flight(sup.now())
        try:
            with pytest.raises(CommandRejected):
                await sup.place_bet("alice", Decimal("10"))
            return dict(ledger.balances), list(ledger.settlements)
        finally:
            task.cancel()

    balances, settlements = asyncio.run(scenario())
    # Applied once, retried once, credited once
    assert balances == {"alice": Decimal("100.00")}
    assert settlements == [("alice", Decimal("10"), 1, True)]


def test_stop_during_round_refunds_open_bets(ledger, history):
    async def scenario():
        sup = _supervisor(ledger, history, config=SlowStartConfig)
        feed = sup.hub.subscribe()
        await sup.start()
        await wait_until(lambda: sup.current_round is not None)
        await sup.place_bet("alice", Decimal("10"))
        await sup.stop()
        return sup, _drain(feed)

    sup, messages = asyncio.run(scenario())
    assert ledger.balances == {"alice": Decimal("100.00")}
    assert len(history.entries) == 1
    assert history.entries[0].voided
    assert history.pending == []
    assert sup.current_round.state == GameState.CRASHED
    assert messages[-1]["type"] == "roundVoided"
    assert messages[-1]["reason"] == "shutdown"
