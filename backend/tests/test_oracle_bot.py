from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update
from web3 import Web3

from app.core.errors import InvalidTransition, LedgerError, LedgerErrorKind
from app.db import session_scope
from app.models import Cycle, CycleStatus, GuidedMarketKind
from app.repositories import AlertRepository, CycleRepository, GuidedMarketRepository
from app.services.alerts import AlertService
from factories import EASY_ODDS, SCENARIO_KICKOFFS, utc
from ledger.client import ChainCycleState, CycleChainStatus
from pipelines.oracle_bot import ALREADY_RESOLVED, DEFERRED, PARKED, RECOVERED, RESOLVED, OracleBot

ENDED = CycleChainStatus(
    exists=True, state=ChainCycleState.ENDED, end_time=0, prize_pool=0, slip_count=3, has_winner=False
)


@pytest.fixture
def ledger():
    ledger = MagicMock()
    ledger.get_cycle_status.return_value = ENDED
    ledger.resolve_daily_cycle.side_effect = lambda cycle_id, artifact: f"0x{cycle_id:064x}"
    ledger.get_outcome.return_value = None
    ledger.submit_guided_outcome.return_value = "0x" + "99" * 32
    return ledger


@pytest.fixture
def resolved_calls() -> list[int]:
    return []


@pytest.fixture
def bot(session_factory, ledger, test_settings, clock, resolved_calls):
    return OracleBot(
        session_factory,
        ledger,
        test_settings,
        clock,
        alerts=AlertService(session_factory, clock),
        on_resolved=resolved_calls.append,
    )


@pytest.fixture
def ready_cycles(make_fixture, cycle_factory):
    """Cycles 5, 6 and 7 for 12, 13 and 14 January, all staged for resolution."""

    for offset, cycle_id in enumerate((5, 6, 7)):
        day = 12 + offset
        fixtures = [
            make_fixture(cycle_id * 100 + index, utc(2025, 1, day, hour, minute), league_id=index // 2 + 1)
            for index, (hour, minute) in enumerate(SCENARIO_KICKOFFS)
        ]
        cycle_factory(
            fixtures,
            cycle_id=cycle_id,
            game_date=date(2025, 1, day),
            status=CycleStatus.READY_FOR_RESOLUTION,
        )
    return [5, 6, 7]


def _cycle(session_factory, cycle_id):
    with session_scope(session_factory) as session:
        return CycleRepository(session).get_by_cycle_id(cycle_id)


def _resolved_ids(ledger) -> list[int]:
    return [call.args[0] for call in ledger.resolve_daily_cycle.call_args_list]


def test_ready_cycles_are_resolved_in_ascending_order(bot, ledger, ready_cycles, session_factory, resolved_calls):
    outcomes = bot.resolve_ready_cycles()

    assert [outcome.status for outcome in outcomes] == [RESOLVED] * 3
    assert _resolved_ids(ledger) == [5, 6, 7]
    assert resolved_calls == [5, 6, 7]
    cycle = _cycle(session_factory, 6)
    assert cycle.status == CycleStatus.RESOLVED.value
    assert cycle.is_resolved
    assert cycle.resolution_tx_hash == f"0x{6:064x}"
    artifact = ledger.resolve_daily_cycle.call_args_list[0].args[1]
    assert artifact.to_json() == [[1, 1]] * 10


def test_sweep_stops_at_first_cycle_that_does_not_settle(bot, ledger, ready_cycles, session_factory):
    def resolve(cycle_id, artifact):
        if cycle_id == 6:
            raise LedgerError(LedgerErrorKind.TIMEOUT, tx_hash="0xpending")
        return f"0x{cycle_id:064x}"

    ledger.resolve_daily_cycle.side_effect = resolve

    outcomes = bot.resolve_ready_cycles()

    assert [(outcome.cycle_id, outcome.status) for outcome in outcomes] == [(5, RESOLVED), (6, DEFERRED)]
    assert _resolved_ids(ledger) == [5, 6]
    deferred = _cycle(session_factory, 6)
    assert deferred.status == CycleStatus.READY_FOR_RESOLUTION.value
    assert deferred.last_error == "timeout" and not deferred.parked
    assert _cycle(session_factory, 7).status == CycleStatus.READY_FOR_RESOLUTION.value


def test_cycle_already_resolved_on_chain_is_recovered(bot, ledger, ready_cycles, session_factory):
    ledger.get_cycle_status.return_value = CycleChainStatus(
        exists=True, state=ChainCycleState.RESOLVED, end_time=0, prize_pool=0, slip_count=0, has_winner=True
    )
    ledger.find_resolution_tx.return_value = "0x" + "bb" * 32

    outcome = bot.resolve_cycle(5)

    assert outcome.status == RECOVERED
    ledger.resolve_daily_cycle.assert_not_called()
    cycle = _cycle(session_factory, 5)
    assert cycle.status == CycleStatus.RESOLVED.value
    assert cycle.resolution_tx_hash == "0x" + "bb" * 32
    assert bot.resolve_cycle(5).status == ALREADY_RESOLVED


def test_reverted_resolution_parks_the_cycle_and_alerts(bot, ledger, ready_cycles, session_factory):
    ledger.resolve_daily_cycle.side_effect = LedgerError(LedgerErrorKind.REVERTED, reason="results already set")

    outcomes = bot.resolve_ready_cycles()

    assert [outcome.status for outcome in outcomes] == [PARKED]
    cycle = _cycle(session_factory, 5)
    assert cycle.parked and "results already set" in cycle.last_error
    with session_scope(session_factory) as session:
        alerts = AlertRepository(session).list_recent(kind="ledger_reverted")
    assert [alert.cycle_id for alert in alerts] == [5]

    # the parked cycle holds back 6 and 7 until it is dealt with
    ledger.resolve_daily_cycle.side_effect = lambda cycle_id, artifact: f"0x{cycle_id:064x}"
    assert bot.resolve_ready_cycles() == []
    assert _resolved_ids(ledger) == [5]


def test_parked_cycle_blocks_later_cycles_until_resolved_by_hand(bot, ledger, ready_cycles, session_factory):
    with session_scope(session_factory) as session:
        repo = CycleRepository(session)
        repo.park(repo.get_by_cycle_id(5), error="reverted: results already set", at=utc(2025, 1, 15, 9, 0))

    assert bot.resolve_ready_cycles() == []
    assert bot.resolve_ready_cycles() == []

    ledger.resolve_daily_cycle.assert_not_called()
    assert _cycle(session_factory, 6).status == CycleStatus.READY_FOR_RESOLUTION.value
    assert _cycle(session_factory, 7).status == CycleStatus.READY_FOR_RESOLUTION.value
    with session_scope(session_factory) as session:
        alerts = AlertRepository(session).list_recent(kind="resolution_queue_blocked")
    assert [(alert.cycle_id, alert.details["waiting"]) for alert in alerts] == [(5, [6, 7])]

    # an operator retry of cycle 5 releases the queue
    assert bot.resolve_cycle(5).status == RESOLVED
    outcomes = bot.resolve_ready_cycles()
    assert [outcome.cycle_id for outcome in outcomes] == [6, 7]
    assert _resolved_ids(ledger) == [5, 6, 7]


def test_cycle_awaiting_results_holds_later_ready_cycles(bot, ledger, ready_cycles, session_factory):
    with session_scope(session_factory) as session:
        session.execute(
            update(Cycle).where(Cycle.cycle_id == 5).values(status=CycleStatus.PENDING_RESULTS.value, resolution_data=None)
        )

    assert bot.resolve_ready_cycles() == []
    ledger.resolve_daily_cycle.assert_not_called()


def test_cycle_missing_on_chain_is_parked(bot, ledger, ready_cycles, session_factory):
    ledger.get_cycle_status.return_value = CycleChainStatus(
        exists=False, state=ChainCycleState.NOT_STARTED, end_time=0, prize_pool=0, slip_count=0, has_winner=False
    )

    outcome = bot.resolve_cycle(5)

    assert outcome.status == PARKED
    assert _cycle(session_factory, 5).parked
    ledger.resolve_daily_cycle.assert_not_called()


def test_resolution_before_the_floor_is_refused(bot, ledger, cycle_factory, scenario_fixtures, clock):
    cycle_factory(scenario_fixtures, cycle_id=9, status=CycleStatus.READY_FOR_RESOLUTION)
    clock.set(utc(2025, 1, 15, 20, 29))

    with pytest.raises(InvalidTransition):
        bot.resolve_cycle(9)
    ledger.resolve_daily_cycle.assert_not_called()


def test_open_cycle_cannot_be_resolved(bot, cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=9, status=CycleStatus.OPEN)

    with pytest.raises(InvalidTransition):
        bot.resolve_cycle(9)


def test_guided_outcomes_submitted_once_and_existing_ones_synced(
    bot, ledger, make_fixture, store_fixtures, store_result, session_factory
):
    store_fixtures([make_fixture(77, utc(2025, 1, 15, 6, 0), league_id=1, moneyline=EASY_ODDS)])
    store_result(77, "FT", 2, 1, finished_at=utc(2025, 1, 15, 8, 0))
    bytes32_market = "0x" + "cd" * 32
    with session_scope(session_factory) as session:
        repo = GuidedMarketRepository(session)
        repo.register(market_id="fixture-77-1x2", fixture_id=77, kind=GuidedMarketKind.MONEYLINE)
        repo.register(market_id=bytes32_market, fixture_id=77, kind=GuidedMarketKind.OVER_UNDER_25)

    def existing(market_bytes):
        return b"Over 2.5" if market_bytes == bytes.fromhex("cd" * 32) else None

    ledger.get_outcome.side_effect = existing

    summary = bot.submit_guided_outcomes()

    assert summary.checked == 2
    assert summary.submitted == ["fixture-77-1x2"]
    assert summary.already_set == [bytes32_market]
    ledger.submit_guided_outcome.assert_called_once_with(bytes(Web3.keccak(text="fixture-77-1x2")), b"Home")
    with session_scope(session_factory) as session:
        repo = GuidedMarketRepository(session)
        assert repo.list_ready(finished_before=utc(2025, 1, 15, 9, 0)) == []

    assert bot.submit_guided_outcomes().checked == 0


def test_guided_outcome_waits_for_settle_window(bot, ledger, make_fixture, store_fixtures, store_result, session_factory):
    store_fixtures([make_fixture(78, utc(2025, 1, 15, 7, 0), league_id=1)])
    store_result(78, "FT", 0, 0, finished_at=utc(2025, 1, 15, 8, 50))
    with session_scope(session_factory) as session:
        GuidedMarketRepository(session).register(market_id="m-78", fixture_id=78, kind=GuidedMarketKind.MONEYLINE)

    assert bot.submit_guided_outcomes().checked == 0
    ledger.submit_guided_outcome.assert_not_called()
