from __future__ import annotations

import threading
from datetime import date
from unittest.mock import MagicMock

import pytest

from app.core.errors import InsufficientFixtures, InvalidTransition, LedgerError, LedgerErrorKind, NotFound
from app.db import session_scope
from app.domain.outcomes import Selection
from app.models import Cycle, CycleStatus
from app.repositories import AlertRepository, CycleRepository, SlipRepository
from app.services.alerts import AlertService
from factories import GAME_DATE, PLAYER, predictions_for, utc
from ledger.client import CycleCreation
from pipelines.cycle_lifecycle import CycleLifecycleController
from pipelines.match_selector import MatchSelector


@pytest.fixture
def ledger():
    ledger = MagicMock()
    ledger.start_new_daily_cycle.return_value = CycleCreation(cycle_id=42, tx_hash="0x" + "12" * 32)
    return ledger


@pytest.fixture
def controller(session_factory, ledger, test_settings, clock):
    return CycleLifecycleController(
        session_factory,
        MatchSelector(exclude_keywords=test_settings.league_exclude_keywords),
        ledger,
        test_settings,
        clock,
        alerts=AlertService(session_factory, clock),
        draft_poll_seconds=0.01,
    )


def _cycle(session_factory, game_date: date = GAME_DATE) -> Cycle | None:
    with session_scope(session_factory) as session:
        return CycleRepository(session).get_by_date(game_date)


def test_open_cycle_creates_on_chain_and_stores_open_cycle(controller, ledger, session_factory, store_fixtures, scenario_fixtures):
    store_fixtures(scenario_fixtures)

    result = controller.open_cycle(GAME_DATE)

    assert result.created and result.cycle_id == 42
    submitted = ledger.start_new_daily_cycle.call_args.args[0]
    assert [match.fixture_id for match in submitted] == [f.fixture_id for f in scenario_fixtures]
    cycle = _cycle(session_factory)
    assert cycle.status == CycleStatus.OPEN.value
    assert cycle.cycle_id == 42 and cycle.tx_hash == "0x" + "12" * 32
    assert len(cycle.matches_data) == 10
    assert cycle.fixture_ids == [f.fixture_id for f in scenario_fixtures]
    assert not cycle.is_resolved and not cycle.evaluation_completed


def test_open_cycle_is_idempotent(controller, ledger, store_fixtures, scenario_fixtures):
    store_fixtures(scenario_fixtures)

    first = controller.open_cycle(GAME_DATE)
    second = controller.open_cycle(GAME_DATE)

    assert second.cycle_id == first.cycle_id
    assert not second.created
    ledger.start_new_daily_cycle.assert_called_once()


def test_insufficient_fixtures_writes_nothing_then_succeeds_on_retry(
    controller, ledger, session_factory, store_fixtures, make_fixture, scenario_fixtures
):
    store_fixtures(scenario_fixtures[:8])

    with pytest.raises(InsufficientFixtures):
        controller.open_cycle(GAME_DATE)

    assert _cycle(session_factory) is None
    ledger.start_new_daily_cycle.assert_not_called()
    with session_scope(session_factory) as session:
        assert AlertRepository(session).get_by_dedupe_key(f"insufficient_fixtures:{GAME_DATE}") is not None

    # an hour later the provider has published three more fixtures
    extra = [make_fixture(1100 + index, utc(2025, 1, 15, 19, index), league_id=10 + index) for index in range(3)]
    store_fixtures(scenario_fixtures[8:] + extra)

    result = controller.open_cycle(GAME_DATE)

    kickoffs = [match.kickoff_utc for match in result.matches]
    assert result.created
    assert kickoffs == sorted(kickoffs)


def test_ledger_failure_rolls_back_the_draft(controller, ledger, session_factory, store_fixtures, scenario_fixtures):
    store_fixtures(scenario_fixtures)
    ledger.start_new_daily_cycle.side_effect = LedgerError(LedgerErrorKind.REVERTED, reason="not oracle")

    with pytest.raises(LedgerError):
        controller.open_cycle(GAME_DATE)

    assert _cycle(session_factory) is None
    with session_scope(session_factory) as session:
        assert AlertRepository(session).list_recent(kind="ledger_reverted")


PENDING_TX = "0x" + "ab" * 32


def test_timed_out_creation_that_mined_promotes_the_draft(
    controller, ledger, session_factory, store_fixtures, scenario_fixtures
):
    store_fixtures(scenario_fixtures)
    ledger.start_new_daily_cycle.side_effect = LedgerError(LedgerErrorKind.TIMEOUT, tx_hash=PENDING_TX)
    ledger.find_cycle_creation.return_value = CycleCreation(cycle_id=42, tx_hash=PENDING_TX)

    result = controller.open_cycle(GAME_DATE)

    assert result.created and result.cycle_id == 42
    ledger.find_cycle_creation.assert_called_once_with(PENDING_TX)
    cycle = _cycle(session_factory)
    assert cycle.status == CycleStatus.OPEN.value
    assert cycle.tx_hash == PENDING_TX


def test_unconfirmed_creation_keeps_the_draft_until_the_tx_mines(
    controller, ledger, session_factory, store_fixtures, scenario_fixtures
):
    store_fixtures(scenario_fixtures)
    ledger.start_new_daily_cycle.side_effect = LedgerError(LedgerErrorKind.RPC_TRANSIENT, tx_hash=PENDING_TX)
    ledger.find_cycle_creation.return_value = None

    with pytest.raises(LedgerError):
        controller.open_cycle(GAME_DATE)

    draft = _cycle(session_factory)
    assert draft.status == CycleStatus.DRAFT.value
    assert draft.tx_hash == PENDING_TX

    with pytest.raises(LedgerError) as still_pending:
        controller.open_cycle(GAME_DATE)
    assert still_pending.value.kind is LedgerErrorKind.TIMEOUT

    ledger.find_cycle_creation.return_value = CycleCreation(cycle_id=42, tx_hash=PENDING_TX)
    result = controller.open_cycle(GAME_DATE)

    assert result.cycle_id == 42
    assert ledger.start_new_daily_cycle.call_count == 1
    assert _cycle(session_factory).status == CycleStatus.OPEN.value


def test_creation_tx_found_reverted_rolls_back_the_draft(
    controller, ledger, session_factory, store_fixtures, scenario_fixtures
):
    store_fixtures(scenario_fixtures)
    ledger.start_new_daily_cycle.side_effect = LedgerError(LedgerErrorKind.TIMEOUT, tx_hash=PENDING_TX)
    ledger.find_cycle_creation.side_effect = LedgerError(
        LedgerErrorKind.REVERTED, reason="cycle already started", tx_hash=PENDING_TX
    )

    with pytest.raises(LedgerError) as raised:
        controller.open_cycle(GAME_DATE)

    assert raised.value.kind is LedgerErrorKind.REVERTED
    assert _cycle(session_factory) is None


def test_concurrent_opens_share_one_cycle(controller, ledger, store_fixtures, scenario_fixtures):
    store_fixtures(scenario_fixtures)
    entered, release = threading.Event(), threading.Event()

    def slow_create(matches):
        entered.set()
        release.wait(5)
        return CycleCreation(cycle_id=42, tx_hash="0x" + "12" * 32)

    ledger.start_new_daily_cycle.side_effect = slow_create
    results = []

    def run():
        results.append(controller.open_cycle(GAME_DATE))

    first = threading.Thread(target=run)
    first.start()
    assert entered.wait(5)
    second = threading.Thread(target=run)
    second.start()
    release.set()
    first.join(10)
    second.join(10)

    assert len(results) == 2
    assert {result.cycle_id for result in results} == {42}
    assert sorted(result.created for result in results) == [False, True]
    ledger.start_new_daily_cycle.assert_called_once()


def test_close_betting_moves_cycles_past_deadline(controller, cycle_factory, scenario_fixtures, session_factory):
    cycle_factory(scenario_fixtures, cycle_id=7)

    assert controller.close_betting(utc(2025, 1, 15, 11, 59)) == []
    assert controller.close_betting(utc(2025, 1, 15, 12, 0)) == [7]
    assert _cycle(session_factory).status == CycleStatus.PENDING_RESULTS.value


def test_cancel_cycle_requires_no_slips(controller, cycle_factory, scenario_fixtures, session_factory):
    matches = cycle_factory(scenario_fixtures, cycle_id=7)
    with session_scope(session_factory) as session:
        SlipRepository(session).add_slip(
            slip_id=1,
            cycle_id=7,
            player_address=PLAYER,
            predictions=predictions_for(matches, [Selection.HOME] * len(matches)),
            placed_at=utc(2025, 1, 15, 10, 0),
        )

    with pytest.raises(InvalidTransition):
        controller.cancel_cycle(7, "bad odds")
    with pytest.raises(NotFound):
        controller.cancel_cycle(99, "missing")


def test_cancel_open_cycle_without_slips(controller, cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=7)

    cycle = controller.cancel_cycle(7, "provider withdrew fixtures")

    assert cycle.status == CycleStatus.CANCELLED.value
    assert cycle.cancel_reason == "provider withdrew fixtures"


def test_ensure_daily_cycle_waits_for_open_time_and_retries_hourly(
    controller, ledger, clock, store_fixtures, scenario_fixtures
):
    assert controller.ensure_daily_cycle(utc(2025, 1, 15, 0, 4)) is None
    ledger.start_new_daily_cycle.assert_not_called()

    store_fixtures(scenario_fixtures[:8])
    assert controller.ensure_daily_cycle(utc(2025, 1, 15, 0, 5)) is None
    store_fixtures(scenario_fixtures)
    # inside the retry window nothing is attempted
    assert controller.ensure_daily_cycle(utc(2025, 1, 15, 0, 30)) is None
    ledger.start_new_daily_cycle.assert_not_called()

    clock.set(utc(2025, 1, 15, 1, 5))
    opened = controller.ensure_daily_cycle(clock.now())
    assert opened is not None and opened.cycle_id == 42

