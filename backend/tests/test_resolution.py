from __future__ import annotations

import pytest

from app.core.errors import InvalidTransition, ProviderError, ProviderErrorKind
from app.db import session_scope
from app.models import CycleStatus
from app.repositories import CycleRepository, FixtureRepository
from factories import matches_for, result_payload, utc
from ingestion.service import SportsProviderAdapter
from pipelines.resolution import LOCAL_CANCEL_STATUS, ResolutionDecider, resolution_floor
from pipelines.results_ingestion import ResultsIngestionPipeline

# last scenario kickoff is 18:45Z
FLOOR = utc(2025, 1, 15, 20, 30)


@pytest.fixture
def ready_calls() -> list[int]:
    return []


@pytest.fixture
def results(stub_source, session_factory, test_settings, clock):
    adapter = SportsProviderAdapter(stub_source, session_factory, test_settings, clock)
    return ResultsIngestionPipeline(adapter, session_factory, test_settings)


@pytest.fixture
def decider(results, session_factory, test_settings, clock, ready_calls):
    return ResolutionDecider(session_factory, results, test_settings, clock, on_ready=ready_calls.append)


@pytest.fixture
def pending_cycle(cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=3, status=CycleStatus.PENDING_RESULTS)
    return [fixture.fixture_id for fixture in scenario_fixtures]


def _cycle(session_factory, cycle_id=3):
    with session_scope(session_factory) as session:
        return CycleRepository(session).get_by_cycle_id(cycle_id)


def _set_status(session_factory, fixture_id, status):
    with session_scope(session_factory) as session:
        FixtureRepository(session).set_status(fixture_id, status)


def test_resolution_floor_is_last_kickoff_plus_minutes(scenario_fixtures):
    assert resolution_floor(matches_for(scenario_fixtures), 105) == FLOOR


def test_cycle_waits_for_the_floor_even_when_all_results_are_in(
    decider, pending_cycle, store_result, clock, session_factory, ready_calls
):
    for fixture_id in pending_cycle:
        store_result(fixture_id, "FT", 1, 0)

    clock.set(utc(2025, 1, 15, 20, 29))
    early = decider.evaluate_cycle(3)

    assert not early.floor_passed and not early.ready and not early.staged
    assert _cycle(session_factory).status == CycleStatus.PENDING_RESULTS.value

    clock.set(FLOOR)
    report = decider.evaluate_cycle(3)

    assert report.staged
    assert ready_calls == [3]
    cycle = _cycle(session_factory)
    assert cycle.status == CycleStatus.READY_FOR_RESOLUTION.value
    assert cycle.resolution_data["results"] == [[1, 2]] * 10
    assert [entry["fixture_id"] for entry in cycle.resolution_data["fixtures"]] == pending_cycle


def test_fixture_not_started_two_hours_after_kickoff_is_cancelled_locally(
    decider, pending_cycle, store_result, stub_source, clock, session_factory
):
    for fixture_id in pending_cycle[1:]:
        store_result(fixture_id, "FT", 2, 2)
    stub_source.fixtures[pending_cycle[0]] = result_payload(pending_cycle[0], None, None, state="NS")
    clock.set(FLOOR)

    report = decider.evaluate_cycle(3)

    assert report.cancelled_locally == [pending_cycle[0]]
    # the stored NS is only trusted after a fresh provider read
    assert stub_source.calls == [pending_cycle[0]]
    assert report.refetched == [pending_cycle[0]]
    assert report.staged
    cycle = _cycle(session_factory)
    assert cycle.resolution_data["results"][0] == [0, 0]
    assert cycle.resolution_data["results"][1] == [2, 1]
    with session_scope(session_factory) as session:
        assert FixtureRepository(session).get_fixture(pending_cycle[0]).status == LOCAL_CANCEL_STATUS


def test_provider_cancelled_fixture_resolves_as_not_set(decider, pending_cycle, store_result, clock, session_factory):
    store_result(pending_cycle[4], "CANC")
    for fixture_id in pending_cycle[:4] + pending_cycle[5:]:
        store_result(fixture_id, "FT", 0, 3)
    clock.set(FLOOR)

    report = decider.evaluate_cycle(3)

    assert report.staged
    results = _cycle(session_factory).resolution_data["results"]
    assert results[4] == [0, 0]
    assert results[0] == [3, 1]


def test_missing_result_is_fetched_directly_and_goalless_draw_resolves(
    decider, pending_cycle, store_result, stub_source, clock, session_factory
):
    for fixture_id in pending_cycle[:9]:
        store_result(fixture_id, "FT", 1, 1)
    _set_status(session_factory, pending_cycle[9], "FT")
    stub_source.fixtures[pending_cycle[9]] = result_payload(pending_cycle[9], 0, 0)
    clock.set(FLOOR)

    report = decider.evaluate_cycle(3)

    assert report.refetched == [pending_cycle[9]]
    assert report.staged
    assert _cycle(session_factory).resolution_data["results"][9] == [2, 2]


def test_in_play_fixture_blocks_and_is_reported_by_run_once(
    decider, pending_cycle, store_result, stub_source, clock, session_factory, ready_calls
):
    for fixture_id in pending_cycle[:9]:
        store_result(fixture_id, "FT", 1, 0)
    _set_status(session_factory, pending_cycle[9], "2H")
    clock.set(utc(2025, 1, 15, 20, 0))

    summary = decider.run_once()

    assert summary.checked == 1
    assert summary.staged == []
    waiting = summary.waiting[3]
    assert waiting[str(pending_cycle[9])] == "status_2H"
    assert "floor" in waiting
    assert stub_source.calls == []
    assert ready_calls == []


def test_only_pending_cycles_can_be_gated(decider, cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=3, status=CycleStatus.OPEN)

    with pytest.raises(InvalidTransition):
        decider.evaluate_cycle(3)


def test_unreachable_fixture_is_not_cancelled_during_a_provider_outage(
    decider, results, pending_cycle, store_result, stub_source, clock, session_factory
):
    for fixture_id in pending_cycle[1:]:
        store_result(fixture_id, "FT", 2, 2)
    stub_source.fixtures[pending_cycle[0]] = ProviderError(ProviderErrorKind.TRANSIENT, "gateway timeout")
    clock.set(FLOOR)
    results.run_once()

    report = decider.evaluate_cycle(3)

    assert report.cancelled_locally == []
    assert report.refetched == [pending_cycle[0]]
    assert not report.staged
    assert _cycle(session_factory).status == CycleStatus.PENDING_RESULTS.value

    stub_source.fixtures[pending_cycle[0]] = result_payload(pending_cycle[0], None, None, state="NS")
    assert decider.evaluate_cycle(3).cancelled_locally == [pending_cycle[0]]


def test_restarted_decider_does_not_cancel_during_a_provider_outage(
    pending_cycle, store_result, stub_source, clock, session_factory, test_settings
):
    def _fresh_components():
        adapter = SportsProviderAdapter(stub_source, session_factory, test_settings, clock)
        pipeline = ResultsIngestionPipeline(adapter, session_factory, test_settings)
        return pipeline, ResolutionDecider(session_factory, pipeline, test_settings, clock)

    for fixture_id in pending_cycle[1:]:
        store_result(fixture_id, "FT", 2, 2)
    stub_source.fixtures[pending_cycle[0]] = ProviderError(ProviderErrorKind.TRANSIENT, "gateway timeout")
    clock.set(FLOOR)
    pipeline, _ = _fresh_components()
    pipeline.run_once()

    # a process restart in the middle of the outage
    _, decider = _fresh_components()
    clock.set(utc(2025, 1, 15, 20, 45))
    report = decider.evaluate_cycle(3)

    assert report.cancelled_locally == []
    assert not report.staged
    with session_scope(session_factory) as session:
        fixture = FixtureRepository(session).get_fixture(pending_cycle[0])
        assert fixture.status == "NS"
        assert fixture.last_read_error == ProviderErrorKind.TRANSIENT.value
        assert fixture.last_read_ok_at is None


def test_stale_success_does_not_confirm_a_later_failed_read(
    decider, pending_cycle, store_result, stub_source, clock, session_factory
):
    for fixture_id in pending_cycle[1:]:
        store_result(fixture_id, "FT", 2, 2)
    with session_scope(session_factory) as session:
        FixtureRepository(session).record_reads(ok=[pending_cycle[0]], at=utc(2025, 1, 15, 15, 0))
        FixtureRepository(session).record_reads(
            failed={pending_cycle[0]: ProviderErrorKind.RATE_LIMITED.value}, at=utc(2025, 1, 15, 16, 0)
        )
    stub_source.fixtures[pending_cycle[0]] = ProviderError(ProviderErrorKind.TRANSIENT, "gateway timeout")
    clock.set(FLOOR)

    report = decider.evaluate_cycle(3)

    assert report.cancelled_locally == []
    assert stub_source.calls == [pending_cycle[0]]
