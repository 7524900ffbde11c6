from __future__ import annotations

import pytest
from sqlalchemy import update

from app.db import session_scope
from app.models import Cycle, CycleStatus
from app.repositories import AlertRepository, CycleRepository
from app.services.alerts import AlertService
from factories import GAME_DATE, matches_for, utc
from pipelines.cycle_monitor import CycleMonitor


@pytest.fixture
def monitor(session_factory, test_settings, clock):
    return CycleMonitor(session_factory, test_settings, clock, alerts=AlertService(session_factory, clock))


def _kinds(report) -> list[str]:
    return [finding.kind for finding in report.findings]


def test_missing_cycle_reported_after_open_time_and_retry_window(monitor, clock, session_factory):
    clock.set(utc(2025, 1, 15, 1, 4))
    assert monitor.check().healthy

    clock.set(utc(2025, 1, 15, 1, 5))
    report = monitor.check()

    assert _kinds(report) == ["missing_cycle"]
    assert report.alerts_raised == 1
    # the same finding is only alerted once per day
    assert monitor.check().alerts_raised == 0
    with session_scope(session_factory) as session:
        assert len(AlertRepository(session).list_recent(kind="missing_cycle")) == 1


def test_stale_draft_is_critical(monitor, clock, session_factory, store_fixtures, scenario_fixtures):
    store_fixtures(scenario_fixtures)
    matches = matches_for(scenario_fixtures)
    with session_scope(session_factory) as session:
        CycleRepository(session).create_draft(
            game_date=GAME_DATE,
            matches=matches,
            betting_deadline=matches[0].kickoff_utc,
            created_at=utc(2025, 1, 15, 0, 10),
        )

    clock.set(utc(2025, 1, 15, 1, 10))
    report = monitor.check()

    assert _kinds(report) == ["stale_draft"]
    assert report.findings[0].severity.value == "critical"


def test_resolution_delay_reported_two_hours_past_the_floor(monitor, clock, cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=4, status=CycleStatus.PENDING_RESULTS)

    clock.set(utc(2025, 1, 15, 22, 29))
    assert monitor.check().healthy

    clock.set(utc(2025, 1, 15, 22, 30))
    report = monitor.check()

    assert _kinds(report) == ["resolution_delayed"]
    assert report.findings[0].cycle_id == 4


def test_parked_cycle_is_reported(monitor, clock, cycle_factory, scenario_fixtures, session_factory):
    cycle_factory(scenario_fixtures, cycle_id=4, status=CycleStatus.READY_FOR_RESOLUTION)
    with session_scope(session_factory) as session:
        repo = CycleRepository(session)
        repo.park(repo.get_by_cycle_id(4), error="reverted: results already set", at=utc(2025, 1, 15, 21, 0))

    clock.set(utc(2025, 1, 15, 21, 0))
    report = monitor.check()

    assert _kinds(report) == ["cycle_parked"]
    assert "results already set" in report.findings[0].message


def test_resolved_cycle_awaiting_evaluation_past_grace(monitor, clock, cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=4, status=CycleStatus.RESOLVED, at=utc(2025, 1, 15, 21, 0))

    clock.set(utc(2025, 1, 15, 21, 29))
    assert monitor.check().healthy

    clock.set(utc(2025, 1, 15, 21, 30))
    assert _kinds(monitor.check()) == ["evaluation_pending"]


def test_only_recent_evaluated_cycles_are_rechecked(monitor, clock, cycle_factory, make_fixture, session_factory):
    for cycle_id, day in ((2, 2), (14, 14)):
        fixtures = [make_fixture(cycle_id * 100 + index, utc(2025, 1, day, 12, index)) for index in range(10)]
        cycle_factory(
            fixtures,
            cycle_id=cycle_id,
            game_date=utc(2025, 1, day).date(),
            status=CycleStatus.RESOLVED,
            at=utc(2025, 1, day, 21, 0),
        )
    with session_scope(session_factory) as session:
        session.execute(
            update(Cycle)
            .where(Cycle.cycle_id.in_([2, 14]))
            .values(
                status=CycleStatus.EVALUATED.value,
                evaluation_completed=True,
                parked=True,
                last_error="evaluator_data_integrity",
            )
        )

    clock.set(utc(2025, 1, 15, 0, 30))
    report = monitor.check()

    assert [(finding.kind, finding.cycle_id) for finding in report.findings] == [("cycle_parked", 14)]
