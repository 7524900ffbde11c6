from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.core.errors import InsufficientFixtures, LedgerError, LedgerErrorKind, NotFound
from app.db import session_scope
from app.domain.outcomes import Selection
from app.main import create_app, get_admin_triggers
from app.models import CycleStatus
from app.repositories import SlipRepository
from factories import PLAYER, predictions_for, utc


@pytest.fixture
def app(test_settings, session_factory):
    return create_app(test_settings, context=SimpleNamespace(session_factory=session_factory))


@pytest.fixture
def client(app):
    """Test client that cleans up dependency overrides after each test."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def triggers(app):
    mock = MagicMock()
    app.dependency_overrides[get_admin_triggers] = lambda: mock
    return mock


def test_healthcheck(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_cycles_newest_first(client, cycle_factory, scenario_fixtures, make_fixture):
    cycle_factory(scenario_fixtures, cycle_id=1)
    later = [make_fixture(2000 + index, utc(2025, 1, 16, 12, index)) for index in range(10)]
    cycle_factory(later, cycle_id=2, game_date=utc(2025, 1, 16).date())

    response = client.get("/cycles", params={"limit": 5})

    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert [item["cycle_id"] for item in payload["items"]] == [2, 1]


def test_cycle_detail_hides_internal_states(client, cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=3, status=CycleStatus.READY_FOR_RESOLUTION)

    response = client.get("/cycles/3")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "pending_resolution"
    assert payload["results"] is None
    assert len(payload["matches"]) == 10
    assert payload["matches"][0]["odds"] == {"home": 1900, "draw": 1950, "away": 2000, "over": 1850, "under": 1950}


def test_resolved_cycle_exposes_results(client, cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=3, status=CycleStatus.RESOLVED)

    payload = client.get("/cycles/3").json()

    assert payload["is_resolved"] is True
    assert payload["results"] == [[1, 1]] * 10


def test_unknown_cycle_is_404(client):
    assert client.get("/cycles/99").status_code == 404
    assert client.get("/cycles/99/leaderboard").status_code == 404
    assert client.get("/cycles/current").status_code == 404


def test_leaderboard_lists_ranked_slips(client, cycle_factory, scenario_fixtures, session_factory):
    matches = cycle_factory(scenario_fixtures, cycle_id=3, status=CycleStatus.RESOLVED)
    predictions = predictions_for(matches, [Selection.HOME] * 10)
    with session_scope(session_factory) as session:
        repo = SlipRepository(session)
        for slip_id, rank in ((11, 2), (12, 1), (13, None)):
            slip = repo.add_slip(
                slip_id=slip_id,
                cycle_id=3,
                player_address=PLAYER,
                predictions=predictions,
                placed_at=utc(2025, 1, 15, 10, slip_id),
            )
            if rank is not None:
                repo.apply_evaluation(
                    slip,
                    correct_count=10 - rank,
                    final_score=9000 - rank,
                    leaderboard_rank=rank,
                    prize_eligible=True,
                    evaluated_at=utc(2025, 1, 15, 21, 0),
                )

    payload = client.get("/cycles/3/leaderboard").json()

    assert payload["total"] == 2
    assert [item["slip_id"] for item in payload["items"]] == [12, 11]
    assert payload["items"][0]["rank"] == 1


def test_fixture_result(client, store_fixtures, scenario_fixtures, store_result):
    store_fixtures(scenario_fixtures)
    store_result(1000, "FT", 2, 1)

    response = client.get("/fixtures/1000/result")

    assert response.status_code == 200
    assert response.json()["home_score"] == 2
    assert response.json()["outcome_1x2"] is not None
    assert client.get("/fixtures/1001/result").status_code == 404


def test_admin_select_passes_date_and_dry_run(client, triggers):
    triggers.select.return_value = {"game_date": "2025-01-15", "matches": []}

    response = client.post("/admin/cycles/select", params={"date": "2025-01-15", "dry_run": "true"})

    assert response.status_code == 200
    assert response.json() == {"action": "select", "result": {"game_date": "2025-01-15", "matches": []}}
    triggers.select.assert_called_once_with(utc(2025, 1, 15).date(), dry_run=True)


def test_admin_engine_errors_map_to_status_codes(client, triggers):
    triggers.select.side_effect = InsufficientFixtures("only 7 eligible fixtures")
    triggers.resolve.side_effect = NotFound("cycle 99 does not exist")

    conflict = client.post("/admin/cycles/select", params={"date": "2025-01-15"})
    missing = client.post("/admin/cycles/99/resolve")

    assert conflict.status_code == 409
    assert conflict.json() == {"error": "insufficient_fixtures", "detail": "only 7 eligible fixtures"}
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"


def test_admin_ledger_failure_hides_rpc_detail(client, triggers):
    triggers.resolve.side_effect = LedgerError(LedgerErrorKind.REVERTED, "execution reverted: 0xdeadbeef")

    response = client.post("/admin/cycles/4/resolve")

    assert response.status_code == 502
    assert response.json() == {"error": "reverted"}
