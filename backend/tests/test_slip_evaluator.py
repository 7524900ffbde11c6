from __future__ import annotations

import pytest

from app.core.errors import InvalidTransition
from app.db import session_scope
from app.domain import Prediction, ResolutionArtifact, ResultPair
from app.domain.outcomes import BetType, MoneylineResult, OverUnderResult, Selection
from app.models import CycleStatus
from app.repositories import AlertRepository, CycleRepository, SlipRepository
from app.services.alerts import AlertService
from factories import PLAYER, predictions_for, utc
from pipelines.slip_evaluator import (
    EVALUATED,
    INTEGRITY_FAILURE,
    VERIFIED,
    SlipEvaluator,
    SlipScore,
    rank_slips,
    score_predictions,
)

ALL_HOME_OVER = ResolutionArtifact(tuple(ResultPair(MoneylineResult.HOME, OverUnderResult.OVER) for _ in range(10)))


@pytest.fixture
def evaluator(session_factory, test_settings, clock):
    return SlipEvaluator(session_factory, test_settings, clock, alerts=AlertService(session_factory, clock))


def _add_slip(session_factory, slip_id, cycle_id, predictions, placed_at):
    with session_scope(session_factory) as session:
        SlipRepository(session).add_slip(
            slip_id=slip_id,
            cycle_id=cycle_id,
            player_address=PLAYER,
            predictions=predictions,
            placed_at=placed_at,
        )


def _slips(session_factory, cycle_id):
    with session_scope(session_factory) as session:
        return {slip.slip_id: slip for slip in SlipRepository(session).list_for_cycle(cycle_id)}


def _cycle(session_factory, cycle_id):
    with session_scope(session_factory) as session:
        return CycleRepository(session).get_by_cycle_id(cycle_id)


def test_score_multiplies_hit_odds_flooring_each_step():
    pairs = [ResultPair(MoneylineResult.HOME, OverUnderResult.OVER)] * 3
    pairs += [ResultPair(MoneylineResult.HOME, OverUnderResult.UNDER)] * 7
    predictions = [Prediction(index, BetType.OVER_UNDER, Selection.OVER, 1850) for index in range(10)]

    correct, score = score_predictions(predictions, ResolutionArtifact(tuple(pairs)), list(range(10)))

    # 1000 -> 1850 -> 3422 -> 6330; an end-of-slip floor would give 6331
    assert (correct, score) == (3, 6330)


def test_no_hits_scores_zero_correct_and_base_score():
    predictions = [Prediction(index, BetType.MONEYLINE, Selection.AWAY, 4000) for index in range(10)]

    assert score_predictions(predictions, ALL_HOME_OVER, list(range(10))) == (0, 1000)


def test_not_set_result_is_always_a_miss():
    pairs = (ResultPair.not_set(),) + ALL_HOME_OVER.results[1:]
    predictions = [Prediction(index, BetType.MONEYLINE, Selection.HOME, 2000) for index in range(10)]

    correct, _ = score_predictions(predictions, ResolutionArtifact(pairs), list(range(10)))

    assert correct == 9


def test_rank_breaks_ties_by_earlier_placement():
    scores = [
        SlipScore(1, 8, 5000, utc(2025, 1, 15, 10, 0, 1)),
        SlipScore(2, 8, 5000, utc(2025, 1, 15, 10, 0, 0)),
        SlipScore(3, 8, 5001, utc(2025, 1, 15, 11, 0, 0)),
        SlipScore(4, 9, 1200, utc(2025, 1, 15, 11, 30, 0)),
    ]

    ranked = rank_slips(scores)

    assert [(score.slip_id, score.leaderboard_rank) for score in ranked] == [(4, 1), (3, 2), (2, 3), (1, 4)]


def test_prize_eligibility_needs_top_three_and_seven_correct():
    assert SlipScore(1, 7, 0, utc(2025, 1, 15), leaderboard_rank=3).prize_eligible
    assert not SlipScore(1, 6, 0, utc(2025, 1, 15), leaderboard_rank=1).prize_eligible
    assert not SlipScore(1, 10, 0, utc(2025, 1, 15), leaderboard_rank=4).prize_eligible


@pytest.fixture
def resolved_cycle(cycle_factory, scenario_fixtures, session_factory):
    matches = cycle_factory(scenario_fixtures, cycle_id=21, status=CycleStatus.RESOLVED)
    home = [Selection.HOME] * 10
    seven = [Selection.HOME] * 7 + [Selection.AWAY] * 3
    _add_slip(session_factory, 1, 21, predictions_for(matches, home), utc(2025, 1, 15, 10, 0, 1))
    _add_slip(session_factory, 2, 21, predictions_for(matches, home), utc(2025, 1, 15, 10, 0, 0))
    _add_slip(session_factory, 3, 21, predictions_for(matches, [Selection.AWAY] * 10), utc(2025, 1, 15, 9, 0))
    _add_slip(session_factory, 4, 21, predictions_for(matches, seven), utc(2025, 1, 15, 10, 5))
    return matches


def test_evaluate_cycle_scores_ranks_and_completes(evaluator, resolved_cycle, session_factory):
    report = evaluator.evaluate_cycle(21)

    assert report.status == EVALUATED
    assert report.slips == 4
    assert report.prize_eligible == [2, 1, 4]
    slips = _slips(session_factory, 21)
    assert {slip_id: slip.leaderboard_rank for slip_id, slip in slips.items()} == {2: 1, 1: 2, 4: 3, 3: 4}
    assert slips[1].correct_count == 10 and slips[1].final_score == slips[2].final_score
    assert slips[3].correct_count == 0 and slips[3].final_score == 1000
    assert not slips[3].prize_eligible
    assert all(slip.is_evaluated for slip in slips.values())
    cycle = _cycle(session_factory, 21)
    assert cycle.evaluation_completed
    assert cycle.status == CycleStatus.EVALUATED.value


def test_rerun_verifies_without_rewriting(evaluator, resolved_cycle, session_factory, clock):
    evaluator.evaluate_cycle(21)
    before = {slip_id: slip.evaluated_at for slip_id, slip in _slips(session_factory, 21).items()}
    clock.advance(hours=1)

    report = evaluator.evaluate_cycle(21)

    assert report.status == VERIFIED
    assert report.drift == []
    after = {slip_id: slip.evaluated_at for slip_id, slip in _slips(session_factory, 21).items()}
    assert after == before


def test_rerun_detects_drift_and_parks_cycle(evaluator, resolved_cycle, session_factory):
    evaluator.evaluate_cycle(21)
    with session_scope(session_factory) as session:
        SlipRepository(session).get(3).final_score = 999_999

    report = evaluator.evaluate_cycle(21)

    assert report.status == INTEGRITY_FAILURE
    assert [entry["slip_id"] for entry in report.drift] == [3]
    assert _cycle(session_factory, 21).parked
    with session_scope(session_factory) as session:
        assert AlertRepository(session).list_recent(kind="evaluator_data_integrity")


def test_prediction_for_foreign_fixture_stops_evaluation(evaluator, resolved_cycle, session_factory):
    foreign = predictions_for(resolved_cycle, [Selection.HOME] * 10)
    foreign[5] = Prediction(999_999, BetType.MONEYLINE, Selection.HOME, 1800)
    _add_slip(session_factory, 5, 21, foreign, utc(2025, 1, 15, 11, 0))

    report = evaluator.evaluate_cycle(21)

    assert report.status == INTEGRITY_FAILURE
    assert report.drift[0]["slip_id"] == 5
    cycle = _cycle(session_factory, 21)
    assert cycle.parked and not cycle.evaluation_completed
    assert not any(slip.is_evaluated for slip in _slips(session_factory, 21).values())
    assert evaluator.run_once() == []


def test_unresolved_cycle_cannot_be_evaluated(evaluator, cycle_factory, scenario_fixtures):
    cycle_factory(scenario_fixtures, cycle_id=22, status=CycleStatus.READY_FOR_RESOLUTION)

    with pytest.raises(InvalidTransition):
        evaluator.evaluate_cycle(22)


def test_run_once_evaluates_each_resolved_cycle_once(evaluator, resolved_cycle):
    first = evaluator.run_once()

    assert [report.cycle_id for report in first] == [21]
    assert evaluator.run_once() == []
