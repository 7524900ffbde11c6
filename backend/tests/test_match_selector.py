from __future__ import annotations

from decimal import Decimal

import pytest

from app.core.errors import InsufficientFixtures
from app.db import session_scope
from factories import EASY_ODDS, GAME_DATE, HARD_ODDS, MEDIUM_ODDS, utc
from pipelines.match_selector import EASY, HARD, MEDIUM, MatchSelector, classify_difficulty


@pytest.fixture
def selector() -> MatchSelector:
    return MatchSelector(exclude_keywords=["u21", "women"])


def _select(session_factory, selector, **kwargs):
    with session_scope(session_factory) as session:
        return selector.select_matches(session, GAME_DATE, **kwargs)


def _pool(make_fixture, profile: list[tuple[str, str, str]], *, start_id: int = 2000):
    # one fixture every 20 minutes from 10:00Z, two per league
    return [
        make_fixture(
            start_id + index,
            utc(2025, 1, 15, 10 + (index * 20) // 60, (index * 20) % 60),
            league_id=index // 2 + 1,
            moneyline=odds,
        )
        for index, odds in enumerate(profile)
    ]


@pytest.mark.parametrize(
    ("max_odd", "bucket"),
    [("2.00", EASY), ("2.01", MEDIUM), ("3.50", MEDIUM), ("3.51", HARD)],
)
def test_classify_difficulty_boundaries(max_odd, bucket):
    assert classify_difficulty(Decimal(max_odd)) == bucket


def test_selects_ten_balanced_matches_in_kickoff_order(session_factory, store_fixtures, scenario_fixtures, selector):
    store_fixtures(scenario_fixtures)

    result = _select(session_factory, selector)

    assert len(result.matches) == 10
    assert [m.fixture_id for m in result.matches] == [f.fixture_id for f in scenario_fixtures]
    assert result.summary.distribution == {EASY: 4, MEDIUM: 4, HARD: 2}
    assert result.betting_deadline == utc(2025, 1, 15, 12, 0)
    first = result.matches[0]
    assert first.odds.to_dict() == {"home": 1900, "draw": 1950, "away": 2000, "over": 1850, "under": 1950}


def test_short_hard_bucket_is_filled_from_easier_bucket(session_factory, store_fixtures, make_fixture, selector):
    store_fixtures(_pool(make_fixture, [EASY_ODDS] * 5 + [MEDIUM_ODDS] * 6 + [HARD_ODDS] * 1))

    result = _select(session_factory, selector)

    assert result.summary.distribution == {EASY: 4, MEDIUM: 5, HARD: 1}
    assert result.summary.fallbacks == ["hard<-medium:1"]


def test_no_more_than_two_fixtures_per_league(session_factory, store_fixtures, make_fixture, selector):
    fixtures = _pool(make_fixture, [EASY_ODDS] * 10)
    # three extra easy fixtures from league 1 kicking off earliest
    fixtures += [
        make_fixture(3000 + index, utc(2025, 1, 15, 9, 30 + index), league_id=1) for index in range(3)
    ]
    store_fixtures(fixtures)

    result = _select(session_factory, selector)

    leagues = [m.league_id for m in result.matches]
    assert max(leagues.count(league) for league in set(leagues)) <= 2


def test_rejects_out_of_range_incomplete_and_excluded_fixtures(
    session_factory, store_fixtures, make_fixture, scenario_fixtures, selector
):
    kickoff = utc(2025, 1, 15, 11, 0)
    rejected = [
        make_fixture(4001, kickoff, league_id=90, moneyline=("1.05", "8.00", "12.00")),
        make_fixture(4002, kickoff, league_id=91, over_under=("3.40", "1.20")),
        make_fixture(4003, kickoff, league_id=92, over_under=None),
        make_fixture(4004, kickoff, league_id=93, league_name="Premier League U21"),
    ]
    store_fixtures(scenario_fixtures + rejected)

    result = _select(session_factory, selector)

    assert {m.fixture_id for m in result.matches}.isdisjoint({4001, 4002, 4003, 4004})
    assert result.summary.rejected == {
        "moneyline_out_of_range": 1,
        "over_under_out_of_range": 1,
        "incomplete_odds": 1,
        "excluded_league": 1,
    }


def test_only_fixtures_kicking_off_on_the_date_and_not_started(
    session_factory, store_fixtures, make_fixture, scenario_fixtures, selector
):
    others = [
        make_fixture(5001, utc(2025, 1, 16, 0, 0), league_id=80),
        make_fixture(5002, utc(2025, 1, 14, 23, 59), league_id=81),
        make_fixture(5003, utc(2025, 1, 15, 11, 0), league_id=82, status="LIVE"),
    ]
    store_fixtures(scenario_fixtures + others)

    result = _select(session_factory, selector)

    assert {m.fixture_id for m in result.matches}.isdisjoint({5001, 5002, 5003})


def test_fewer_than_ten_candidates_raises(session_factory, store_fixtures, scenario_fixtures, selector):
    store_fixtures(scenario_fixtures[:8])

    with pytest.raises(InsufficientFixtures) as exc_info:
        _select(session_factory, selector)
    assert exc_info.value.details["selectable"] == 8


def test_fixtures_already_kicked_off_are_skipped(session_factory, store_fixtures, scenario_fixtures, selector):
    store_fixtures(scenario_fixtures)

    with pytest.raises(InsufficientFixtures):
        _select(session_factory, selector, now=utc(2025, 1, 15, 12, 15))
