from __future__ import annotations

import sys
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import build_engine, build_session_factory, init_db, session_scope
from app.domain import FixtureResultSnapshot, NormalizedFixture, NormalizedOdds, ResolutionArtifact, ResultPair
from app.domain.outcomes import MoneylineResult, OverUnderResult
from app.models import CycleStatus
from app.repositories import CycleRepository, FixtureRepository
from factories import (
    EASY_ODDS,
    GAME_DATE,
    HARD_ODDS,
    MEDIUM_ODDS,
    OVER_UNDER_ODDS,
    SCENARIO_KICKOFFS,
    ManualClock,
    StubFixtureSource,
    matches_for,
    utc,
)
from ingestion.normalize import GOALS_OVER_UNDER_MARKET_ID, MONEYLINE_MARKET_ID, OVER_UNDER_TOTAL


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        timezone="UTC",
        database_url=f"sqlite:///{tmp_path/'oddyssey.db'}",
        sportmonks_api_token="test-token",
        store_retry_attempts=2,
        store_retry_backoff_seconds=[0.0],
        league_exclude_keywords=["u21", "women"],
        cycle_open_time_utc="00:05",
        cycle_open_retry_minutes=60,
        evaluator_verify_sample_size=10,
    )


@pytest.fixture
def engine(test_settings):
    engine = build_engine(test_settings.resolved_database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(utc(2025, 1, 15, 9, 0))


@pytest.fixture
def stub_source() -> StubFixtureSource:
    return StubFixtureSource()


@pytest.fixture
def make_fixture():
    """Build a ``NormalizedFixture`` with a complete 1X2 and over/under 2.5 quote."""

    def _make(
        fixture_id: int,
        kickoff: datetime,
        *,
        league_id: int | None = None,
        moneyline: tuple[str, str, str] | None = EASY_ODDS,
        over_under: tuple[str, str] | None = OVER_UNDER_ODDS,
        status: str = "NS",
        league_name: str | None = None,
    ) -> NormalizedFixture:
        odds: list[NormalizedOdds] = []
        if moneyline is not None:
            for label, value in zip(("Home", "Draw", "Away"), moneyline):
                odds.append(NormalizedOdds(MONEYLINE_MARKET_ID, label, Decimal(value), bookmaker_id=2))
        if over_under is not None:
            for label, value in zip(("Over", "Under"), over_under):
                odds.append(
                    NormalizedOdds(
                        GOALS_OVER_UNDER_MARKET_ID, label, Decimal(value), total=OVER_UNDER_TOTAL, bookmaker_id=2
                    )
                )
        return NormalizedFixture(
            fixture_id=fixture_id,
            home_team=f"Home {fixture_id}",
            away_team=f"Away {fixture_id}",
            league_id=league_id,
            league_name=league_name or (f"League {league_id}" if league_id is not None else None),
            kickoff_utc=kickoff,
            status=status,
            odds=odds,
        )

    return _make


@pytest.fixture
def store_fixtures(session_factory):
    def _store(fixtures: Iterable[NormalizedFixture]) -> None:
        with session_scope(session_factory) as session:
            FixtureRepository(session).upsert_fixtures(fixtures)

    return _store


@pytest.fixture
def scenario_fixtures(make_fixture) -> list[NormalizedFixture]:
    """Ten selectable fixtures on 2025-01-15: 4 easy, 4 medium, 2 hard over five leagues."""

    difficulty = [EASY_ODDS] * 4 + [MEDIUM_ODDS] * 4 + [HARD_ODDS] * 2
    return [
        make_fixture(
            1000 + index,
            utc(2025, 1, 15, hour, minute),
            league_id=index // 2 + 1,
            moneyline=difficulty[index],
        )
        for index, (hour, minute) in enumerate(SCENARIO_KICKOFFS)
    ]


@pytest.fixture
def cycle_factory(session_factory, store_fixtures):
    """Store fixtures and a cycle over them, walked to ``status``.

    READY_FOR_RESOLUTION and RESOLVED cycles are staged with ``artifact``
    (default: every match Home / Over).
    """

    def _create(
        fixtures: list[NormalizedFixture],
        *,
        cycle_id: int = 1,
        game_date: date = GAME_DATE,
        status: CycleStatus = CycleStatus.OPEN,
        artifact: ResolutionArtifact | None = None,
        at: datetime | None = None,
    ):
        store_fixtures(fixtures)
        matches = matches_for(fixtures)
        at = at or utc(2025, 1, 15, 9, 0)
        artifact = artifact or ResolutionArtifact(
            tuple(ResultPair(MoneylineResult.HOME, OverUnderResult.OVER) for _ in matches)
        )
        with session_scope(session_factory) as session:
            repo = CycleRepository(session)
            cycle = repo.create_draft(
                game_date=game_date,
                matches=matches,
                betting_deadline=min(match.kickoff_utc for match in matches),
                created_at=at,
            )
            repo.promote_draft(cycle.id, cycle_id=cycle_id, tx_hash=f"0x{cycle_id:064x}", at=at)
            if status is CycleStatus.CANCELLED:
                repo.cancel(cycle, reason="test", at=at)
            elif status is not CycleStatus.OPEN:
                repo.mark_pending_results(cycle, at=at)
                if status in {CycleStatus.READY_FOR_RESOLUTION, CycleStatus.RESOLVED}:
                    repo.stage_resolution(cycle, artifact, prepared_at=at, fixtures=[])
                if status is CycleStatus.RESOLVED:
                    repo.mark_resolved(cycle, tx_hash="0xresolved", resolved_at=at)
        return matches

    return _create


@pytest.fixture
def store_result(session_factory):
    def _store(fixture_id: int, status: str, home: int | None = None, away: int | None = None, finished_at=None):
        with session_scope(session_factory) as session:
            FixtureRepository(session).upsert_result(
                FixtureResultSnapshot(
                    fixture_id=fixture_id,
                    status=status,
                    home_score=home,
                    away_score=away,
                    finished_at=finished_at,
                )
            )

    return _store
