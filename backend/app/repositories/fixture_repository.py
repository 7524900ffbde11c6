"""Fixture, odds and result data access helpers."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.domain import FixtureResultSnapshot, NormalizedFixture
from app.domain.outcomes import (
    PRE_MATCH_STATUSES,
    derive_outcomes,
    is_cancelled,
    is_terminal,
    moneyline_label,
    over_under_label,
)
from app.models import Fixture, FixtureOdds, FixtureResult, utcnow


class FixtureRepository:
    """Encapsulate fixture, odds and result persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def upsert_fixture(self, fixture: NormalizedFixture, *, synced_at: datetime | None = None) -> Fixture:
        existing = self._session.get(Fixture, fixture.fixture_id)
        if existing is None:
            existing = Fixture(fixture_id=fixture.fixture_id)
            self._session.add(existing)

        existing.home_team = fixture.home_team
        existing.away_team = fixture.away_team
        existing.league_id = fixture.league_id
        existing.league_name = fixture.league_name
        existing.kickoff_utc = fixture.kickoff_utc
        # A locally cancelled fixture keeps its status until the provider
        # reports something other than a pre-match code.
        if not (is_cancelled(existing.status) and fixture.status in PRE_MATCH_STATUSES):
            existing.status = fixture.status
        if fixture.finished_at is not None:
            existing.finished_at = fixture.finished_at
        existing.raw_data = fixture.raw_data
        existing.last_synced_at = synced_at or utcnow()

        current = {(odd.market_id, odd.label, odd.total): odd for odd in existing.odds}
        for odd in fixture.odds:
            key = (odd.market_id, odd.label, odd.total or "")
            record = current.get(key)
            if record is None:
                record = FixtureOdds(
                    market_id=odd.market_id,
                    label=odd.label,
                    total=odd.total or "",
                )
                existing.odds.append(record)
                current[key] = record
            record.value = odd.value
            record.bookmaker_id = odd.bookmaker_id
            record.updated_at = odd.updated_at or synced_at or utcnow()
        return existing

    def upsert_fixtures(self, fixtures: Iterable[NormalizedFixture], *, synced_at: datetime | None = None) -> int:
        count = 0
        for fixture in fixtures:
            self.upsert_fixture(fixture, synced_at=synced_at)
            count += 1
        return count

    def set_status(
        self, fixture_id: int, status: str, *, finished_at: datetime | None = None
    ) -> Fixture | None:
        fixture = self._session.get(Fixture, fixture_id)
        if fixture is None:
            return None
        fixture.status = status
        if finished_at is not None:
            fixture.finished_at = finished_at
        return fixture

    def record_reads(
        self,
        *,
        ok: Iterable[int] = (),
        failed: dict[int, str] | None = None,
        at: datetime,
    ) -> None:
        """Record the outcome of provider reads for the given fixtures."""

        failed = failed or {}
        fixtures = self.get_fixtures(set(ok) | set(failed))
        for fixture_id in ok:
            fixture = fixtures.get(fixture_id)
            if fixture is not None:
                fixture.last_read_ok_at = at
                fixture.last_read_error = None
        for fixture_id, kind in failed.items():
            fixture = fixtures.get(fixture_id)
            if fixture is not None:
                fixture.last_read_error = kind
                fixture.last_read_error_at = at

    def upsert_result(self, snapshot: FixtureResultSnapshot) -> FixtureResult | None:
        """Store a terminal or cancelled result, deriving both outcomes.

        Returns None when the snapshot is neither terminal nor cancelled, or when
        a terminal snapshot is missing a score.
        """

        if is_cancelled(snapshot.status):
            moneyline, over_under = None, None
        elif is_terminal(snapshot.status):
            if snapshot.home_score is None or snapshot.away_score is None:
                return None
            derived = derive_outcomes(snapshot.home_score, snapshot.away_score)
            moneyline, over_under = moneyline_label(derived[0]), over_under_label(derived[1])
        else:
            return None

        record = self._session.get(FixtureResult, snapshot.fixture_id)
        if record is None:
            record = FixtureResult(fixture_id=snapshot.fixture_id)
            self._session.add(record)

        record.status = snapshot.status
        record.home_score = snapshot.home_score
        record.away_score = snapshot.away_score
        record.ht_home = snapshot.ht_home
        record.ht_away = snapshot.ht_away
        record.outcome_1x2 = moneyline
        record.outcome_ou25 = over_under
        if snapshot.finished_at is not None:
            record.finished_at = snapshot.finished_at
        record.updated_at = utcnow()

        self.set_status(snapshot.fixture_id, snapshot.status, finished_at=snapshot.finished_at)
        return record

    # ------------------------------------------------------------------
    # Queries

    def get_fixture(self, fixture_id: int) -> Fixture | None:
        return self._session.get(Fixture, fixture_id)

    def get_fixtures(self, fixture_ids: Iterable[int]) -> dict[int, Fixture]:
        ids = list(fixture_ids)
        if not ids:
            return {}
        query = (
            select(Fixture)
            .options(selectinload(Fixture.result))
            .where(Fixture.fixture_id.in_(ids))
        )
        return {fixture.fixture_id: fixture for fixture in self._session.execute(query).scalars()}

    def list_selection_candidates(
        self,
        *,
        kickoff_from: datetime,
        kickoff_to: datetime,
        statuses: Sequence[str] = tuple(PRE_MATCH_STATUSES),
    ) -> list[Fixture]:
        query = (
            select(Fixture)
            .options(selectinload(Fixture.odds))
            .where(
                Fixture.kickoff_utc >= kickoff_from,
                Fixture.kickoff_utc < kickoff_to,
                Fixture.status.in_(list(statuses)),
            )
            .order_by(Fixture.kickoff_utc.asc(), Fixture.fixture_id.asc())
        )
        return list(self._session.execute(query).scalars())

    def get_result(self, fixture_id: int) -> FixtureResult | None:
        return self._session.get(FixtureResult, fixture_id)

    def get_results(self, fixture_ids: Iterable[int]) -> dict[int, FixtureResult]:
        ids = list(fixture_ids)
        if not ids:
            return {}
        query = select(FixtureResult).where(FixtureResult.fixture_id.in_(ids))
        return {result.fixture_id: result for result in self._session.execute(query).scalars()}

    def settled_fixture_ids(self, fixture_ids: Iterable[int]) -> set[int]:
        """Ids whose stored state needs no further provider calls."""

        ids = list(fixture_ids)
        if not ids:
            return set()
        settled: set[int] = set()
        for fixture in self.get_fixtures(ids).values():
            if is_cancelled(fixture.status):
                settled.add(fixture.fixture_id)
                continue
            result = fixture.result
            if (
                result is not None
                and is_terminal(result.status)
                and result.outcome_1x2 is not None
                and result.outcome_ou25 is not None
            ):
                settled.add(fixture.fixture_id)
        return settled


__all__ = ["FixtureRepository"]
