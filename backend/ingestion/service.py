"""Sports provider adapter: the only component that knows the provider's shape."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Protocol

from loguru import logger
from sqlalchemy.orm import Session

from app.core.clock import Clock
from app.core.config import Settings
from app.core.errors import ProviderError, ProviderErrorKind
from app.db import run_in_transaction
from app.domain import FixtureResultSnapshot, NormalizedFixture
from app.domain.outcomes import is_cancelled, is_terminal
from app.repositories import FixtureRepository

from .normalize import is_excluded, normalize_fixture, normalize_result


class FixtureSource(Protocol):
    def iter_fixtures_by_date(self, day: date) -> Iterable[dict[str, Any]]: ...

    def fetch_fixture(self, fixture_id: int) -> dict[str, Any]: ...


@dataclass(slots=True)
class FixtureFetchSummary:
    days: list[str] = field(default_factory=list)
    fixtures_seen: int = 0
    fixtures_saved: int = 0
    excluded: int = 0
    malformed: int = 0
    odds_saved: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "days": self.days,
            "fixtures_seen": self.fixtures_seen,
            "fixtures_saved": self.fixtures_saved,
            "excluded": self.excluded,
            "malformed": self.malformed,
            "odds_saved": self.odds_saved,
        }


@dataclass(slots=True)
class ResultsBatch:
    """Outcome of a results fetch: per-id successes, statuses and errors side by side."""

    results: list[FixtureResultSnapshot] = field(default_factory=list)
    statuses: dict[int, str] = field(default_factory=dict)
    errors: dict[int, ProviderError] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [snapshot.fixture_id for snapshot in self.results],
            "statuses": {str(key): value for key, value in self.statuses.items()},
            "errors": {str(key): error.kind.value for key, error in self.errors.items()},
        }


class SportsProviderAdapter:
    def __init__(
        self,
        client: FixtureSource,
        session_factory: Callable[[], Session],
        settings: Settings,
        clock: Clock,
        *,
        on_malformed: Callable[[ProviderError], None] | None = None,
    ) -> None:
        self._client = client
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self._on_malformed = on_malformed

    @property
    def clock(self) -> Clock:
        return self._clock

    def _report_malformed(self, error: ProviderError) -> None:
        logger.warning("Dropping malformed provider record (fixture={}): {}", error.fixture_id, error)
        if self._on_malformed is not None:
            self._on_malformed(error)

    def fetch_7day_fixtures(self, *, start: date | None = None) -> FixtureFetchSummary:
        """Fetch fixtures and odds for the window and upsert them in one transaction.

        Every day is fetched before anything is written, so a provider failure
        raises ``ProviderError`` and leaves the stored fixtures untouched.
        """

        first_day = start or self._clock.now().date()
        summary = FixtureFetchSummary()
        collected: dict[int, NormalizedFixture] = {}
        keywords = self._settings.league_exclude_keywords
        preferred = self._settings.provider_preferred_bookmakers

        for offset in range(self._settings.provider_fixture_window_days):
            day = first_day + timedelta(days=offset)
            summary.days.append(day.isoformat())
            day_count = 0
            for payload in self._client.iter_fixtures_by_date(day):
                summary.fixtures_seen += 1
                try:
                    fixture = normalize_fixture(payload, preferred_bookmakers=preferred)
                except ProviderError as exc:
                    if exc.kind is not ProviderErrorKind.MALFORMED:
                        raise
                    summary.malformed += 1
                    self._report_malformed(exc)
                    continue
                if is_excluded(fixture.league_name, fixture.home_team, fixture.away_team, keywords):
                    summary.excluded += 1
                    continue
                collected[fixture.fixture_id] = fixture
                day_count += 1
            logger.info("Fetched {} fixtures for {}", day_count, day)

        synced_at = self._clock.now()

        def _write(session: Session) -> int:
            return FixtureRepository(session).upsert_fixtures(collected.values(), synced_at=synced_at)

        summary.fixtures_saved = run_in_transaction(
            self._session_factory,
            _write,
            attempts=self._settings.store_retry_attempts,
            backoff=self._settings.store_retry_backoff_schedule,
            label="fixture upsert",
        )
        summary.odds_saved = sum(len(fixture.odds) for fixture in collected.values())
        logger.info(
            "Fixture refresh finished: seen={}, saved={}, excluded={}, malformed={}",
            summary.fixtures_seen,
            summary.fixtures_saved,
            summary.excluded,
            summary.malformed,
        )
        return summary

    def fetch_fixture_results(self, fixture_ids: Iterable[int]) -> ResultsBatch:
        """Fetch results for ``fixture_ids``; one failing id never aborts the batch.

        ``results`` holds at most one snapshot per id, and only for fixtures that
        are over or called off. In-progress fixtures appear in ``statuses`` only.
        """

        batch = ResultsBatch()
        observed_at = self._clock.now()
        for fixture_id in sorted(set(fixture_ids)):
            try:
                payload = self._client.fetch_fixture(fixture_id)
                snapshot = normalize_result(payload, observed_at=observed_at)
            except ProviderError as exc:
                exc.fixture_id = fixture_id
                batch.errors[fixture_id] = exc
                if exc.kind is ProviderErrorKind.MALFORMED:
                    self._report_malformed(exc)
                else:
                    logger.warning("Result fetch for fixture {} failed: {}", fixture_id, exc.kind.value)
                continue

            batch.statuses[fixture_id] = snapshot.status
            if is_cancelled(snapshot.status):
                batch.results.append(snapshot)
            elif is_terminal(snapshot.status):
                if snapshot.home_score is None or snapshot.away_score is None:
                    error = ProviderError(
                        ProviderErrorKind.MALFORMED,
                        f"fixture {fixture_id} is {snapshot.status} without a final score",
                        fixture_id=fixture_id,
                    )
                    batch.errors[fixture_id] = error
                    self._report_malformed(error)
                    continue
                batch.results.append(snapshot)
        return batch


__all__ = ["FixtureFetchSummary", "ResultsBatch", "SportsProviderAdapter"]
