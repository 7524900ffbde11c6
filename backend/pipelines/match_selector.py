"""Daily match selection: ten fixtures balanced by difficulty and league."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from app.core.clock import ensure_utc
from app.core.errors import InsufficientFixtures
from app.domain import CYCLE_SIZE, FrozenOdds, MatchEntry, to_thousandths
from app.domain.outcomes import PRE_MATCH_STATUSES
from app.models import Fixture
from app.repositories import FixtureRepository
from ingestion.normalize import GOALS_OVER_UNDER_MARKET_ID, MONEYLINE_MARKET_ID, OVER_UNDER_TOTAL, is_excluded

EASY = "easy"
MEDIUM = "medium"
HARD = "hard"

EASY_MAX_ODD = Decimal("2.00")
MEDIUM_MAX_ODD = Decimal("3.50")

MONEYLINE_RANGE = (Decimal("1.10"), Decimal("10.00"))
OVER_UNDER_RANGE = (Decimal("1.10"), Decimal("3.00"))

MAX_PER_LEAGUE = 2

DEFAULT_TARGETS: dict[str, int] = {EASY: 4, MEDIUM: 4, HARD: 2}

# Buckets drawn from, in order, when a bucket runs short. Easier buckets first.
_FALLBACK_ORDER: dict[str, tuple[str, ...]] = {
    HARD: (MEDIUM, EASY),
    MEDIUM: (EASY, HARD),
    EASY: (MEDIUM, HARD),
}


@dataclass(slots=True, frozen=True)
class _Candidate:
    fixture_id: int
    kickoff_utc: datetime
    league_id: int | None
    league_name: str | None
    home_team: str
    away_team: str
    home: Decimal
    draw: Decimal
    away: Decimal
    over: Decimal
    under: Decimal

    @property
    def max_moneyline(self) -> Decimal:
        return max(self.home, self.draw, self.away)

    @property
    def margin(self) -> Decimal:
        return 1 / self.home + 1 / self.draw + 1 / self.away - 1

    @property
    def league_key(self) -> Any:
        # fixtures without a league id never collide with each other
        return self.league_id if self.league_id is not None else ("fixture", self.fixture_id)

    def sort_key(self) -> tuple[datetime, Decimal, int]:
        return (self.kickoff_utc, self.margin, self.fixture_id)


@dataclass(slots=True)
class SelectionSummary:
    game_date: str
    candidates: int = 0
    rejected: dict[str, int] = field(default_factory=dict)
    distribution: dict[str, int] = field(default_factory=dict)
    fallbacks: list[str] = field(default_factory=list)
    leagues: dict[str, int] = field(default_factory=dict)

    def reject(self, reason: str) -> None:
        self.rejected[reason] = self.rejected.get(reason, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "game_date": self.game_date,
            "candidates": self.candidates,
            "rejected": dict(self.rejected),
            "distribution": dict(self.distribution),
            "fallbacks": list(self.fallbacks),
            "leagues": dict(self.leagues),
        }


@dataclass(slots=True)
class SelectionResult:
    matches: list[MatchEntry]
    summary: SelectionSummary

    @property
    def betting_deadline(self) -> datetime:
        return min(match.kickoff_utc for match in self.matches)


def classify_difficulty(max_moneyline: Decimal) -> str:
    if max_moneyline <= EASY_MAX_ODD:
        return EASY
    if max_moneyline <= MEDIUM_MAX_ODD:
        return MEDIUM
    return HARD


def day_bounds(game_date: date) -> tuple[datetime, datetime]:
    start = datetime.combine(game_date, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _in_range(value: Decimal, bounds: tuple[Decimal, Decimal]) -> bool:
    low, high = bounds
    return low <= value <= high


def _read_odds(fixture: Fixture) -> dict[str, Decimal | None]:
    odds: dict[str, Decimal | None] = {"Home": None, "Draw": None, "Away": None, "Over": None, "Under": None}
    for odd in fixture.odds:
        if odd.market_id == MONEYLINE_MARKET_ID and odd.label in ("Home", "Draw", "Away"):
            odds[odd.label] = odd.value
        elif (
            odd.market_id == GOALS_OVER_UNDER_MARKET_ID
            and odd.label in ("Over", "Under")
            and odd.total == OVER_UNDER_TOTAL
        ):
            odds[odd.label] = odd.value
    return odds


class MatchSelector:
    """Pick the ten matches of a cycle from the stored fixture pool."""

    def __init__(
        self,
        *,
        exclude_keywords: Iterable[str] = (),
        targets: dict[str, int] | None = None,
        max_per_league: int = MAX_PER_LEAGUE,
    ) -> None:
        self._exclude_keywords = tuple(exclude_keywords)
        self._targets = dict(targets or DEFAULT_TARGETS)
        if sum(self._targets.values()) != CYCLE_SIZE:
            raise ValueError(f"difficulty targets must add up to {CYCLE_SIZE}")
        self._max_per_league = max_per_league

    def _qualify(self, fixtures: Sequence[Fixture], summary: SelectionSummary) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        for fixture in fixtures:
            if is_excluded(fixture.league_name, fixture.home_team, fixture.away_team, self._exclude_keywords):
                summary.reject("excluded_league")
                continue
            odds = _read_odds(fixture)
            if any(value is None for value in odds.values()):
                summary.reject("incomplete_odds")
                continue
            if not all(_in_range(odds[label], MONEYLINE_RANGE) for label in ("Home", "Draw", "Away")):
                summary.reject("moneyline_out_of_range")
                continue
            if not all(_in_range(odds[label], OVER_UNDER_RANGE) for label in ("Over", "Under")):
                summary.reject("over_under_out_of_range")
                continue
            candidates.append(
                _Candidate(
                    fixture_id=fixture.fixture_id,
                    kickoff_utc=ensure_utc(fixture.kickoff_utc),
                    league_id=fixture.league_id,
                    league_name=fixture.league_name,
                    home_team=fixture.home_team,
                    away_team=fixture.away_team,
                    home=odds["Home"],
                    draw=odds["Draw"],
                    away=odds["Away"],
                    over=odds["Over"],
                    under=odds["Under"],
                )
            )
        return candidates

    def _pick(
        self, buckets: dict[str, list[_Candidate]], summary: SelectionSummary
    ) -> list[tuple[_Candidate, str]]:
        chosen: list[tuple[_Candidate, str]] = []
        taken: set[int] = set()
        per_league: Counter = Counter()

        def take(bucket: str, wanted: int) -> int:
            picked = 0
            for candidate in buckets[bucket]:
                if picked >= wanted:
                    break
                if candidate.fixture_id in taken or per_league[candidate.league_key] >= self._max_per_league:
                    continue
                taken.add(candidate.fixture_id)
                per_league[candidate.league_key] += 1
                chosen.append((candidate, bucket))
                picked += 1
            return picked

        shortfall: dict[str, int] = {}
        for bucket in (EASY, MEDIUM, HARD):
            wanted = self._targets.get(bucket, 0)
            shortfall[bucket] = wanted - take(bucket, wanted)

        for bucket in (HARD, MEDIUM, EASY):
            for fallback in _FALLBACK_ORDER[bucket]:
                if shortfall[bucket] <= 0:
                    break
                filled = take(fallback, shortfall[bucket])
                if filled:
                    summary.fallbacks.append(f"{bucket}<-{fallback}:{filled}")
                    shortfall[bucket] -= filled
        return chosen

    def select_matches(self, session: Session, game_date: date, *, now: datetime | None = None) -> SelectionResult:
        """Select and freeze ten matches kicking off on ``game_date``.

        Raises ``InsufficientFixtures`` when fewer than ten fixtures qualify.
        Nothing is written; the caller persists the returned matches.
        """

        start, end = day_bounds(game_date)
        if now is not None and now > start:
            # fixtures that already kicked off cannot take bets
            start = now
        fixtures = FixtureRepository(session).list_selection_candidates(
            kickoff_from=start,
            kickoff_to=end,
            statuses=tuple(PRE_MATCH_STATUSES),
        )
        summary = SelectionSummary(game_date=game_date.isoformat())
        candidates = self._qualify(fixtures, summary)
        summary.candidates = len(candidates)

        buckets: dict[str, list[_Candidate]] = {EASY: [], MEDIUM: [], HARD: []}
        for candidate in candidates:
            buckets[classify_difficulty(candidate.max_moneyline)].append(candidate)
        for bucket in buckets.values():
            bucket.sort(key=_Candidate.sort_key)

        chosen = self._pick(buckets, summary)
        if len(chosen) < CYCLE_SIZE:
            logger.warning(
                "Only {} of {} selectable fixtures for {} ({} candidates, rejected={})",
                len(chosen),
                CYCLE_SIZE,
                game_date,
                len(candidates),
                summary.rejected,
            )
            raise InsufficientFixtures(
                f"only {len(chosen)} selectable fixtures for {game_date}",
                game_date=game_date.isoformat(),
                selectable=len(chosen),
                candidates=len(candidates),
            )

        chosen.sort(key=lambda item: (item[0].kickoff_utc, item[0].fixture_id))
        matches = [
            MatchEntry(
                fixture_id=candidate.fixture_id,
                kickoff_utc=candidate.kickoff_utc,
                odds=FrozenOdds(
                    home=to_thousandths(candidate.home),
                    draw=to_thousandths(candidate.draw),
                    away=to_thousandths(candidate.away),
                    over=to_thousandths(candidate.over),
                    under=to_thousandths(candidate.under),
                ),
                league_id=candidate.league_id,
                league_name=candidate.league_name,
                home_team=candidate.home_team,
                away_team=candidate.away_team,
                difficulty=bucket,
            )
            for candidate, bucket in chosen
        ]
        summary.distribution = dict(Counter(match.difficulty for match in matches))
        summary.leagues = {
            str(league): count
            for league, count in Counter(match.league_name or str(match.league_id) for match in matches).items()
        }
        logger.info("Selected {} matches for {}: {}", len(matches), game_date, summary.distribution)
        return SelectionResult(matches=matches, summary=summary)


__all__ = [
    "EASY",
    "HARD",
    "MEDIUM",
    "MatchSelector",
    "SelectionResult",
    "SelectionSummary",
    "classify_difficulty",
    "day_bounds",
]
