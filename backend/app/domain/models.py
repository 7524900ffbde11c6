"""Typed domain representations used across ingestion, selection, settlement and APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Sequence

from .outcomes import (
    BetType,
    MoneylineResult,
    OverUnderResult,
    Selection,
)

ODDS_SCALE = 1000
CYCLE_SIZE = 10


def to_thousandths(value: Decimal | float | str) -> int:
    """Scale a decimal odd to the integer representation used past the selector."""

    scaled = (Decimal(str(value)) * ODDS_SCALE).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)


@dataclass(slots=True)
class NormalizedOdds:
    """One selection price for a fixture as reported by a bookmaker."""

    market_id: int
    label: str
    value: Decimal
    total: str | None = None
    bookmaker_id: int | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class NormalizedFixture:
    """Clean fixture snapshot ready for persistence."""

    fixture_id: int
    home_team: str
    away_team: str
    league_id: int | None
    league_name: str | None
    kickoff_utc: datetime
    status: str
    finished_at: datetime | None = None
    odds: list[NormalizedOdds] = field(default_factory=list)
    raw_data: dict[str, Any] | None = None


@dataclass(slots=True)
class FixtureResultSnapshot:
    """Scores and status for a fixture the provider reports as over or called off."""

    fixture_id: int
    status: str
    home_score: int | None = None
    away_score: int | None = None
    ht_home: int | None = None
    ht_away: int | None = None
    finished_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class FrozenOdds:
    """Thousandth-scaled odds captured when a cycle is created."""

    home: int
    draw: int
    away: int
    over: int
    under: int

    def for_selection(self, selection: Selection) -> int:
        return {
            Selection.HOME: self.home,
            Selection.DRAW: self.draw,
            Selection.AWAY: self.away,
            Selection.OVER: self.over,
            Selection.UNDER: self.under,
        }[selection]

    def to_dict(self) -> dict[str, int]:
        return {
            "home": self.home,
            "draw": self.draw,
            "away": self.away,
            "over": self.over,
            "under": self.under,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FrozenOdds":
        return cls(
            home=int(payload["home"]),
            draw=int(payload["draw"]),
            away=int(payload["away"]),
            over=int(payload["over"]),
            under=int(payload["under"]),
        )


@dataclass(slots=True, frozen=True)
class MatchEntry:
    """One of the ten matches of a cycle, as embedded in ``matches_data``."""

    fixture_id: int
    kickoff_utc: datetime
    odds: FrozenOdds
    league_id: int | None = None
    league_name: str | None = None
    home_team: str | None = None
    away_team: str | None = None
    difficulty: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fixture_id": self.fixture_id,
            "kickoff_utc": self.kickoff_utc.isoformat(),
            "odds": self.odds.to_dict(),
            "league_id": self.league_id,
            "league_name": self.league_name,
            "home_team": self.home_team,
            "away_team": self.away_team,
            "difficulty": self.difficulty,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MatchEntry":
        kickoff = payload["kickoff_utc"]
        if isinstance(kickoff, str):
            kickoff = datetime.fromisoformat(kickoff)
        return cls(
            fixture_id=int(payload["fixture_id"]),
            kickoff_utc=kickoff,
            odds=FrozenOdds.from_dict(payload["odds"]),
            league_id=payload.get("league_id"),
            league_name=payload.get("league_name"),
            home_team=payload.get("home_team"),
            away_team=payload.get("away_team"),
            difficulty=payload.get("difficulty"),
        )


def matches_from_data(matches_data: Sequence[dict[str, Any]]) -> list[MatchEntry]:
    return [MatchEntry.from_dict(entry) for entry in matches_data]


@dataclass(slots=True, frozen=True)
class ResultPair:
    moneyline: MoneylineResult
    over_under: OverUnderResult

    @classmethod
    def not_set(cls) -> "ResultPair":
        return cls(MoneylineResult.NOT_SET, OverUnderResult.NOT_SET)


@dataclass(slots=True, frozen=True)
class ResolutionArtifact:
    """Ten (moneyline, over/under) results ordered like the cycle's matches."""

    results: tuple[ResultPair, ...]

    def __post_init__(self) -> None:
        if len(self.results) != CYCLE_SIZE:
            raise ValueError(f"resolution artifact needs {CYCLE_SIZE} results, got {len(self.results)}")

    def to_json(self) -> list[list[int]]:
        return [[int(pair.moneyline), int(pair.over_under)] for pair in self.results]

    @classmethod
    def from_json(cls, payload: Sequence[Sequence[int]]) -> "ResolutionArtifact":
        return cls(
            tuple(
                ResultPair(MoneylineResult(int(moneyline)), OverUnderResult(int(over_under)))
                for moneyline, over_under in payload
            )
        )


@dataclass(slots=True, frozen=True)
class Prediction:
    fixture_id: int
    bet_type: BetType
    selection: Selection
    selected_odd: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "fixture_id": self.fixture_id,
            "bet_type": self.bet_type.value,
            "selection": self.selection.value,
            "selected_odd": self.selected_odd,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Prediction":
        return cls(
            fixture_id=int(payload["fixture_id"]),
            bet_type=BetType(payload["bet_type"]),
            selection=Selection(payload["selection"]),
            selected_odd=int(payload["selected_odd"]),
        )
