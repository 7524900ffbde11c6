from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field


class FrozenOddsOut(BaseModel):
    home: int
    draw: int
    away: int
    over: int
    under: int


class CycleMatch(BaseModel):
    fixture_id: int
    kickoff_utc: datetime
    home_team: str | None = None
    away_team: str | None = None
    league_name: str | None = None
    difficulty: str | None = None
    odds: FrozenOddsOut


class CycleBase(BaseModel):
    cycle_id: int
    game_date: date
    status: str = Field(description="Public status; pending_resolution until the ledger confirms")
    betting_deadline: datetime
    is_resolved: bool
    evaluation_completed: bool
    tx_hash: str | None = None
    resolution_tx_hash: str | None = None
    created_at: datetime
    resolved_at: datetime | None = None


class CycleSummary(CycleBase):
    pass


class CycleDetail(CycleBase):
    matches: list[CycleMatch] = Field(default_factory=list)
    results: list[list[int]] | None = None


class CycleList(BaseModel):
    total: int
    items: list[CycleSummary]


class LeaderboardEntry(BaseModel):
    rank: int
    slip_id: int
    player_address: str
    correct_count: int
    final_score: int
    prize_eligible: bool
    placed_at: datetime

    model_config = {"from_attributes": True}


class Leaderboard(BaseModel):
    cycle_id: int
    evaluation_completed: bool
    total: int
    items: list[LeaderboardEntry]


class FixtureResultOut(BaseModel):
    fixture_id: int
    status: str
    home_score: int | None = None
    away_score: int | None = None
    outcome_1x2: str | None = None
    outcome_ou25: str | None = None
    finished_at: datetime | None = None

    model_config = {"from_attributes": True}


class AdminResponse(BaseModel):
    """Summary payload returned by an admin trigger."""

    action: str
    result: dict[str, Any]


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None
