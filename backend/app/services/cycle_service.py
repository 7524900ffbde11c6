"""Read-only views over cycles, leaderboards and fixture results for the API."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.domain import matches_from_data
from app.models import Cycle, CycleStatus
from app.repositories import CycleRepository, FixtureRepository, SlipRepository
from app.schemas import (
    CycleDetail,
    CycleList,
    CycleMatch,
    CycleSummary,
    FixtureResultOut,
    FrozenOddsOut,
    Leaderboard,
    LeaderboardEntry,
)

PENDING_RESOLUTION = "pending_resolution"


def public_status(cycle: Cycle) -> str:
    """Collapse the internal lifecycle into what players are allowed to see.

    Everything between betting close and the confirmed ledger write reads as
    ``pending_resolution``; staging and parking are internal.
    """

    if cycle.is_resolved:
        return cycle.status
    if cycle.status in {CycleStatus.OPEN.value, CycleStatus.CANCELLED.value}:
        return cycle.status
    return PENDING_RESOLUTION


@dataclass(slots=True)
class CycleQuery:
    limit: int = 20
    offset: int = 0


class CycleService:
    def __init__(self, session: Session) -> None:
        self._session = session
        self._cycles = CycleRepository(session)

    def _visible(self, cycle_id: int) -> Cycle | None:
        cycle = self._cycles.get_by_cycle_id(cycle_id)
        if cycle is None or cycle.status == CycleStatus.DRAFT.value:
            return None
        return cycle

    @staticmethod
    def _summary_fields(cycle: Cycle) -> dict:
        return {
            "cycle_id": int(cycle.cycle_id),
            "game_date": cycle.game_date,
            "status": public_status(cycle),
            "betting_deadline": cycle.betting_deadline,
            "is_resolved": cycle.is_resolved,
            "evaluation_completed": cycle.evaluation_completed,
            "tx_hash": cycle.tx_hash,
            "resolution_tx_hash": cycle.resolution_tx_hash,
            "created_at": cycle.created_at,
            "resolved_at": cycle.resolved_at,
        }

    def list_cycles(self, query: CycleQuery) -> CycleList:
        cycles, total = self._cycles.list_cycles(limit=query.limit, offset=query.offset)
        return CycleList(total=total, items=[CycleSummary(**self._summary_fields(c)) for c in cycles])

    def _detail(self, cycle: Cycle) -> CycleDetail:
        matches = [
            CycleMatch(
                fixture_id=entry.fixture_id,
                kickoff_utc=entry.kickoff_utc,
                home_team=entry.home_team,
                away_team=entry.away_team,
                league_name=entry.league_name,
                difficulty=entry.difficulty,
                odds=FrozenOddsOut(**entry.odds.to_dict()),
            )
            for entry in matches_from_data(cycle.matches_data)
        ]
        # staged results stay private until the ledger has them
        results = (cycle.resolution_data or {}).get("results") if cycle.is_resolved else None
        return CycleDetail(**self._summary_fields(cycle), matches=matches, results=results)

    def get_cycle(self, cycle_id: int) -> CycleDetail | None:
        cycle = self._visible(cycle_id)
        return self._detail(cycle) if cycle is not None else None

    def current_cycle(self) -> CycleDetail | None:
        cycle = self._cycles.latest_cycle()
        return self._detail(cycle) if cycle is not None else None

    def leaderboard(self, cycle_id: int, *, limit: int = 50, offset: int = 0) -> Leaderboard | None:
        cycle = self._visible(cycle_id)
        if cycle is None:
            return None
        slips, total = SlipRepository(self._session).leaderboard(cycle_id, limit=limit, offset=offset)
        entries = [
            LeaderboardEntry(
                rank=slip.leaderboard_rank,
                slip_id=slip.slip_id,
                player_address=slip.player_address,
                correct_count=slip.correct_count or 0,
                final_score=slip.final_score or 0,
                prize_eligible=slip.prize_eligible,
                placed_at=slip.placed_at,
            )
            for slip in slips
        ]
        return Leaderboard(
            cycle_id=cycle_id,
            evaluation_completed=cycle.evaluation_completed,
            total=total,
            items=entries,
        )

    def fixture_result(self, fixture_id: int) -> FixtureResultOut | None:
        result = FixtureRepository(self._session).get_result(fixture_id)
        if result is None:
            return None
        return FixtureResultOut.model_validate(result)


__all__ = ["CycleQuery", "CycleService", "PENDING_RESOLUTION", "public_status"]
