"""Slip persistence and leaderboard queries."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.domain import Prediction
from app.models import Slip


class SlipRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def add_slip(
        self,
        *,
        slip_id: int,
        cycle_id: int,
        player_address: str,
        predictions: Sequence[Prediction],
        placed_at: datetime,
    ) -> Slip:
        slip = Slip(
            slip_id=slip_id,
            cycle_id=cycle_id,
            player_address=player_address,
            predictions=[prediction.to_dict() for prediction in predictions],
            placed_at=placed_at,
            is_evaluated=False,
            prize_eligible=False,
        )
        self._session.add(slip)
        self._session.flush()
        return slip

    def apply_evaluation(
        self,
        slip: Slip,
        *,
        correct_count: int,
        final_score: int,
        leaderboard_rank: int,
        prize_eligible: bool,
        evaluated_at: datetime,
    ) -> Slip:
        slip.correct_count = correct_count
        slip.final_score = final_score
        slip.leaderboard_rank = leaderboard_rank
        slip.prize_eligible = prize_eligible
        slip.is_evaluated = True
        slip.evaluated_at = evaluated_at
        return slip

    # ------------------------------------------------------------------
    # Queries

    def get(self, slip_id: int) -> Slip | None:
        return self._session.get(Slip, slip_id)

    def list_for_cycle(self, cycle_id: int) -> list[Slip]:
        query = select(Slip).where(Slip.cycle_id == cycle_id).order_by(Slip.slip_id.asc())
        return list(self._session.execute(query).scalars())

    def count_for_cycle(self, cycle_id: int) -> int:
        query = select(func.count(Slip.slip_id)).where(Slip.cycle_id == cycle_id)
        return int(self._session.execute(query).scalar_one())

    def count_unevaluated(self, cycle_id: int) -> int:
        query = select(func.count(Slip.slip_id)).where(
            Slip.cycle_id == cycle_id, Slip.is_evaluated.is_(False)
        )
        return int(self._session.execute(query).scalar_one())

    def leaderboard(self, cycle_id: int, *, limit: int = 50, offset: int = 0) -> tuple[list[Slip], int]:
        filters = (Slip.cycle_id == cycle_id, Slip.leaderboard_rank.is_not(None))
        query = (
            select(Slip)
            .where(*filters)
            .order_by(Slip.leaderboard_rank.asc())
            .limit(limit)
            .offset(offset)
        )
        total = self._session.execute(select(func.count(Slip.slip_id)).where(*filters)).scalar_one()
        return list(self._session.execute(query).scalars()), int(total)


__all__ = ["SlipRepository"]
