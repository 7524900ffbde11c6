"""Cycle persistence and state transition helpers."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.errors import InvalidTransition
from app.domain import MatchEntry, ResolutionArtifact
from app.models import Cycle, CycleStatus

# Allowed source states for each target state.
_TRANSITIONS: dict[CycleStatus, frozenset[CycleStatus]] = {
    CycleStatus.OPEN: frozenset({CycleStatus.DRAFT}),
    CycleStatus.PENDING_RESULTS: frozenset({CycleStatus.OPEN}),
    CycleStatus.READY_FOR_RESOLUTION: frozenset({CycleStatus.PENDING_RESULTS}),
    CycleStatus.RESOLVED: frozenset({CycleStatus.READY_FOR_RESOLUTION}),
    CycleStatus.EVALUATED: frozenset({CycleStatus.RESOLVED}),
    CycleStatus.CANCELLED: frozenset({CycleStatus.OPEN}),
}


def _check_transition(cycle: Cycle, target: CycleStatus) -> None:
    current = CycleStatus(cycle.status)
    if current not in _TRANSITIONS[target]:
        raise InvalidTransition(
            f"cycle {cycle.cycle_id} cannot move from {current.value} to {target.value}",
            cycle_id=cycle.cycle_id,
            current=current.value,
            target=target.value,
        )


class CycleRepository:
    """Own reads and state changes of ``cycles`` rows."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def create_draft(
        self,
        *,
        game_date: date,
        matches: Sequence[MatchEntry],
        betting_deadline: datetime,
        selection_summary: dict[str, Any] | None = None,
        created_at: datetime,
    ) -> Cycle:
        """Insert the DRAFT row that stakes ``game_date``.

        Raises ``IntegrityError`` on flush when another cycle already holds the date.
        """

        cycle = Cycle(
            game_date=game_date,
            status=CycleStatus.DRAFT.value,
            matches_data=[match.to_dict() for match in matches],
            selection_summary=selection_summary,
            betting_deadline=betting_deadline,
            created_at=created_at,
            updated_at=created_at,
        )
        self._session.add(cycle)
        self._session.flush()
        return cycle

    def promote_draft(self, row_id: int, *, cycle_id: int, tx_hash: str | None, at: datetime) -> Cycle:
        cycle = self._session.get(Cycle, row_id)
        if cycle is None:
            raise InvalidTransition(f"draft cycle row {row_id} disappeared before promotion")
        _check_transition(cycle, CycleStatus.OPEN)
        cycle.cycle_id = cycle_id
        cycle.tx_hash = tx_hash
        cycle.status = CycleStatus.OPEN.value
        cycle.updated_at = at
        return cycle

    def note_draft_tx(self, row_id: int, *, tx_hash: str, at: datetime) -> Cycle | None:
        """Remember the creation tx of a draft whose ledger call did not report back."""

        cycle = self._session.get(Cycle, row_id)
        if cycle is None or cycle.status != CycleStatus.DRAFT.value:
            return None
        cycle.tx_hash = tx_hash
        cycle.updated_at = at
        return cycle

    def delete_draft(self, row_id: int) -> bool:
        cycle = self._session.get(Cycle, row_id)
        if cycle is None or cycle.status != CycleStatus.DRAFT.value:
            return False
        self._session.delete(cycle)
        return True

    def mark_pending_results(self, cycle: Cycle, *, at: datetime) -> Cycle:
        _check_transition(cycle, CycleStatus.PENDING_RESULTS)
        cycle.status = CycleStatus.PENDING_RESULTS.value
        cycle.updated_at = at
        return cycle

    def stage_resolution(
        self,
        cycle: Cycle,
        artifact: ResolutionArtifact,
        *,
        prepared_at: datetime,
        fixtures: list[dict[str, Any]],
    ) -> Cycle:
        _check_transition(cycle, CycleStatus.READY_FOR_RESOLUTION)
        cycle.resolution_data = {
            "results": artifact.to_json(),
            "prepared_at": prepared_at.isoformat(),
            "fixtures": fixtures,
        }
        cycle.ready_for_resolution = True
        cycle.status = CycleStatus.READY_FOR_RESOLUTION.value
        cycle.updated_at = prepared_at
        return cycle

    def mark_resolved(self, cycle: Cycle, *, tx_hash: str | None, resolved_at: datetime) -> Cycle:
        _check_transition(cycle, CycleStatus.RESOLVED)
        if cycle.resolution_data is None:
            raise InvalidTransition(f"cycle {cycle.cycle_id} has no staged resolution")
        cycle.is_resolved = True
        cycle.ready_for_resolution = False
        cycle.resolution_tx_hash = tx_hash
        cycle.resolved_at = resolved_at
        cycle.status = CycleStatus.RESOLVED.value
        cycle.parked = False
        cycle.last_error = None
        cycle.updated_at = resolved_at
        return cycle

    def mark_evaluated(self, cycle: Cycle, *, at: datetime) -> Cycle:
        _check_transition(cycle, CycleStatus.EVALUATED)
        cycle.evaluation_completed = True
        cycle.evaluated_at = at
        cycle.status = CycleStatus.EVALUATED.value
        cycle.updated_at = at
        return cycle

    def cancel(self, cycle: Cycle, *, reason: str, at: datetime) -> Cycle:
        _check_transition(cycle, CycleStatus.CANCELLED)
        cycle.status = CycleStatus.CANCELLED.value
        cycle.cancel_reason = reason
        cycle.updated_at = at
        return cycle

    def park(self, cycle: Cycle, *, error: str, at: datetime) -> Cycle:
        cycle.parked = True
        cycle.last_error = error
        cycle.updated_at = at
        return cycle

    def unpark(self, cycle: Cycle, *, at: datetime) -> Cycle:
        cycle.parked = False
        cycle.last_error = None
        cycle.updated_at = at
        return cycle

    def record_error(self, cycle: Cycle, *, error: str, at: datetime) -> Cycle:
        cycle.last_error = error
        cycle.updated_at = at
        return cycle

    # ------------------------------------------------------------------
    # Queries

    def get(self, row_id: int) -> Cycle | None:
        return self._session.get(Cycle, row_id)

    def get_by_cycle_id(self, cycle_id: int) -> Cycle | None:
        query = select(Cycle).where(Cycle.cycle_id == cycle_id)
        return self._session.execute(query).scalar_one_or_none()

    def get_by_date(self, game_date: date) -> Cycle | None:
        query = select(Cycle).where(Cycle.game_date == game_date)
        return self._session.execute(query).scalar_one_or_none()

    def list_by_status(
        self,
        statuses: Iterable[CycleStatus],
        *,
        include_parked: bool = True,
        game_date_from: date | None = None,
        limit: int | None = None,
    ) -> list[Cycle]:
        query = select(Cycle).where(Cycle.status.in_([status.value for status in statuses]))
        if not include_parked:
            query = query.where(Cycle.parked.is_(False))
        if game_date_from is not None:
            query = query.where(Cycle.game_date >= game_date_from)
        query = query.order_by(Cycle.cycle_id.asc())
        if limit:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars())

    def list_open_past_deadline(self, now: datetime) -> list[Cycle]:
        query = (
            select(Cycle)
            .where(Cycle.status == CycleStatus.OPEN.value, Cycle.betting_deadline <= now)
            .order_by(Cycle.cycle_id.asc())
        )
        return list(self._session.execute(query).scalars())

    def fixture_ids_for_statuses(self, statuses: Iterable[CycleStatus]) -> set[int]:
        fixture_ids: set[int] = set()
        for cycle in self.list_by_status(statuses):
            fixture_ids.update(cycle.fixture_ids)
        return fixture_ids

    def list_cycles(self, *, limit: int = 20, offset: int = 0) -> tuple[list[Cycle], int]:
        visible = Cycle.status != CycleStatus.DRAFT.value
        query = (
            select(Cycle)
            .where(visible)
            .order_by(Cycle.game_date.desc())
            .limit(limit)
            .offset(offset)
        )
        total = self._session.execute(select(func.count(Cycle.id)).where(visible)).scalar_one()
        return list(self._session.execute(query).scalars()), total

    def latest_cycle(self) -> Cycle | None:
        query = (
            select(Cycle)
            .where(Cycle.status != CycleStatus.DRAFT.value)
            .order_by(Cycle.game_date.desc())
            .limit(1)
        )
        return self._session.execute(query).scalar_one_or_none()


__all__ = ["CycleRepository"]
