"""Resolution gating: decide when a cycle may be resolved and stage its payload."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from app.core.clock import Clock, ensure_utc
from app.core.config import Settings
from app.core.errors import EngineError, InvalidTransition, NotFound
from app.db import run_in_transaction
from app.domain import MatchEntry, ResolutionArtifact, ResultPair, matches_from_data
from app.domain.outcomes import (
    is_cancelled,
    is_pre_match,
    is_terminal,
    moneyline_from_label,
    over_under_from_label,
)
from app.models import Cycle, CycleStatus, Fixture
from app.repositories import CycleRepository, FixtureRepository

from .results_ingestion import ResultsIngestionPipeline

LOCAL_CANCEL_STATUS = "CANC"


def resolution_floor(matches: list[MatchEntry], floor_minutes: int) -> datetime:
    """Earliest instant a cycle may be resolved: last kickoff plus the floor."""

    latest = max(ensure_utc(match.kickoff_utc) for match in matches)
    return latest + timedelta(minutes=floor_minutes)


@dataclass(slots=True)
class GateReport:
    cycle_id: int
    ready: bool = False
    floor_at: datetime | None = None
    floor_passed: bool = False
    blocking: dict[int, str] = field(default_factory=dict)
    cancelled_locally: list[int] = field(default_factory=list)
    refetched: list[int] = field(default_factory=list)
    staged: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "ready": self.ready,
            "floor_at": self.floor_at.isoformat() if self.floor_at else None,
            "floor_passed": self.floor_passed,
            "blocking": {str(key): value for key, value in self.blocking.items()},
            "cancelled_locally": self.cancelled_locally,
            "refetched": self.refetched,
            "staged": self.staged,
        }


@dataclass(slots=True)
class DeciderSummary:
    checked: int = 0
    staged: list[int] = field(default_factory=list)
    waiting: dict[int, dict[str, str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "staged": self.staged,
            "waiting": {str(key): value for key, value in self.waiting.items()},
        }


def _fixture_block(fixture: Fixture | None) -> str | None:
    """Why ``fixture`` keeps its cycle from resolving, or None if it does not."""

    if fixture is None:
        return "missing_fixture"
    if is_cancelled(fixture.status):
        return None
    if not is_terminal(fixture.status):
        return f"status_{fixture.status}"
    result = fixture.result
    if result is None:
        return "missing_result"
    if result.outcome_1x2 is None or result.outcome_ou25 is None:
        return "missing_outcome"
    return None


def _read_confirms(fixture: Fixture, since: datetime) -> bool:
    """True when the latest provider read succeeded and was taken at or after ``since``."""

    # a failed read sets last_read_error and a successful one clears it
    if fixture.last_read_error is not None or fixture.last_read_ok_at is None:
        return False
    return ensure_utc(fixture.last_read_ok_at) >= since


def _check_fixtures(matches: list[MatchEntry], fixtures: dict[int, Fixture]) -> dict[int, str]:
    blocking: dict[int, str] = {}
    for match in matches:
        reason = _fixture_block(fixtures.get(match.fixture_id))
        if reason is not None:
            blocking[match.fixture_id] = reason
    return blocking


def build_artifact(matches: list[MatchEntry], fixtures: dict[int, Fixture]) -> ResolutionArtifact:
    pairs = []
    for match in matches:
        fixture = fixtures[match.fixture_id]
        if is_cancelled(fixture.status) or fixture.result is None:
            pairs.append(ResultPair.not_set())
            continue
        pairs.append(
            ResultPair(
                moneyline_from_label(fixture.result.outcome_1x2),
                over_under_from_label(fixture.result.outcome_ou25),
            )
        )
    return ResolutionArtifact(tuple(pairs))


def _fixture_record(fixture: Fixture) -> dict[str, Any]:
    result = fixture.result
    return {
        "fixture_id": fixture.fixture_id,
        "status": fixture.status,
        "home_score": result.home_score if result else None,
        "away_score": result.away_score if result else None,
        "outcome_1x2": result.outcome_1x2 if result and not is_cancelled(fixture.status) else None,
        "outcome_ou25": result.outcome_ou25 if result and not is_cancelled(fixture.status) else None,
    }


class ResolutionDecider:
    """Apply the resolution gates to PENDING_RESULTS cycles.

    A cycle is staged for the oracle bot only when every fixture is over (or
    called off), every finished fixture has both outcomes stored, and the clock
    has passed the last kickoff plus ``resolution_floor_minutes``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        results: ResultsIngestionPipeline,
        settings: Settings,
        clock: Clock,
        *,
        on_ready: Callable[[int], None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._results = results
        self._settings = settings
        self._clock = clock
        self.on_ready = on_ready

    def _transaction(self, work: Callable[[Session], Any], label: str) -> Any:
        return run_in_transaction(
            self._session_factory,
            work,
            attempts=self._settings.store_retry_attempts,
            backoff=self._settings.store_retry_backoff_schedule,
            label=label,
        )

    def _load(self, cycle_id: int) -> tuple[Cycle, dict[int, Fixture]]:
        def _work(session: Session) -> tuple[Cycle, dict[int, Fixture]]:
            cycle = CycleRepository(session).get_by_cycle_id(cycle_id)
            if cycle is None:
                raise NotFound(f"cycle {cycle_id} does not exist", cycle_id=cycle_id)
            return cycle, FixtureRepository(session).get_fixtures(cycle.fixture_ids)

        return self._transaction(_work, f"load cycle {cycle_id}")

    def _stale_candidates(
        self, matches: list[MatchEntry], fixtures: dict[int, Fixture], now: datetime
    ) -> dict[int, datetime]:
        """Pre-match fixtures past the cancel cutoff, mapped to that cutoff."""

        cutoff = timedelta(minutes=self._settings.stale_kickoff_cancel_minutes)
        candidates = {}
        for match in matches:
            fixture = fixtures.get(match.fixture_id)
            if fixture is None or not is_pre_match(fixture.status):
                continue
            deadline = ensure_utc(fixture.kickoff_utc) + cutoff
            if now >= deadline:
                candidates[fixture.fixture_id] = deadline
        return candidates

    def _cancel_stale(
        self, matches: list[MatchEntry], fixtures: dict[int, Fixture], now: datetime
    ) -> tuple[list[int], list[int]]:
        """Cancel fixtures the provider still reports as not started past the cutoff.

        A stored pre-match status only counts once a successful provider read
        taken after the cutoff confirms it. Unconfirmed fixtures are refetched
        first; those the provider cannot answer for are left alone. Returns the
        cancelled and the refetched fixture ids.
        """

        candidates = self._stale_candidates(matches, fixtures, now)
        if not candidates:
            return [], []
        refetched = [
            fixture_id
            for fixture_id, deadline in candidates.items()
            if not _read_confirms(fixtures[fixture_id], deadline)
        ]
        for fixture_id in refetched:
            self._results.refetch_fixture(fixture_id)

        def _work(session: Session) -> list[int]:
            repo = FixtureRepository(session)
            current = repo.get_fixtures(candidates)
            cancelled = []
            for fixture_id, deadline in candidates.items():
                fixture = current.get(fixture_id)
                if fixture is None or not is_pre_match(fixture.status) or not _read_confirms(fixture, deadline):
                    continue
                repo.set_status(fixture_id, LOCAL_CANCEL_STATUS)
                cancelled.append(fixture_id)
            return cancelled

        cancelled = self._transaction(_work, "cancel stale fixtures")
        for fixture_id in cancelled:
            logger.warning("Fixture {} still not started past its cancel cutoff; cancelled locally", fixture_id)
        for fixture_id in set(candidates) - set(cancelled):
            logger.info("Fixture {} looks stale but the provider has not confirmed it; not cancelling", fixture_id)
        return cancelled, refetched

    def _refetch_missing(self, blocking: dict[int, str], matches: list[MatchEntry], now: datetime) -> list[int]:
        """Ask the provider directly for fixtures that should be over by now."""

        kickoffs = {match.fixture_id: ensure_utc(match.kickoff_utc) for match in matches}
        floor = timedelta(minutes=self._settings.resolution_floor_minutes)
        refetched = []
        for fixture_id, reason in blocking.items():
            if fixture_id not in kickoffs or reason == "missing_fixture":
                continue
            if now < kickoffs[fixture_id] + floor:
                continue
            self._results.refetch_fixture(fixture_id)
            refetched.append(fixture_id)
        return refetched

    def evaluate_cycle(self, cycle_id: int, *, stage: bool = True) -> GateReport:
        now = self._clock.now()
        cycle, fixtures = self._load(cycle_id)
        report = GateReport(cycle_id=cycle_id)
        if cycle.status != CycleStatus.PENDING_RESULTS.value:
            raise InvalidTransition(
                f"cycle {cycle_id} is {cycle.status}, not pending results",
                cycle_id=cycle_id,
                current=cycle.status,
            )

        matches = matches_from_data(cycle.matches_data)
        report.floor_at = resolution_floor(matches, self._settings.resolution_floor_minutes)

        report.floor_passed = now >= report.floor_at

        # provider I/O happens below, outside any Store transaction
        report.cancelled_locally, checked = self._cancel_stale(matches, fixtures, now)
        if report.cancelled_locally or checked:
            cycle, fixtures = self._load(cycle_id)
        blocking = _check_fixtures(matches, fixtures)
        awaiting = {key: value for key, value in blocking.items() if key not in checked}
        refetched = self._refetch_missing(awaiting, matches, now) if awaiting else []
        if refetched:
            cycle, fixtures = self._load(cycle_id)
            blocking = _check_fixtures(matches, fixtures)
        report.refetched = checked + refetched

        report.blocking = blocking
        report.ready = report.floor_passed and not blocking
        if not report.ready or not stage:
            return report

        def _stage(session: Session) -> bool:
            cycles = CycleRepository(session)
            current = cycles.get_by_cycle_id(cycle_id)
            if current is None or current.status != CycleStatus.PENDING_RESULTS.value:
                return False
            fresh = FixtureRepository(session).get_fixtures(current.fixture_ids)
            if _check_fixtures(matches, fresh):
                return False
            artifact = build_artifact(matches, fresh)
            cycles.stage_resolution(
                current,
                artifact,
                prepared_at=now,
                fixtures=[_fixture_record(fresh[match.fixture_id]) for match in matches],
            )
            return True

        report.staged = self._transaction(_stage, f"stage resolution {cycle_id}")
        if report.staged:
            logger.info("Cycle {} ready for resolution", cycle_id)
            if self.on_ready is not None:
                self.on_ready(cycle_id)
        return report

    def run_once(self) -> DeciderSummary:
        summary = DeciderSummary()
        cycle_ids = self._transaction(
            lambda session: [
                int(cycle.cycle_id)
                for cycle in CycleRepository(session).list_by_status(
                    [CycleStatus.PENDING_RESULTS], include_parked=False
                )
            ],
            "list pending cycles",
        )
        for cycle_id in cycle_ids:
            summary.checked += 1
            try:
                report = self.evaluate_cycle(cycle_id)
            except EngineError as exc:
                logger.warning("Gate check for cycle {} failed: {}", cycle_id, exc.kind.value)
                summary.waiting[cycle_id] = {"error": exc.kind.value}
                continue
            if report.staged:
                summary.staged.append(cycle_id)
                continue
            waiting = {str(key): value for key, value in report.blocking.items()}
            if not report.floor_passed:
                waiting["floor"] = report.floor_at.isoformat()
            summary.waiting[cycle_id] = waiting
        return summary


__all__ = [
    "DeciderSummary",
    "GateReport",
    "LOCAL_CANCEL_STATUS",
    "ResolutionDecider",
    "build_artifact",
    "resolution_floor",
]
