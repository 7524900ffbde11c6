"""Keep fixture results current for every cycle awaiting settlement."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Iterable, TypeVar

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import NotFound, ProviderError, StoreConflict
from app.db import run_in_transaction
from app.domain import FixtureResultSnapshot
from app.domain.outcomes import is_cancelled, is_terminal
from app.models import CycleStatus
from app.repositories import CycleRepository, FixtureRepository
from ingestion.service import SportsProviderAdapter

T = TypeVar("T")

AWAITING_RESULTS = (CycleStatus.PENDING_RESULTS, CycleStatus.READY_FOR_RESOLUTION)


def _chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for index in range(0, len(items), size):
        yield items[index : index + size]


@dataclass(slots=True)
class ResultsIngestionSummary:
    tracked: int = 0
    already_settled: int = 0
    requested: int = 0
    stored: int = 0
    cancelled: int = 0
    in_progress: int = 0
    status_updates: int = 0
    errors: dict[int, str] = field(default_factory=dict)
    batch_failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tracked": self.tracked,
            "already_settled": self.already_settled,
            "requested": self.requested,
            "stored": self.stored,
            "cancelled": self.cancelled,
            "in_progress": self.in_progress,
            "status_updates": self.status_updates,
            "errors": {str(key): value for key, value in self.errors.items()},
            "batch_failures": self.batch_failures,
        }


class ResultsIngestionPipeline:
    """Poll the provider for unsettled fixtures and store results per fixture."""

    def __init__(
        self,
        provider: SportsProviderAdapter,
        session_factory: Callable[[], Session],
        settings: Settings,
    ) -> None:
        self._provider = provider
        self._session_factory = session_factory
        self._settings = settings

    def _transaction(self, work: Callable[[Session], T], label: str) -> T:
        return run_in_transaction(
            self._session_factory,
            work,
            attempts=self._settings.store_retry_attempts,
            backoff=self._settings.store_retry_backoff_schedule,
            label=label,
        )

    def _record_reads(self, ok: Iterable[int], failed: dict[int, str]) -> None:
        ok, at = list(ok), self._provider.clock.now()

        def _work(session: Session) -> None:
            FixtureRepository(session).record_reads(ok=ok, failed=failed, at=at)

        try:
            self._transaction(_work, "record provider reads")
        except StoreConflict as exc:
            logger.warning("Provider read health for {} fixtures not stored: {}", len(ok) + len(failed), exc)

    def _store_snapshot(self, snapshot: FixtureResultSnapshot) -> bool:
        def _work(session: Session) -> bool:
            return FixtureRepository(session).upsert_result(snapshot) is not None

        return self._transaction(_work, f"store result {snapshot.fixture_id}")

    def _store_status(self, fixture_id: int, status: str) -> bool:
        def _work(session: Session) -> bool:
            repo = FixtureRepository(session)
            fixture = repo.get_fixture(fixture_id)
            if fixture is None or fixture.status == status or is_cancelled(fixture.status):
                return False
            repo.set_status(fixture_id, status)
            return True

        return self._transaction(_work, f"store status {fixture_id}")

    def _pending_fixture_ids(self, cycle_id: int | None = None) -> tuple[list[int], int]:
        def _work(session: Session) -> tuple[list[int], int]:
            cycles = CycleRepository(session)
            if cycle_id is None:
                tracked = cycles.fixture_ids_for_statuses(AWAITING_RESULTS)
            else:
                cycle = cycles.get_by_cycle_id(cycle_id)
                if cycle is None:
                    raise NotFound(f"cycle {cycle_id} does not exist", cycle_id=cycle_id)
                tracked = set(cycle.fixture_ids)
            settled = FixtureRepository(session).settled_fixture_ids(tracked)
            return sorted(tracked - settled), len(tracked)

        return self._transaction(_work, "collect pending fixtures")

    def ingest(self, fixture_ids: Iterable[int], summary: ResultsIngestionSummary | None = None) -> ResultsIngestionSummary:
        """Fetch results for ``fixture_ids`` in batches; each fixture is written atomically."""

        summary = summary or ResultsIngestionSummary()
        ids = sorted(set(fixture_ids))
        for batch in _chunked(ids, self._settings.provider_results_batch_size):
            summary.requested += len(batch)
            try:
                results = self._provider.fetch_fixture_results(batch)
            except ProviderError as exc:
                summary.batch_failures.append(exc.kind.value)
                self._record_reads([], {fixture_id: exc.kind.value for fixture_id in batch})
                logger.warning("Results batch of {} fixtures failed: {}", len(batch), exc.kind.value)
                continue

            for fixture_id, error in results.errors.items():
                summary.errors[fixture_id] = error.kind.value
            self._record_reads(
                [fixture_id for fixture_id in batch if fixture_id not in results.errors],
                {fixture_id: error.kind.value for fixture_id, error in results.errors.items()},
            )

            stored_ids: set[int] = set()
            for snapshot in results.results:
                try:
                    if self._store_snapshot(snapshot):
                        stored_ids.add(snapshot.fixture_id)
                        if is_cancelled(snapshot.status):
                            summary.cancelled += 1
                        else:
                            summary.stored += 1
                except StoreConflict as exc:
                    summary.errors[snapshot.fixture_id] = exc.kind.value
                    logger.warning("Result for fixture {} not stored: {}", snapshot.fixture_id, exc)

            for fixture_id, status in results.statuses.items():
                if fixture_id in stored_ids:
                    continue
                if not is_terminal(status) and not is_cancelled(status):
                    summary.in_progress += 1
                try:
                    if self._store_status(fixture_id, status):
                        summary.status_updates += 1
                except StoreConflict as exc:
                    summary.errors[fixture_id] = exc.kind.value
        return summary

    def run_once(self) -> ResultsIngestionSummary:
        pending, tracked = self._pending_fixture_ids()
        summary = ResultsIngestionSummary(tracked=tracked, already_settled=tracked - len(pending))
        if not pending:
            logger.debug("No fixtures awaiting results")
            return summary
        self.ingest(pending, summary)
        logger.info(
            "Results tick: requested={}, stored={}, cancelled={}, in_progress={}, errors={}",
            summary.requested,
            summary.stored,
            summary.cancelled,
            summary.in_progress,
            len(summary.errors),
        )
        return summary

    def ingest_cycle(self, cycle_id: int) -> ResultsIngestionSummary:
        """Admin trigger: fetch results for the unsettled fixtures of one cycle."""

        pending, tracked = self._pending_fixture_ids(cycle_id)
        summary = ResultsIngestionSummary(tracked=tracked, already_settled=tracked - len(pending))
        return self.ingest(pending, summary)

    def refetch_fixture(self, fixture_id: int) -> FixtureResultSnapshot | None:
        """Fetch and store a single fixture regardless of its stored state.

        Returns the stored snapshot, or None when the fixture is not settled yet
        or the provider call failed.
        """

        results = self._provider.fetch_fixture_results([fixture_id])
        error = results.errors.get(fixture_id)
        if error is not None:
            self._record_reads([], {fixture_id: error.kind.value})
            logger.warning("Refetch of fixture {} failed: {}", fixture_id, error.kind.value)
            return None
        self._record_reads([fixture_id], {})
        for snapshot in results.results:
            if self._store_snapshot(snapshot):
                return snapshot
        status = results.statuses.get(fixture_id)
        if status is not None:
            self._store_status(fixture_id, status)
        return None


__all__ = ["AWAITING_RESULTS", "ResultsIngestionPipeline", "ResultsIngestionSummary"]
