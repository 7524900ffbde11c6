"""Oracle bot: submit staged resolutions and guided fixture outcomes on-chain."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from app.core.clock import Clock
from app.core.config import Settings
from app.core.errors import InvalidTransition, LedgerError, LedgerErrorKind, NotFound
from app.db import run_in_transaction
from app.domain import ResolutionArtifact, matches_from_data
from app.models import AlertSeverity, Cycle, CycleStatus, GuidedMarketKind
from app.repositories import CycleRepository, GuidedMarketRepository
from app.services.alerts import AlertService
from ledger.client import ChainCycleState, OddysseyLedgerClient
from ledger.codec import (
    decode_guided_outcome,
    encode_guided_outcome,
    guided_market_id,
    guided_outcome_string,
)

from .resolution import resolution_floor

RESOLVED = "resolved"
RECOVERED = "recovered"
ALREADY_RESOLVED = "already_resolved"
DEFERRED = "deferred"
PARKED = "parked"


@dataclass(slots=True)
class ResolutionOutcome:
    cycle_id: int
    status: str
    tx_hash: str | None = None
    error: str | None = None

    @property
    def settled(self) -> bool:
        return self.status in {RESOLVED, RECOVERED, ALREADY_RESOLVED}

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "status": self.status,
            "tx_hash": self.tx_hash,
            "error": self.error,
        }


@dataclass(slots=True)
class GuidedSubmissionSummary:
    checked: int = 0
    submitted: list[str] = field(default_factory=list)
    already_set: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "submitted": self.submitted,
            "already_set": self.already_set,
            "failures": self.failures,
        }


@dataclass(slots=True)
class OracleSweepSummary:
    resolutions: list[ResolutionOutcome] = field(default_factory=list)
    guided: GuidedSubmissionSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolutions": [outcome.to_dict() for outcome in self.resolutions],
            "guided": self.guided.to_dict() if self.guided else None,
        }


@dataclass(slots=True, frozen=True)
class _GuidedCandidate:
    market_id: str
    fixture_id: int
    outcome: str


class OracleBot:
    """Single consumer of READY_FOR_RESOLUTION cycles for one signing key.

    Cycles are resolved in ascending ``cycle_id`` order and a sweep stops at the
    first cycle that does not settle, so cycle N+1 is never signed before N is
    confirmed.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ledger: OddysseyLedgerClient,
        settings: Settings,
        clock: Clock,
        *,
        alerts: AlertService,
        on_resolved: Callable[[int], None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._settings = settings
        self._clock = clock
        self._alerts = alerts
        self.on_resolved = on_resolved

    def _transaction(self, work: Callable[[Session], Any], label: str) -> Any:
        return run_in_transaction(
            self._session_factory,
            work,
            attempts=self._settings.store_retry_attempts,
            backoff=self._settings.store_retry_backoff_schedule,
            label=label,
        )

    # ------------------------------------------------------------------
    # Cycle resolution

    def _load_cycle(self, cycle_id: int) -> Cycle:
        cycle = self._transaction(lambda session: CycleRepository(session).get_by_cycle_id(cycle_id), "load cycle")
        if cycle is None:
            raise NotFound(f"cycle {cycle_id} does not exist", cycle_id=cycle_id)
        return cycle

    def _mark_resolved(self, cycle_id: int, tx_hash: str | None) -> None:
        resolved_at = self._clock.now()

        def _work(session: Session) -> None:
            repo = CycleRepository(session)
            cycle = repo.get_by_cycle_id(cycle_id)
            repo.mark_resolved(cycle, tx_hash=tx_hash, resolved_at=resolved_at)

        self._transaction(_work, f"mark cycle {cycle_id} resolved")

    def _park(self, cycle_id: int, error: LedgerError | str) -> None:
        message = error if isinstance(error, str) else f"{error.kind.value}: {error.reason or error}"
        kind = "ledger_cycle_missing" if isinstance(error, str) else f"ledger_{error.kind.value}"
        now = self._clock.now()

        def _work(session: Session) -> None:
            repo = CycleRepository(session)
            cycle = repo.get_by_cycle_id(cycle_id)
            if cycle is not None:
                repo.park(cycle, error=message, at=now)

        self._transaction(_work, f"park cycle {cycle_id}")
        self._alerts.raise_alert(
            kind,
            f"Cycle {cycle_id} parked: {message}",
            cycle_id=cycle_id,
            details={"error": message},
            dedupe_key=f"{kind}:{cycle_id}",
        )

    def _record_error(self, cycle_id: int, error: LedgerError) -> None:
        now = self._clock.now()

        def _work(session: Session) -> None:
            repo = CycleRepository(session)
            cycle = repo.get_by_cycle_id(cycle_id)
            if cycle is not None:
                repo.record_error(cycle, error=error.kind.value, at=now)

        self._transaction(_work, f"record error on cycle {cycle_id}")

    def _notify_resolved(self, cycle_id: int) -> None:
        if self.on_resolved is not None:
            self.on_resolved(cycle_id)

    def resolve_cycle(self, cycle_id: int) -> ResolutionOutcome:
        cycle = self._load_cycle(cycle_id)
        if cycle.status in {CycleStatus.RESOLVED.value, CycleStatus.EVALUATED.value}:
            return ResolutionOutcome(cycle_id, ALREADY_RESOLVED, tx_hash=cycle.resolution_tx_hash)
        if cycle.status != CycleStatus.READY_FOR_RESOLUTION.value or not cycle.resolution_data:
            raise InvalidTransition(
                f"cycle {cycle_id} is {cycle.status}, not ready for resolution",
                cycle_id=cycle_id,
                current=cycle.status,
            )

        floor_at = resolution_floor(matches_from_data(cycle.matches_data), self._settings.resolution_floor_minutes)
        if self._clock.now() < floor_at:
            raise InvalidTransition(f"cycle {cycle_id} cannot resolve before {floor_at.isoformat()}", cycle_id=cycle_id)
        artifact = ResolutionArtifact.from_json(cycle.resolution_data["results"])

        try:
            chain_status = self._ledger.get_cycle_status(cycle_id)
            if not chain_status.exists:
                logger.error("Cycle {} is unknown to the contract", cycle_id)
                self._park(cycle_id, "cycle does not exist on-chain")
                return ResolutionOutcome(cycle_id, PARKED, error="cycle_missing")

            if chain_status.state is ChainCycleState.RESOLVED:
                tx_hash = self._ledger.find_resolution_tx(cycle_id)
                logger.warning("Cycle {} already resolved on-chain (tx {}); syncing Store", cycle_id, tx_hash)
                self._mark_resolved(cycle_id, tx_hash)
                self._notify_resolved(cycle_id)
                return ResolutionOutcome(cycle_id, RECOVERED, tx_hash=tx_hash)

            tx_hash = self._ledger.resolve_daily_cycle(cycle_id, artifact)
        except LedgerError as exc:
            if exc.recoverable:
                logger.warning("Resolution of cycle {} deferred: {}", cycle_id, exc.kind.value)
                self._record_error(cycle_id, exc)
                return ResolutionOutcome(cycle_id, DEFERRED, tx_hash=exc.tx_hash, error=exc.kind.value)
            logger.error("Resolution of cycle {} failed: {} ({})", cycle_id, exc.kind.value, exc.reason)
            self._park(cycle_id, exc)
            return ResolutionOutcome(cycle_id, PARKED, tx_hash=exc.tx_hash, error=exc.kind.value)

        self._mark_resolved(cycle_id, tx_hash)
        logger.info("Cycle {} resolved on-chain in {}", cycle_id, tx_hash)
        self._notify_resolved(cycle_id)
        return ResolutionOutcome(cycle_id, RESOLVED, tx_hash=tx_hash)

    def _resolution_queue(self) -> list[tuple[int, str, bool]]:
        """Unresolved cycles past betting close, oldest first, parked ones included."""

        def _work(session: Session) -> list[tuple[int, str, bool]]:
            cycles = CycleRepository(session).list_by_status(
                [CycleStatus.PENDING_RESULTS, CycleStatus.READY_FOR_RESOLUTION], include_parked=True
            )
            return [(int(cycle.cycle_id), cycle.status, bool(cycle.parked)) for cycle in cycles]

        return self._transaction(_work, "list resolution queue")

    def _report_blocked(self, cycle_id: int, waiting: list[int]) -> None:
        logger.warning("Resolution queue blocked by parked cycle {}; {} later cycles waiting", cycle_id, len(waiting))
        if waiting:
            self._alerts.raise_alert(
                "resolution_queue_blocked",
                f"Parked cycle {cycle_id} blocks resolution of cycles {waiting}",
                cycle_id=cycle_id,
                details={"waiting": waiting},
                dedupe_key=f"resolution_queue_blocked:{cycle_id}",
            )

    def resolve_ready_cycles(self) -> list[ResolutionOutcome]:
        """Resolve staged cycles oldest first, stopping at the first one that cannot settle.

        A parked cycle or one still waiting for results holds back every later
        cycle until an operator or the decider moves it on.
        """

        queue = self._resolution_queue()
        outcomes = []
        for position, (cycle_id, status, parked) in enumerate(queue):
            later = [entry[0] for entry in queue[position + 1 :]]
            if parked:
                self._report_blocked(cycle_id, later)
                break
            if status != CycleStatus.READY_FOR_RESOLUTION.value:
                if later:
                    logger.info("Cycle {} still awaiting results; holding cycles {}", cycle_id, later)
                break
            outcome = self.resolve_cycle(cycle_id)
            outcomes.append(outcome)
            if not outcome.settled:
                break
        return outcomes

    # ------------------------------------------------------------------
    # Guided fixture outcomes

    def _guided_candidates(self, limit: int) -> list[_GuidedCandidate]:
        cutoff = self._clock.now() - timedelta(minutes=self._settings.guided_outcome_settle_minutes)

        def _work(session: Session) -> list[_GuidedCandidate]:
            candidates = []
            for market in GuidedMarketRepository(session).list_ready(finished_before=cutoff, limit=limit):
                result = market.fixture.result
                outcome = guided_outcome_string(
                    GuidedMarketKind(market.market_kind), result.outcome_1x2, result.outcome_ou25
                )
                if outcome is not None:
                    candidates.append(_GuidedCandidate(market.market_id, market.fixture_id, outcome))
            return candidates

        return self._transaction(_work, "list guided markets")

    def submit_guided_outcomes(self, *, limit: int = 50) -> GuidedSubmissionSummary:
        summary = GuidedSubmissionSummary()
        for candidate in self._guided_candidates(limit):
            summary.checked += 1
            market_bytes = guided_market_id(candidate.market_id)
            try:
                existing = self._ledger.get_outcome(market_bytes)
                if existing is not None:
                    outcome, tx_hash = decode_guided_outcome(existing), None
                    summary.already_set.append(candidate.market_id)
                else:
                    outcome = candidate.outcome
                    tx_hash = self._ledger.submit_guided_outcome(market_bytes, encode_guided_outcome(outcome))
                    summary.submitted.append(candidate.market_id)
            except LedgerError as exc:
                summary.failures[candidate.market_id] = exc.kind.value
                if exc.recoverable:
                    logger.warning("Guided outcome for {} deferred: {}", candidate.market_id, exc.kind.value)
                    break
                self._alerts.raise_alert(
                    f"ledger_{exc.kind.value}",
                    f"Guided outcome for market {candidate.market_id} failed: {exc.reason or exc}",
                    severity=AlertSeverity.CRITICAL
                    if exc.kind is LedgerErrorKind.INSUFFICIENT_FUNDS
                    else AlertSeverity.WARNING,
                    details={"market_id": candidate.market_id, "fixture_id": candidate.fixture_id},
                    dedupe_key=f"guided:{candidate.market_id}:{exc.kind.value}",
                )
                continue

            submitted_at = self._clock.now()
            self._transaction(
                lambda session: GuidedMarketRepository(session).mark_submitted(
                    candidate.market_id, outcome=outcome, tx_hash=tx_hash, submitted_at=submitted_at
                ),
                f"record guided outcome {candidate.market_id}",
            )
            logger.info("Guided market {} settled as {} ({})", candidate.market_id, outcome, tx_hash or "pre-set")
        return summary

    def run_once(self) -> OracleSweepSummary:
        summary = OracleSweepSummary(resolutions=self.resolve_ready_cycles())
        if self._ledger_has_guided_oracle():
            summary.guided = self.submit_guided_outcomes()
        return summary

    def _ledger_has_guided_oracle(self) -> bool:
        return bool(self._settings.guided_oracle_contract_address)


__all__ = [
    "ALREADY_RESOLVED",
    "DEFERRED",
    "GuidedSubmissionSummary",
    "OracleBot",
    "OracleSweepSummary",
    "PARKED",
    "RECOVERED",
    "RESOLVED",
    "ResolutionOutcome",
]
