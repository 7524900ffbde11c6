"""Score and rank slips of resolved cycles."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from app.core.clock import Clock, ensure_utc
from app.core.config import Settings
from app.core.errors import EngineError, EvaluatorDataIntegrity, InvalidTransition, NotFound
from app.db import acquire_cycle_lock, run_in_transaction
from app.domain import ODDS_SCALE, Prediction, ResolutionArtifact
from app.domain.outcomes import selection_hits
from app.models import AlertSeverity, CycleStatus, Slip
from app.repositories import CycleRepository, SlipRepository
from app.services.alerts import AlertService

PRIZE_TIER_SIZE = 3
PRIZE_MIN_CORRECT = 7

EVALUATED = "evaluated"
VERIFIED = "verified"
INTEGRITY_FAILURE = "integrity_failure"


@dataclass(slots=True, frozen=True)
class SlipScore:
    slip_id: int
    correct_count: int
    final_score: int
    placed_at: datetime
    leaderboard_rank: int = 0

    @property
    def prize_eligible(self) -> bool:
        return self.leaderboard_rank <= PRIZE_TIER_SIZE and self.correct_count >= PRIZE_MIN_CORRECT


@dataclass(slots=True)
class EvaluationReport:
    cycle_id: int
    status: str
    slips: int = 0
    prize_eligible: list[int] = field(default_factory=list)
    drift: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "status": self.status,
            "slips": self.slips,
            "prize_eligible": self.prize_eligible,
            "drift": self.drift,
        }


def score_predictions(
    predictions: Sequence[Prediction], artifact: ResolutionArtifact, fixture_ids: Sequence[int]
) -> tuple[int, int]:
    """Return ``(correct_count, final_score)`` for one slip.

    The score starts at 1.000 and is multiplied by each hit's odd, flooring
    to thousandths after every step.
    """

    if len(predictions) != len(artifact.results):
        raise EvaluatorDataIntegrity(f"slip has {len(predictions)} predictions for {len(artifact.results)} results")
    correct = 0
    score = ODDS_SCALE
    for position, (prediction, pair) in enumerate(zip(predictions, artifact.results)):
        if prediction.fixture_id != fixture_ids[position]:
            raise EvaluatorDataIntegrity(
                f"prediction {position} references fixture {prediction.fixture_id}",
                position=position,
            )
        if selection_hits(prediction.bet_type, prediction.selection, pair.moneyline, pair.over_under):
            correct += 1
            score = score * prediction.selected_odd // ODDS_SCALE
    return correct, score


def rank_slips(scores: Sequence[SlipScore]) -> list[SlipScore]:
    """Rank by correct desc, score desc, earlier placement; ranks run 1..N."""

    ordered = sorted(
        scores,
        key=lambda item: (-item.correct_count, -item.final_score, ensure_utc(item.placed_at), item.slip_id),
    )
    return [
        SlipScore(item.slip_id, item.correct_count, item.final_score, item.placed_at, leaderboard_rank=rank)
        for rank, item in enumerate(ordered, start=1)
    ]


def _score_slips(slips: Sequence[Slip], artifact: ResolutionArtifact, fixture_ids: Sequence[int]) -> list[SlipScore]:
    scored = []
    for slip in slips:
        try:
            predictions = [Prediction.from_dict(entry) for entry in slip.predictions]
        except (KeyError, TypeError, ValueError) as exc:
            raise EvaluatorDataIntegrity(f"slip {slip.slip_id} has unreadable predictions", slip_id=slip.slip_id) from exc
        try:
            correct, score = score_predictions(predictions, artifact, fixture_ids)
        except EvaluatorDataIntegrity as exc:
            exc.details["slip_id"] = slip.slip_id
            raise
        scored.append(SlipScore(slip.slip_id, correct, score, slip.placed_at))
    return rank_slips(scored)


class SlipEvaluator:
    """Score every slip of a RESOLVED cycle exactly once, under the cycle lock."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Settings,
        clock: Clock,
        *,
        alerts: AlertService,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self._alerts = alerts

    def _transaction(self, work: Callable[[Session], Any], label: str) -> Any:
        return run_in_transaction(
            self._session_factory,
            work,
            attempts=self._settings.store_retry_attempts,
            backoff=self._settings.store_retry_backoff_schedule,
            label=label,
        )

    def _verify(self, cycle_id: int, slips: list[Slip], ranked: list[SlipScore]) -> list[dict[str, Any]]:
        by_id = {slip.slip_id: slip for slip in slips}
        population = sorted(by_id)
        sample_size = min(self._settings.evaluator_verify_sample_size, len(population))
        sample = random.Random(cycle_id).sample(population, sample_size)
        expected = {score.slip_id: score for score in ranked}
        drift = []
        for slip_id in sorted(sample):
            stored, wanted = by_id[slip_id], expected[slip_id]
            if (
                not stored.is_evaluated
                or stored.correct_count != wanted.correct_count
                or stored.final_score != wanted.final_score
                or stored.leaderboard_rank != wanted.leaderboard_rank
            ):
                drift.append(
                    {
                        "slip_id": slip_id,
                        "stored": [stored.correct_count, stored.final_score, stored.leaderboard_rank],
                        "expected": [wanted.correct_count, wanted.final_score, wanted.leaderboard_rank],
                    }
                )
        return drift

    def evaluate_cycle(self, cycle_id: int) -> EvaluationReport:
        now = self._clock.now()

        def _work(session: Session) -> EvaluationReport:
            acquire_cycle_lock(session, cycle_id)
            cycles = CycleRepository(session)
            cycle = cycles.get_by_cycle_id(cycle_id)
            if cycle is None:
                raise NotFound(f"cycle {cycle_id} does not exist", cycle_id=cycle_id)
            if not cycle.is_resolved or not cycle.resolution_data:
                raise InvalidTransition(f"cycle {cycle_id} is {cycle.status}, not resolved", cycle_id=cycle_id)

            artifact = ResolutionArtifact.from_json(cycle.resolution_data["results"])
            slip_repo = SlipRepository(session)
            slips = slip_repo.list_for_cycle(cycle_id)
            ranked = _score_slips(slips, artifact, cycle.fixture_ids)

            if cycle.evaluation_completed:
                drift = self._verify(cycle_id, slips, ranked)
                report = EvaluationReport(cycle_id, VERIFIED if not drift else INTEGRITY_FAILURE, slips=len(slips))
                report.drift = drift
                if drift:
                    cycles.park(cycle, error=f"evaluation drift on {len(drift)} slips", at=now)
                return report

            if cycle.status != CycleStatus.RESOLVED.value:
                raise InvalidTransition(f"cycle {cycle_id} is {cycle.status}", cycle_id=cycle_id)
            by_id = {slip.slip_id: slip for slip in slips}
            report = EvaluationReport(cycle_id, EVALUATED, slips=len(slips))
            for score in ranked:
                slip_repo.apply_evaluation(
                    by_id[score.slip_id],
                    correct_count=score.correct_count,
                    final_score=score.final_score,
                    leaderboard_rank=score.leaderboard_rank,
                    prize_eligible=score.prize_eligible,
                    evaluated_at=now,
                )
                if score.prize_eligible:
                    report.prize_eligible.append(score.slip_id)
            cycles.mark_evaluated(cycle, at=now)
            return report

        try:
            report = self._transaction(_work, f"evaluate cycle {cycle_id}")
        except EvaluatorDataIntegrity as exc:
            self._fail_stop(cycle_id, str(exc), exc.details)
            return EvaluationReport(cycle_id, INTEGRITY_FAILURE, drift=[dict(exc.details)])

        if report.status == INTEGRITY_FAILURE:
            self._alerts.raise_alert(
                EvaluatorDataIntegrity.kind.value,
                f"Stored evaluation of cycle {cycle_id} drifted on {len(report.drift)} sampled slips",
                cycle_id=cycle_id,
                details={"drift": report.drift},
                dedupe_key=f"{EvaluatorDataIntegrity.kind.value}:{cycle_id}",
            )
        elif report.status == EVALUATED:
            logger.info(
                "Evaluated cycle {}: {} slips, {} prize eligible", cycle_id, report.slips, len(report.prize_eligible)
            )
        else:
            logger.info("Cycle {} already evaluated; sample verified", cycle_id)
        return report

    def _fail_stop(self, cycle_id: int, message: str, details: dict[str, Any]) -> None:
        now = self._clock.now()

        def _work(session: Session) -> None:
            repo = CycleRepository(session)
            cycle = repo.get_by_cycle_id(cycle_id)
            if cycle is not None:
                repo.park(cycle, error=message, at=now)

        self._transaction(_work, f"park cycle {cycle_id}")
        self._alerts.raise_alert(
            EvaluatorDataIntegrity.kind.value,
            f"Cycle {cycle_id} evaluation stopped: {message}",
            cycle_id=cycle_id,
            severity=AlertSeverity.CRITICAL,
            details=details,
            dedupe_key=f"{EvaluatorDataIntegrity.kind.value}:{cycle_id}",
        )

    def run_once(self) -> list[EvaluationReport]:
        cycle_ids = self._transaction(
            lambda session: [
                int(cycle.cycle_id)
                for cycle in CycleRepository(session).list_by_status([CycleStatus.RESOLVED], include_parked=False)
                if not cycle.evaluation_completed
            ],
            "list resolved cycles",
        )
        reports = []
        for cycle_id in cycle_ids:
            try:
                reports.append(self.evaluate_cycle(cycle_id))
            except EngineError as exc:
                logger.warning("Evaluation of cycle {} skipped: {}", cycle_id, exc.kind.value)
        return reports


__all__ = [
    "EVALUATED",
    "EvaluationReport",
    "INTEGRITY_FAILURE",
    "SlipEvaluator",
    "SlipScore",
    "VERIFIED",
    "rank_slips",
    "score_predictions",
]
