"""Validate and store slips indexed from the ledger."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Sequence

from loguru import logger
from sqlalchemy.orm import Session
from web3 import Web3

from app.core.clock import ensure_utc
from app.core.config import Settings
from app.core.errors import SlipRejected
from app.db import run_in_transaction
from app.domain import CYCLE_SIZE, MatchEntry, Prediction, matches_from_data
from app.domain.outcomes import is_legal_selection
from app.models import Cycle, CycleStatus, Slip
from app.repositories import CycleRepository, SlipRepository

ACCEPTING_STATUSES = {CycleStatus.OPEN.value, CycleStatus.PENDING_RESULTS.value}


def _coerce_predictions(predictions: Sequence[Prediction | Mapping[str, Any]]) -> list[Prediction]:
    coerced = []
    for index, prediction in enumerate(predictions):
        if isinstance(prediction, Prediction):
            coerced.append(prediction)
            continue
        try:
            coerced.append(Prediction.from_dict(dict(prediction)))
        except (KeyError, TypeError, ValueError) as exc:
            raise SlipRejected(f"prediction {index} is malformed", reason="malformed_prediction", index=index) from exc
    return coerced


def validate_predictions(cycle_id: int, matches: Sequence[MatchEntry], predictions: Sequence[Prediction]) -> None:
    """Check predictions against the cycle's fixtures and frozen odds."""

    if len(predictions) != CYCLE_SIZE:
        raise SlipRejected(
            f"slip for cycle {cycle_id} has {len(predictions)} predictions",
            reason="wrong_prediction_count",
        )
    for index, (match, prediction) in enumerate(zip(matches, predictions)):
        if prediction.fixture_id != match.fixture_id:
            raise SlipRejected(
                f"prediction {index} is for fixture {prediction.fixture_id}, expected {match.fixture_id}",
                reason="fixture_mismatch",
                index=index,
            )
        if not is_legal_selection(prediction.bet_type, prediction.selection):
            raise SlipRejected(
                f"{prediction.selection.value} is not a {prediction.bet_type.value} selection",
                reason="illegal_selection",
                index=index,
            )
        frozen = match.odds.for_selection(prediction.selection)
        if prediction.selected_odd != frozen:
            raise SlipRejected(
                f"prediction {index} carries odd {prediction.selected_odd}, cycle froze {frozen}",
                reason="odds_mismatch",
                index=index,
            )


class SlipIntake:
    def __init__(self, session_factory: Callable[[], Session], settings: Settings) -> None:
        self._session_factory = session_factory
        self._settings = settings

    def record_slip(
        self,
        *,
        slip_id: int,
        cycle_id: int,
        player_address: str,
        predictions: Sequence[Prediction | Mapping[str, Any]],
        placed_at: datetime,
    ) -> Slip:
        """Store a slip after validating it against its cycle.

        Replaying a slip already stored with identical content returns the stored
        row; any other reuse of ``slip_id`` raises ``SlipRejected``.
        """

        if not Web3.is_address(player_address):
            raise SlipRejected(f"{player_address!r} is not an address", reason="bad_address")
        address = Web3.to_checksum_address(player_address)
        parsed = _coerce_predictions(predictions)
        placed_at = ensure_utc(placed_at)

        def _work(session: Session) -> Slip:
            slips = SlipRepository(session)
            existing = slips.get(slip_id)
            if existing is not None:
                if (
                    existing.cycle_id == cycle_id
                    and existing.player_address == address
                    and existing.predictions == [prediction.to_dict() for prediction in parsed]
                ):
                    return existing
                raise SlipRejected(f"slip {slip_id} already stored with different content", reason="duplicate_slip")

            cycle: Cycle | None = CycleRepository(session).get_by_cycle_id(cycle_id)
            if cycle is None:
                raise SlipRejected(f"cycle {cycle_id} does not exist", reason="unknown_cycle")
            if cycle.status not in ACCEPTING_STATUSES:
                raise SlipRejected(f"cycle {cycle_id} is {cycle.status}", reason="cycle_closed")
            if placed_at >= ensure_utc(cycle.betting_deadline):
                raise SlipRejected(
                    f"slip placed at {placed_at.isoformat()} after the betting deadline",
                    reason="after_deadline",
                )
            validate_predictions(cycle_id, matches_from_data(cycle.matches_data), parsed)
            return slips.add_slip(
                slip_id=slip_id,
                cycle_id=cycle_id,
                player_address=address,
                predictions=parsed,
                placed_at=placed_at,
            )

        slip = run_in_transaction(
            self._session_factory,
            _work,
            attempts=self._settings.store_retry_attempts,
            backoff=self._settings.store_retry_backoff_schedule,
            label=f"record slip {slip_id}",
        )
        logger.debug("Recorded slip {} for cycle {}", slip_id, cycle_id)
        return slip


__all__ = ["ACCEPTING_STATUSES", "SlipIntake", "validate_predictions"]
