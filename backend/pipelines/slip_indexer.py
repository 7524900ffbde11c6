"""Feed SlipPlaced ledger events into slip intake."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from loguru import logger
from sqlalchemy.orm import Session

from app.core.clock import Clock
from app.core.config import Settings
from app.core.errors import LedgerError, SlipRejected
from app.db import run_in_transaction, session_scope
from app.domain import matches_from_data
from app.models import AlertSeverity
from app.repositories import CursorRepository, CycleRepository
from app.services.alerts import AlertService
from ledger.client import LedgerSlip, SlipPlacedEvent
from ledger.codec import predictions_from_ledger

from .slip_intake import SlipIntake

CURSOR_NAME = "slip_placed"


class SlipLedger(Protocol):
    def latest_block(self) -> int: ...

    def fetch_slip_events(self, from_block: int, to_block: int) -> list[SlipPlacedEvent]: ...

    def get_slip(self, slip_id: int) -> LedgerSlip: ...


@dataclass(slots=True)
class SlipIndexSummary:
    from_block: int | None = None
    to_block: int | None = None
    events: int = 0
    recorded: list[int] = field(default_factory=list)
    rejected: dict[int, str] = field(default_factory=dict)
    waiting_on_cycle: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_block": self.from_block,
            "to_block": self.to_block,
            "events": self.events,
            "recorded": list(self.recorded),
            "rejected": {str(slip_id): reason for slip_id, reason in self.rejected.items()},
            "waiting_on_cycle": self.waiting_on_cycle,
            "error": self.error,
        }


class _UnknownCycle(Exception):
    def __init__(self, cycle_id: int) -> None:
        super().__init__(f"cycle {cycle_id} is not stored yet")
        self.cycle_id = cycle_id


class SlipIndexer:
    """Poll SlipPlaced logs from a stored block cursor and record each slip.

    The cursor only moves past a block range once every slip in it has been
    recorded or rejected. Recording is idempotent, so a range replayed after a
    crash or a hold stores nothing twice.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ledger: SlipLedger,
        intake: SlipIntake,
        settings: Settings,
        clock: Clock,
        *,
        alerts: AlertService,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._intake = intake
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

    def _start_block(self, head: int) -> int:
        with session_scope(self._session_factory) as session:
            cursor = CursorRepository(session).get_block(CURSOR_NAME)
        if cursor is None:
            return max(0, head - self._settings.ledger_log_lookback_blocks)
        return cursor + 1

    def _advance(self, block_number: int) -> None:
        now = self._clock.now()
        self._transaction(
            lambda session: CursorRepository(session).advance(CURSOR_NAME, block_number, at=now),
            label=f"advance {CURSOR_NAME} cursor",
        )

    def _cycle_fixture_ids(self, cycle_id: int) -> list[int]:
        with session_scope(self._session_factory) as session:
            cycle = CycleRepository(session).get_by_cycle_id(cycle_id)
            if cycle is None:
                raise _UnknownCycle(cycle_id)
            return [match.fixture_id for match in matches_from_data(cycle.matches_data)]

    def _record(self, event: SlipPlacedEvent) -> None:
        fixture_ids = self._cycle_fixture_ids(event.cycle_id)
        slip = self._ledger.get_slip(event.slip_id)
        try:
            predictions = predictions_from_ledger(slip.predictions, fixture_ids)
        except ValueError as exc:
            raise SlipRejected(str(exc), reason="malformed_prediction") from exc
        self._intake.record_slip(
            slip_id=event.slip_id,
            cycle_id=event.cycle_id,
            player_address=slip.player,
            predictions=predictions,
            placed_at=datetime.fromtimestamp(slip.placed_at, timezone.utc),
        )

    def _reject(self, event: SlipPlacedEvent, exc: SlipRejected) -> str:
        reason = str(exc.details.get("reason") or exc.kind.value)
        logger.warning("Rejected slip {} for cycle {}: {}", event.slip_id, event.cycle_id, exc)
        self._alerts.raise_alert(
            "slip_rejected",
            f"Slip {event.slip_id} for cycle {event.cycle_id} was rejected: {exc}",
            cycle_id=event.cycle_id,
            severity=AlertSeverity.WARNING,
            details={"slip_id": event.slip_id, "reason": reason, "tx_hash": event.tx_hash},
            dedupe_key=f"slip_rejected:{event.slip_id}",
        )
        return reason

    def run_once(self) -> SlipIndexSummary:
        summary = SlipIndexSummary()
        try:
            head = self._ledger.latest_block() - (self._settings.ledger_confirmations - 1)
            start = self._start_block(head)
            if start > head:
                return summary
            summary.from_block = start

            chunk = self._settings.slip_index_chunk_blocks
            while start <= head:
                end = min(head, start + chunk - 1)
                events = self._ledger.fetch_slip_events(start, end)
                summary.events += len(events)
                for event in events:
                    try:
                        self._record(event)
                    except SlipRejected as exc:
                        summary.rejected[event.slip_id] = self._reject(event, exc)
                    else:
                        summary.recorded.append(event.slip_id)
                self._advance(end)
                summary.to_block = end
                start = end + 1
        except _UnknownCycle as exc:
            summary.waiting_on_cycle = exc.cycle_id
            logger.info("Slip indexing waits for cycle {} to be stored", exc.cycle_id)
            self._alerts.raise_alert(
                "slip_cycle_unknown",
                f"SlipPlaced events reference cycle {exc.cycle_id}, which is not stored",
                cycle_id=exc.cycle_id,
                severity=AlertSeverity.WARNING,
                dedupe_key=f"slip_cycle_unknown:{exc.cycle_id}",
            )
        except LedgerError as exc:
            summary.error = exc.kind.value
            logger.warning("Slip indexing stopped on ledger error {}: {}", exc.kind.value, exc)

        if summary.recorded or summary.rejected:
            logger.info(
                "Indexed slips up to block {}: {} recorded, {} rejected",
                summary.to_block,
                len(summary.recorded),
                len(summary.rejected),
            )
        return summary


__all__ = ["CURSOR_NAME", "SlipIndexSummary", "SlipIndexer", "SlipLedger"]
