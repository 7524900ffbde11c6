"""Cycle state machine: open, cancel and deadline transitions."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Protocol, Sequence

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import Clock
from app.core.config import Settings
from app.core.errors import (
    CycleAlreadyExists,
    InsufficientFixtures,
    InvalidTransition,
    LedgerError,
    LedgerErrorKind,
    NotFound,
    StoreConflict,
)
from app.db import run_in_transaction
from app.domain import MatchEntry, matches_from_data
from app.models import AlertSeverity, Cycle, CycleStatus
from app.repositories import CycleRepository, SlipRepository
from app.services.alerts import AlertService

from .match_selector import MatchSelector, SelectionResult


class CycleOpener(Protocol):
    def start_new_daily_cycle(self, matches: Sequence[MatchEntry]) -> Any: ...

    def find_cycle_creation(self, tx_hash: str) -> Any: ...

@dataclass(slots=True)
class OpenCycleResult:
    game_date: date
    cycle_id: int
    created: bool
    tx_hash: str | None = None
    matches: list[MatchEntry] = field(default_factory=list)
    selection: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "game_date": self.game_date.isoformat(),
            "cycle_id": self.cycle_id,
            "created": self.created,
            "tx_hash": self.tx_hash,
            "fixture_ids": [match.fixture_id for match in self.matches],
            "selection": self.selection,
        }


@dataclass(slots=True)
class LifecycleTickSummary:
    moved_to_pending: list[int] = field(default_factory=list)
    opened: OpenCycleResult | None = None
    open_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "moved_to_pending": self.moved_to_pending,
            "opened": self.opened.to_dict() if self.opened else None,
            "open_error": self.open_error,
        }


@dataclass(slots=True)
class _Draft:
    row_id: int
    matches: list[MatchEntry]
    selection: SelectionResult


class CycleLifecycleController:
    """Own cycle state transitions and drive the selector and ledger.

    ``open_cycle`` runs in two phases so no Store transaction is held across
    the ledger call: a DRAFT row stakes the date, then the ledger result
    either promotes it to OPEN or the draft is deleted again.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        selector: MatchSelector,
        ledger: CycleOpener,
        settings: Settings,
        clock: Clock,
        *,
        alerts: AlertService | None = None,
        draft_poll_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._selector = selector
        self._ledger = ledger
        self._settings = settings
        self._clock = clock
        self._alerts = alerts
        self._draft_poll_seconds = draft_poll_seconds
        self._sleep = sleep
        self._last_open_attempt: dict[date, datetime] = {}

    def _transaction(self, work: Callable[[Session], Any], label: str) -> Any:
        return run_in_transaction(
            self._session_factory,
            work,
            attempts=self._settings.store_retry_attempts,
            backoff=self._settings.store_retry_backoff_schedule,
            label=label,
        )

    def _alert(self, kind: str, message: str, **kwargs: Any) -> None:
        if self._alerts is not None:
            self._alerts.raise_alert(kind, message, **kwargs)

    # ------------------------------------------------------------------
    # open_cycle

    def _existing(self, game_date: date) -> Cycle | None:
        return self._transaction(lambda session: CycleRepository(session).get_by_date(game_date), "cycle lookup")

    def _stake_draft(self, game_date: date) -> _Draft:
        now = self._clock.now()

        def _work(session: Session) -> _Draft:
            selection = self._selector.select_matches(session, game_date, now=now)
            try:
                cycle = CycleRepository(session).create_draft(
                    game_date=game_date,
                    matches=selection.matches,
                    betting_deadline=selection.betting_deadline,
                    selection_summary=selection.summary.to_dict(),
                    created_at=now,
                )
            except IntegrityError as exc:
                raise CycleAlreadyExists(f"a cycle for {game_date} is already staked", game_date=str(game_date)) from exc
            return _Draft(row_id=cycle.id, matches=selection.matches, selection=selection)

        return self._transaction(_work, f"stake cycle {game_date}")

    def _await_concurrent_open(self, game_date: date) -> OpenCycleResult:
        deadline = time.monotonic() + self._settings.ledger_write_timeout_seconds * 2
        while True:
            cycle = self._existing(game_date)
            if cycle is None:
                raise StoreConflict(f"concurrent open for {game_date} was rolled back", game_date=str(game_date))
            if cycle.status != CycleStatus.DRAFT.value:
                return OpenCycleResult(
                    game_date=game_date,
                    cycle_id=int(cycle.cycle_id),
                    created=False,
                    tx_hash=cycle.tx_hash,
                    matches=matches_from_data(cycle.matches_data),
                )
            if cycle.tx_hash:
                return self._resume_draft(cycle)
            if time.monotonic() >= deadline:
                raise StoreConflict(f"cycle for {game_date} stayed in draft", game_date=str(game_date))
            self._sleep(self._draft_poll_seconds)

    def _drop_draft(self, row_id: int, game_date: date, exc: Exception) -> None:
        self._transaction(lambda session: CycleRepository(session).delete_draft(row_id), "delete draft")
        logger.error("Ledger rejected cycle for {}; draft rolled back: {!r}", game_date, exc)
        if isinstance(exc, LedgerError) and not exc.recoverable:
            self._alert(
                f"ledger_{exc.kind.value}",
                f"startDailyCycle for {game_date} failed: {exc.reason or exc}",
                details={"game_date": str(game_date), "kind": exc.kind.value},
                dedupe_key=f"ledger_open:{game_date}:{exc.kind.value}",
            )

    def _keep_draft(self, row_id: int, game_date: date, tx_hash: str) -> None:
        now = self._clock.now()
        self._transaction(
            lambda session: CycleRepository(session).note_draft_tx(row_id, tx_hash=tx_hash, at=now),
            f"note creation tx for {game_date}",
        )
        logger.warning("Creation tx {} for {} not mined yet; draft kept for the next attempt", tx_hash, game_date)

    def _recover_open(self, row_id: int, game_date: date, exc: Exception) -> Any:
        """Settle a failed startDailyCycle call.

        A ledger error carrying a tx hash may still have mined: the creation is
        returned when it did, and the draft is kept with the hash while the tx
        is unknown. Any other failure rolls the draft back and re-raises.
        """

        tx_hash = exc.tx_hash if isinstance(exc, LedgerError) else None
        if not tx_hash or exc.kind is LedgerErrorKind.REVERTED:
            self._drop_draft(row_id, game_date, exc)
            raise exc

        try:
            creation = self._ledger.find_cycle_creation(tx_hash)
        except LedgerError as check:
            if check.kind is LedgerErrorKind.REVERTED:
                self._drop_draft(row_id, game_date, check)
                raise check from exc
            logger.warning("Creation tx {} for {} could not be looked up: {}", tx_hash, game_date, check.kind.value)
            creation = None
        if creation is None:
            self._keep_draft(row_id, game_date, tx_hash)
            raise exc
        logger.warning("startDailyCycle for {} reported {} but mined in {}", game_date, exc.kind.value, creation.tx_hash)
        return creation

    def _promote(
        self,
        row_id: int,
        game_date: date,
        creation: Any,
        matches: list[MatchEntry],
        selection: dict[str, Any] | None,
    ) -> OpenCycleResult:
        opened_at = self._clock.now()
        try:
            self._transaction(
                lambda session: CycleRepository(session).promote_draft(
                    row_id, cycle_id=creation.cycle_id, tx_hash=creation.tx_hash, at=opened_at
                ),
                f"promote cycle {creation.cycle_id}",
            )
        except Exception:
            self._alert(
                "cycle_promotion_failed",
                f"Cycle {creation.cycle_id} exists on-chain but its draft for {game_date} was not promoted",
                cycle_id=creation.cycle_id,
                details={"tx_hash": creation.tx_hash, "row_id": row_id},
                dedupe_key=f"cycle_promotion_failed:{creation.cycle_id}",
            )
            raise

        logger.info("Opened cycle {} for {} (tx {})", creation.cycle_id, game_date, creation.tx_hash)
        return OpenCycleResult(
            game_date=game_date,
            cycle_id=creation.cycle_id,
            created=True,
            tx_hash=creation.tx_hash,
            matches=matches,
            selection=selection,
        )

    def _resume_draft(self, cycle: Cycle) -> OpenCycleResult:
        """Finish a draft whose creation tx was sent but never confirmed."""

        game_date = cycle.game_date
        try:
            creation = self._ledger.find_cycle_creation(cycle.tx_hash)
        except LedgerError as exc:
            if exc.kind is LedgerErrorKind.REVERTED:
                self._drop_draft(cycle.id, game_date, exc)
            raise
        if creation is None:
            raise LedgerError(
                LedgerErrorKind.TIMEOUT,
                f"creation tx for {game_date} is still pending",
                tx_hash=cycle.tx_hash,
            )
        return self._promote(
            cycle.id, game_date, creation, matches_from_data(cycle.matches_data), cycle.selection_summary
        )

    def open_cycle(self, game_date: date) -> OpenCycleResult:
        """Open the cycle for ``game_date``; a no-op returning the id if one exists."""

        existing = self._existing(game_date)
        if existing is not None:
            if existing.status == CycleStatus.DRAFT.value:
                return self._await_concurrent_open(game_date)
            logger.info("Cycle {} already exists for {}", existing.cycle_id, game_date)
            return OpenCycleResult(
                game_date=game_date,
                cycle_id=int(existing.cycle_id),
                created=False,
                tx_hash=existing.tx_hash,
                matches=matches_from_data(existing.matches_data),
            )

        try:
            draft = self._stake_draft(game_date)
        except CycleAlreadyExists:
            return self._await_concurrent_open(game_date)
        except InsufficientFixtures as exc:
            self._alert(
                exc.kind.value,
                f"Cannot open cycle for {game_date}: {exc}",
                severity=AlertSeverity.WARNING,
                details=exc.details,
                dedupe_key=f"{exc.kind.value}:{game_date}",
            )
            raise

        try:
            creation = self._ledger.start_new_daily_cycle(draft.matches)
        except Exception as exc:
            creation = self._recover_open(draft.row_id, game_date, exc)

        return self._promote(draft.row_id, game_date, creation, draft.matches, draft.selection.summary.to_dict())

    # ------------------------------------------------------------------
    # Other transitions

    def cancel_cycle(self, cycle_id: int, reason: str) -> Cycle:
        now = self._clock.now()

        def _work(session: Session) -> Cycle:
            repo = CycleRepository(session)
            cycle = repo.get_by_cycle_id(cycle_id)
            if cycle is None:
                raise NotFound(f"cycle {cycle_id} does not exist", cycle_id=cycle_id)
            slips = SlipRepository(session).count_for_cycle(cycle_id)
            if slips:
                raise InvalidTransition(
                    f"cycle {cycle_id} has {slips} slips and cannot be cancelled", cycle_id=cycle_id
                )
            return repo.cancel(cycle, reason=reason, at=now)

        cycle = self._transaction(_work, f"cancel cycle {cycle_id}")
        logger.warning("Cancelled cycle {}: {}", cycle_id, reason)
        return cycle

    def close_betting(self, now: datetime | None = None) -> list[int]:
        """Move every OPEN cycle whose deadline has passed to PENDING_RESULTS."""

        now = now or self._clock.now()

        def _work(session: Session) -> list[int]:
            repo = CycleRepository(session)
            moved = []
            for cycle in repo.list_open_past_deadline(now):
                repo.mark_pending_results(cycle, at=now)
                moved.append(int(cycle.cycle_id))
            return moved

        moved = self._transaction(_work, "close betting")
        for cycle_id in moved:
            logger.info("Cycle {} betting closed; awaiting results", cycle_id)
        return moved

    def ensure_daily_cycle(self, now: datetime | None = None) -> OpenCycleResult | None:
        """Open today's cycle once the open time has passed.

        Failed attempts are retried at most once per ``cycle_open_retry_minutes``.
        """

        now = now or self._clock.now()
        hours, minutes = self._settings.cycle_open_time
        if (now.hour, now.minute) < (hours, minutes):
            return None
        today = now.date()
        last_attempt = self._last_open_attempt.get(today)
        if last_attempt is not None and now - last_attempt < timedelta(
            minutes=self._settings.cycle_open_retry_minutes
        ):
            return None

        # a DRAFT means an open is in flight (or stuck, which the monitor reports);
        # one holding an unconfirmed creation tx is checked again
        existing = self._existing(today)
        if existing is not None and not (existing.status == CycleStatus.DRAFT.value and existing.tx_hash):
            return None

        self._last_open_attempt = {today: now}
        try:
            return self.open_cycle(today)
        except InsufficientFixtures as exc:
            logger.warning("Cycle for {} not opened: {}; retrying later", today, exc)
        except LedgerError as exc:
            logger.error("Cycle for {} not opened: ledger {}", today, exc.kind.value)
        return None

    def tick(self, now: datetime | None = None) -> LifecycleTickSummary:
        now = now or self._clock.now()
        summary = LifecycleTickSummary()
        try:
            summary.opened = self.ensure_daily_cycle(now)
        except StoreConflict as exc:
            summary.open_error = exc.kind.value
            logger.warning("Daily cycle open deferred: {}", exc)
        summary.moved_to_pending = self.close_betting(now)
        return summary


__all__ = ["CycleLifecycleController", "LifecycleTickSummary", "OpenCycleResult"]
