"""Idempotent operator triggers shared by the admin CLI and the admin routes."""

from __future__ import annotations

from datetime import date
from typing import Any

from loguru import logger

from app.core.errors import NotFound
from app.db import session_scope
from app.models import CycleStatus
from app.repositories import CycleRepository

from .context import EngineContext


class AdminTriggers:
    def __init__(self, context: EngineContext) -> None:
        self._context = context

    def fetch_fixtures(self) -> dict[str, Any]:
        logger.info("Admin trigger: fetch 7-day fixtures")
        return self._context.provider.fetch_7day_fixtures().to_dict()

    def select(self, game_date: date, *, dry_run: bool = False) -> dict[str, Any]:
        logger.info("Admin trigger: select matches for {} (dry_run={})", game_date, dry_run)
        if not dry_run:
            return self._context.require_lifecycle().open_cycle(game_date).to_dict()
        with session_scope(self._context.session_factory) as session:
            selection = self._context.selector.select_matches(session, game_date, now=self._context.clock.now())
        return {
            "game_date": game_date.isoformat(),
            "matches": [match.to_dict() for match in selection.matches],
            "summary": selection.summary.to_dict(),
        }

    def fetch_results(self, cycle_id: int) -> dict[str, Any]:
        logger.info("Admin trigger: fetch results for cycle {}", cycle_id)
        return self._context.results.ingest_cycle(cycle_id).to_dict()

    def resolve(self, cycle_id: int) -> dict[str, Any]:
        """Run the gates for a pending cycle, then submit it if staged.

        The gates are never bypassed; a cycle that fails them is reported back
        with its blocking fixtures.
        """

        logger.info("Admin trigger: resolve cycle {}", cycle_id)
        oracle = self._context.require_oracle()
        with session_scope(self._context.session_factory) as session:
            cycle = CycleRepository(session).get_by_cycle_id(cycle_id)
            if cycle is None:
                raise NotFound(f"cycle {cycle_id} does not exist", cycle_id=cycle_id)
            status = cycle.status

        payload: dict[str, Any] = {"cycle_id": cycle_id}
        if status == CycleStatus.PENDING_RESULTS.value:
            report = self._context.decider.evaluate_cycle(cycle_id)
            payload["gates"] = report.to_dict()
            if not report.staged:
                return payload
        payload["resolution"] = oracle.resolve_cycle(cycle_id).to_dict()
        return payload

    def evaluate(self, cycle_id: int) -> dict[str, Any]:
        logger.info("Admin trigger: evaluate cycle {}", cycle_id)
        return self._context.evaluator.evaluate_cycle(cycle_id).to_dict()

    def cancel(self, cycle_id: int, reason: str) -> dict[str, Any]:
        cycle = self._context.require_lifecycle().cancel_cycle(cycle_id, reason)
        return {"cycle_id": cycle.cycle_id, "status": cycle.status, "reason": cycle.cancel_reason}

    def index_slips(self) -> dict[str, Any]:
        logger.info("Admin trigger: index placed slips")
        return self._context.require_slip_indexer().run_once().to_dict()

    def monitor(self) -> dict[str, Any]:
        return self._context.monitor.check().to_dict()


__all__ = ["AdminTriggers"]
