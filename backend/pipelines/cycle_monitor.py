"""Health checks over stored cycles, surfaced as operator alerts."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from app.core.clock import Clock, ensure_utc
from app.core.config import Settings
from app.db import session_scope
from app.domain import matches_from_data
from app.models import AlertSeverity, Cycle, CycleStatus
from app.repositories import CycleRepository
from app.services.alerts import AlertService

from .resolution import resolution_floor

# how long a RESOLVED cycle may wait for the evaluator before it is reported
EVALUATION_GRACE = timedelta(minutes=30)
# drafts older than this outlived any ledger call that could promote them
STALE_DRAFT_AGE = timedelta(minutes=15)


@dataclass(slots=True, frozen=True)
class Finding:
    kind: str
    message: str
    cycle_id: int | None = None
    severity: AlertSeverity = AlertSeverity.WARNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "cycle_id": self.cycle_id,
            "severity": self.severity.value,
        }


@dataclass(slots=True)
class MonitorReport:
    checked_at: datetime
    findings: list[Finding] = field(default_factory=list)
    alerts_raised: int = 0

    @property
    def healthy(self) -> bool:
        return not self.findings

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "healthy": self.healthy,
            "findings": [finding.to_dict() for finding in self.findings],
            "alerts_raised": self.alerts_raised,
        }


class CycleMonitor:
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

    def _missing_today(self, repo: CycleRepository, now: datetime) -> list[Finding]:
        hours, minutes = self._settings.cycle_open_time
        opens_at = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        grace = timedelta(minutes=self._settings.cycle_open_retry_minutes)
        if now < opens_at + grace:
            return []
        cycle = repo.get_by_date(now.date())
        if cycle is None:
            return [Finding("missing_cycle", f"No cycle opened for {now.date()}")]
        if cycle.status == CycleStatus.DRAFT.value and now - ensure_utc(cycle.created_at) > STALE_DRAFT_AGE:
            return [
                Finding(
                    "stale_draft",
                    f"Cycle for {now.date()} has been a draft since {cycle.created_at}",
                    severity=AlertSeverity.CRITICAL,
                )
            ]
        return []

    def _cycle_findings(self, cycle: Cycle, now: datetime) -> list[Finding]:
        findings = []
        cycle_id = int(cycle.cycle_id)
        if cycle.status != CycleStatus.CANCELLED.value and not cycle.tx_hash:
            findings.append(Finding("missing_tx_hash", f"Cycle {cycle_id} has no creation tx hash", cycle_id))
        if cycle.parked:
            findings.append(
                Finding(
                    "cycle_parked",
                    f"Cycle {cycle_id} is parked: {cycle.last_error}",
                    cycle_id,
                    AlertSeverity.CRITICAL,
                )
            )
        if cycle.status in {CycleStatus.PENDING_RESULTS.value, CycleStatus.READY_FOR_RESOLUTION.value}:
            floor_at = resolution_floor(
                matches_from_data(cycle.matches_data), self._settings.resolution_floor_minutes
            )
            overdue_at = floor_at + timedelta(hours=self._settings.resolution_delay_alert_hours)
            if now >= overdue_at:
                findings.append(
                    Finding(
                        "resolution_delayed",
                        f"Cycle {cycle_id} is still {cycle.status} {now - floor_at} after its resolution floor",
                        cycle_id,
                    )
                )
        if cycle.status == CycleStatus.RESOLVED.value and not cycle.evaluation_completed:
            resolved_at = ensure_utc(cycle.resolved_at)
            if resolved_at is None or now - resolved_at >= EVALUATION_GRACE:
                findings.append(
                    Finding("evaluation_pending", f"Cycle {cycle_id} resolved but not evaluated", cycle_id)
                )
        return findings

    def check(self) -> MonitorReport:
        now = self._clock.now()
        report = MonitorReport(checked_at=now)
        active = [
            CycleStatus.OPEN,
            CycleStatus.PENDING_RESULTS,
            CycleStatus.READY_FOR_RESOLUTION,
            CycleStatus.RESOLVED,
        ]
        # evaluated cycles are settled; only recent ones are re-checked
        history_from = now.date() - timedelta(days=self._settings.monitor_history_days)
        with session_scope(self._session_factory) as session:
            repo = CycleRepository(session)
            report.findings.extend(self._missing_today(repo, now))
            cycles = repo.list_by_status(active) + repo.list_by_status(
                [CycleStatus.EVALUATED], game_date_from=history_from
            )
            for cycle in cycles:
                report.findings.extend(self._cycle_findings(cycle, now))

        day = now.date().isoformat()
        for finding in report.findings:
            raised = self._alerts.raise_alert(
                finding.kind,
                finding.message,
                cycle_id=finding.cycle_id,
                severity=finding.severity,
                dedupe_key=f"{finding.kind}:{finding.cycle_id or '-'}:{day}",
            )
            report.alerts_raised += int(raised)
        if report.healthy:
            logger.debug("Cycle monitor: all healthy")
        else:
            logger.info("Cycle monitor: {} findings, {} new alerts", len(report.findings), report.alerts_raised)
        return report


__all__ = ["CycleMonitor", "Finding", "MonitorReport"]
