"""Operator alerts: persisted for the dashboard and emitted on the log stream."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from app.core.clock import Clock
from app.db import session_scope
from app.models import AlertSeverity
from app.repositories import AlertRepository


class AlertService:
    def __init__(self, session_factory: Callable[[], Session], clock: Clock) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def raise_alert(
        self,
        kind: str,
        message: str,
        *,
        cycle_id: int | None = None,
        severity: AlertSeverity = AlertSeverity.CRITICAL,
        details: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        """Record an alert. Returns False when it was suppressed as a duplicate."""

        with session_scope(self._session_factory) as session:
            alert = AlertRepository(session).record(
                kind=kind,
                message=message,
                severity=severity,
                cycle_id=cycle_id,
                details=details,
                dedupe_key=dedupe_key,
                created_at=self._clock.now(),
            )
        if alert is None:
            logger.debug("Suppressed duplicate alert {}", dedupe_key)
            return False

        bound = logger.bind(alert=kind, cycle_id=cycle_id)
        if severity is AlertSeverity.CRITICAL:
            bound.error("ALERT [{}] {}", kind, message)
        else:
            bound.warning("ALERT [{}] {}", kind, message)
        return True


__all__ = ["AlertService"]
