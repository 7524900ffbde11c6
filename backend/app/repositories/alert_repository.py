"""Operator alert persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import AlertSeverity, OperatorAlert


class AlertRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def record(
        self,
        *,
        kind: str,
        message: str,
        severity: AlertSeverity = AlertSeverity.CRITICAL,
        cycle_id: int | None = None,
        details: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
        created_at: datetime,
    ) -> OperatorAlert | None:
        """Persist an alert; returns None if ``dedupe_key`` was already raised."""

        if dedupe_key and self.get_by_dedupe_key(dedupe_key) is not None:
            return None
        alert = OperatorAlert(
            kind=kind,
            severity=severity.value,
            cycle_id=cycle_id,
            message=message,
            details=details,
            dedupe_key=dedupe_key,
            created_at=created_at,
        )
        self._session.add(alert)
        self._session.flush()
        return alert

    def get_by_dedupe_key(self, dedupe_key: str) -> OperatorAlert | None:
        query = select(OperatorAlert).where(OperatorAlert.dedupe_key == dedupe_key)
        return self._session.execute(query).scalar_one_or_none()

    def list_recent(self, *, kind: str | None = None, limit: int = 50) -> list[OperatorAlert]:
        query = select(OperatorAlert)
        if kind:
            query = query.where(OperatorAlert.kind == kind)
        query = query.order_by(OperatorAlert.created_at.desc(), OperatorAlert.id.desc()).limit(limit)
        return list(self._session.execute(query).scalars())


__all__ = ["AlertRepository"]
