"""Guided fixture markets awaiting an outcome on the guided oracle."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from app.models import FixtureResult, GuidedMarket, GuidedMarketKind


class GuidedMarketRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def register(self, *, market_id: str, fixture_id: int, kind: GuidedMarketKind) -> GuidedMarket:
        market = self._session.get(GuidedMarket, market_id)
        if market is None:
            market = GuidedMarket(market_id=market_id)
            self._session.add(market)
        market.fixture_id = fixture_id
        market.market_kind = kind.value
        return market

    def mark_submitted(
        self, market_id: str, *, outcome: str, tx_hash: str | None, submitted_at: datetime
    ) -> GuidedMarket | None:
        market = self._session.get(GuidedMarket, market_id)
        if market is None:
            return None
        market.outcome_submitted = outcome
        market.tx_hash = tx_hash
        market.submitted_at = submitted_at
        return market

    # ------------------------------------------------------------------
    # Queries

    def list_ready(self, *, finished_before: datetime, limit: int = 50) -> list[GuidedMarket]:
        """Markets without a submitted outcome whose fixture finished before the cutoff."""

        query = (
            select(GuidedMarket)
            .join(FixtureResult, FixtureResult.fixture_id == GuidedMarket.fixture_id)
            .options(joinedload(GuidedMarket.fixture))
            .where(
                GuidedMarket.outcome_submitted.is_(None),
                FixtureResult.outcome_1x2.is_not(None),
                FixtureResult.finished_at.is_not(None),
                FixtureResult.finished_at <= finished_before,
            )
            .order_by(FixtureResult.finished_at.asc(), GuidedMarket.market_id.asc())
            .limit(limit)
        )
        return list(self._session.execute(query).scalars())


__all__ = ["GuidedMarketRepository"]
