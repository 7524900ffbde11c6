from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class CycleStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PENDING_RESULTS = "pending_results"
    READY_FOR_RESOLUTION = "ready_for_resolution"
    RESOLVED = "resolved"
    EVALUATED = "evaluated"
    CANCELLED = "cancelled"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class GuidedMarketKind(str, Enum):
    MONEYLINE = "moneyline"
    OVER_UNDER_25 = "over_under_25"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Fixture(Base):
    __tablename__ = "fixtures"

    fixture_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    home_team: Mapped[str] = mapped_column(String, nullable=False)
    away_team: Mapped[str] = mapped_column(String, nullable=False)
    league_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    league_name: Mapped[str | None] = mapped_column(String, nullable=True)
    kickoff_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="NS")
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    # provider read health, written by results polling and refetches
    last_read_ok_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_read_error: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_read_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    odds: Mapped[list["FixtureOdds"]] = relationship(
        "FixtureOdds", back_populates="fixture", cascade="all, delete-orphan"
    )
    result: Mapped[FixtureResult | None] = relationship(
        "FixtureResult", back_populates="fixture", uselist=False
    )


class FixtureOdds(Base):
    __tablename__ = "fixture_odds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fixture_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("fixtures.fixture_id"), nullable=False, index=True
    )
    market_id: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(32), nullable=False)
    # empty string rather than NULL so the composite key stays unique
    total: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    value: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    bookmaker_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    fixture: Mapped[Fixture] = relationship("Fixture", back_populates="odds")

    __table_args__ = (
        UniqueConstraint("fixture_id", "market_id", "label", "total", name="uq_fixture_odds_selection"),
    )


class FixtureResult(Base):
    __tablename__ = "fixture_results"

    fixture_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("fixtures.fixture_id"), primary_key=True, autoincrement=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    home_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    away_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ht_home: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ht_away: Mapped[int | None] = mapped_column(Integer, nullable=True)
    outcome_1x2: Mapped[str | None] = mapped_column(String(8), nullable=True)
    outcome_ou25: Mapped[str | None] = mapped_column(String(8), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    fixture: Mapped[Fixture] = relationship("Fixture", back_populates="result")


class Cycle(Base):
    __tablename__ = "cycles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Assigned by the ledger; NULL only while the row is a DRAFT staking the date.
    cycle_id: Mapped[int | None] = mapped_column(BigInteger, unique=True, nullable=True)
    game_date: Mapped[date] = mapped_column(Date, unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=CycleStatus.DRAFT.value, index=True)
    matches_data: Mapped[list] = mapped_column(JSONType, nullable=False)
    selection_summary: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    betting_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ready_for_resolution: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    evaluation_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolution_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    resolution_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    parked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    evaluated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    slips: Mapped[list["Slip"]] = relationship("Slip", back_populates="cycle")

    @property
    def fixture_ids(self) -> list[int]:
        return [int(entry["fixture_id"]) for entry in self.matches_data or []]


class Slip(Base):
    __tablename__ = "slips"

    slip_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    cycle_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("cycles.cycle_id"), nullable=False, index=True
    )
    player_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    predictions: Mapped[list] = mapped_column(JSONType, nullable=False)
    placed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_evaluated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    correct_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_score: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    leaderboard_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prize_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    evaluated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    cycle: Mapped[Cycle] = relationship("Cycle", back_populates="slips")


class GuidedMarket(Base):
    __tablename__ = "guided_markets"

    market_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    fixture_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("fixtures.fixture_id"), nullable=False, index=True
    )
    market_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome_submitted: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    fixture: Mapped[Fixture] = relationship("Fixture")


class OperatorAlert(Base):
    __tablename__ = "operator_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default=AlertSeverity.CRITICAL.value)
    cycle_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(160), nullable=True, unique=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class IndexerCursor(Base):
    """Last ledger block an event indexer has fully processed."""

    __tablename__ = "indexer_cursors"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
