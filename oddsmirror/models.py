import uuid
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def _new_id() -> str:
    return uuid.uuid4().hex


EVENT_TYPE_BINARY = "BINARY"
EVENT_TYPE_MULTIPLE = "MULTIPLE"
EVENT_TYPE_GROUPED_BINARY = "GROUPED_BINARY"

EVENT_STATUS_ACTIVE = "ACTIVE"
EVENT_STATUS_CLOSED = "CLOSED"
EVENT_STATUS_RESOLVED = "RESOLVED"

SOURCE_POLYMARKET = "POLYMARKET"

HEDGE_STATUS_PENDING = "pending"
HEDGE_STATUS_HEDGED = "hedged"
HEDGE_STATUS_FAILED = "failed"


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_source_status_resolution", "source", "status", "resolution_date"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(512), default="")
    type: Mapped[str] = mapped_column(String(32), default=EVENT_TYPE_BINARY, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=EVENT_STATUS_ACTIVE, nullable=False)
    source: Mapped[str] = mapped_column(String(32), default=SOURCE_POLYMARKET, nullable=False)
    liquidity_parameter: Mapped[float] = mapped_column(Float, default=20000.0, nullable=False)
    q_yes: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    q_no: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    resolution_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolution_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )


class Outcome(Base):
    __tablename__ = "outcomes"
    __table_args__ = (
        Index("ix_outcomes_event_token", "event_id", "external_token_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    probability: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    external_token_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )


class MarketMapping(Base):
    __tablename__ = "market_mappings"
    __table_args__ = (
        Index("ix_market_mappings_active", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    internal_event_id: Mapped[str] = mapped_column(
        ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_market_id: Mapped[str] = mapped_column(String(128), nullable=False)
    yes_token_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    no_token_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # [{"internal_id": ..., "token_id": ..., "name": ...}]
    outcome_mapping: Mapped[list | None] = mapped_column(JSON, nullable=True)
    external_start_date: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )


class OddsHistory(Base):
    __tablename__ = "odds_history"
    __table_args__ = (
        UniqueConstraint("event_id", "outcome_id", "timestamp", name="uq_odds_history_bucket"),
        Index("ix_odds_history_event_ts", "event_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    outcome_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_token_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    timestamp: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    probability: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String(32), default=SOURCE_POLYMARKET, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())


class HedgePosition(Base):
    __tablename__ = "hedge_positions"
    __table_args__ = (
        Index("ix_hedge_positions_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    status: Mapped[str] = mapped_column(String(16), default=HEDGE_STATUS_PENDING, nullable=False)
    external_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    hedged_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )


class Balance(Base):
    __tablename__ = "balances"
    __table_args__ = (
        Index("ix_balances_event_outcome", "event_id", "outcome_id"),
        Index("ix_balances_user_symbol", "user_id", "token_symbol"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=Decimal("0"), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
