from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from oddsmirror.core.settlement import (
    AlreadyResolvedError,
    EventNotFoundError,
    OutcomeNotFoundError,
    deactivate_mapping,
    settle,
)
from oddsmirror.db import Base
from oddsmirror.models import EVENT_STATUS_RESOLVED, Balance, Event, MarketMapping, Outcome


def _seed(db):
    db.add(Event(id="ev1", liquidity_parameter=20000.0))
    db.add(Outcome(id="yes", event_id="ev1", name="YES", probability=0.97))
    db.add(Outcome(id="no", event_id="ev1", name="NO", probability=0.03))
    db.add_all(
        [
            Balance(user_id="alice", token_symbol="EV1-YES", event_id="ev1", outcome_id="yes", amount=Decimal("100")),
            Balance(user_id="bob", token_symbol="EV1-YES", event_id="ev1", outcome_id="yes", amount=Decimal("50")),
            Balance(user_id="carol", token_symbol="EV1-NO", event_id="ev1", outcome_id="no", amount=Decimal("80")),
            Balance(user_id="bob", token_symbol="TUSD", amount=Decimal("10")),
        ]
    )
    db.commit()


def _stable(db, user_id):
    row = db.scalars(
        select(Balance).where(
            Balance.user_id == user_id,
            Balance.token_symbol == "TUSD",
            Balance.event_id.is_(None),
        )
    ).first()
    return None if row is None else Decimal(row.amount)


def test_winners_paid_net_of_fee_and_losers_zeroed(db_session):
    _seed(db_session)

    result = settle(db_session, "ev1", "yes")

    assert result.winners == 2
    assert result.total_payout == Decimal("147")
    assert result.total_fees == Decimal("3")
    assert result.losing_positions_zeroed == 1
    db_session.expire_all()
    assert _stable(db_session, "alice") == Decimal("98")
    assert _stable(db_session, "bob") == Decimal("59")
    assert _stable(db_session, "carol") is None
    positions = db_session.scalars(select(Balance).where(Balance.event_id == "ev1")).all()
    assert all(Decimal(p.amount) == 0 for p in positions)
    event = db_session.get(Event, "ev1")
    assert event.status == EVENT_STATUS_RESOLVED
    assert event.result == "YES"
    assert event.resolved_at is not None


def test_second_settlement_is_refused_without_side_effects(db_session):
    _seed(db_session)
    settle(db_session, "ev1", "yes")

    with pytest.raises(AlreadyResolvedError):
        settle(db_session, "ev1", "yes")

    db_session.expire_all()
    assert _stable(db_session, "alice") == Decimal("98")
    assert _stable(db_session, "bob") == Decimal("59")


def test_unknown_event_or_foreign_outcome(db_session):
    _seed(db_session)
    db_session.add(Event(id="ev2"))
    db_session.add(Outcome(id="other", event_id="ev2", name="YES"))
    db_session.commit()

    with pytest.raises(EventNotFoundError):
        settle(db_session, "missing", "yes")
    with pytest.raises(OutcomeNotFoundError):
        settle(db_session, "ev1", "other")

    db_session.expire_all()
    assert db_session.get(Event, "ev1").status != EVENT_STATUS_RESOLVED
    assert _stable(db_session, "alice") is None


def test_deactivate_mapping_is_idempotent(db_session):
    db_session.add(Event(id="ev1"))
    db_session.add(MarketMapping(id="m1", internal_event_id="ev1", external_market_id="pm-1"))
    db_session.commit()

    assert deactivate_mapping(db_session, "m1") is True
    assert deactivate_mapping(db_session, "m1") is False
    db_session.expire_all()
    assert db_session.get(MarketMapping, "m1").is_active is False


def test_settle_refuses_event_resolved_by_another_session(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'settle.db'}", future=True)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine)
    seed, first, second = SessionLocal(), SessionLocal(), SessionLocal()
    try:
        _seed(seed)
        seed.close()

        # first session holds ev1 as ACTIVE in its identity map
        assert first.get(Event, "ev1").status != EVENT_STATUS_RESOLVED

        settle(second, "ev1", "no")

        with pytest.raises(AlreadyResolvedError):
            settle(first, "ev1", "yes")

        check = SessionLocal()
        try:
            assert check.get(Event, "ev1").result == "NO"
            assert _stable(check, "carol") == Decimal("78.4")
            assert _stable(check, "alice") is None
            assert _stable(check, "bob") == Decimal("10")
        finally:
            check.close()
    finally:
        first.close()
        second.close()
        engine.dispose()
