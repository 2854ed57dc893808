import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from ..models import (
    EVENT_STATUS_RESOLVED,
    Balance,
    Event,
    MarketMapping,
    Outcome,
)
from ..settings import settings

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class SettlementError(Exception):
    pass


class EventNotFoundError(SettlementError):
    pass


class OutcomeNotFoundError(SettlementError):
    pass


class AlreadyResolvedError(SettlementError):
    """The event is RESOLVED already; callers treat this as a no-op."""


@dataclass
class SettlementResult:
    event_id: str
    winning_outcome_id: str
    winners: int = 0
    total_payout: Decimal = ZERO
    total_fees: Decimal = ZERO
    losing_positions_zeroed: int = 0
    payouts: dict[str, Decimal] = field(default_factory=dict)


def fee_rate() -> Decimal:
    return Decimal(str(settings.SETTLEMENT_FEE_RATE))


def settle(
    db: Session,
    event_id: str,
    winning_outcome_id: str,
    now: datetime | None = None,
) -> SettlementResult:
    """
    Pay out every winning position of an event and close it, in one transaction.

    Winning balances (scoped to the winning outcome, amount > 0) are credited
    to the holder's unscoped stable-token balance net of the fee and zeroed.
    Every other balance on the event is zeroed. The event becomes RESOLVED.
    Any failure rolls back all of it.
    """
    now = now or datetime.now(timezone.utc)
    rate = fee_rate()
    symbol = settings.SETTLEMENT_TOKEN_SYMBOL
    result = SettlementResult(event_id=event_id, winning_outcome_id=winning_outcome_id)

    try:
        # the session may already hold this event; reload it under the row lock
        event = db.scalars(
            select(Event)
            .where(Event.id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if event is None:
            raise EventNotFoundError(f"event not found: {event_id}")
        if event.status == EVENT_STATUS_RESOLVED:
            raise AlreadyResolvedError(f"event already resolved: {event_id}")

        outcome = db.scalars(
            select(Outcome).where(Outcome.id == winning_outcome_id, Outcome.event_id == event_id)
        ).first()
        if outcome is None:
            raise OutcomeNotFoundError(f"outcome {winning_outcome_id} not found on event {event_id}")

        winners = db.scalars(
            select(Balance)
            .where(
                Balance.event_id == event_id,
                Balance.outcome_id == winning_outcome_id,
                Balance.amount > 0,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).all()

        for position in winners:
            amount = Decimal(position.amount)
            fee = amount * rate
            payout = amount - fee
            _credit_stable_balance(db, position.user_id, symbol, payout)
            position.amount = ZERO
            result.winners += 1
            result.total_payout += payout
            result.total_fees += fee
            result.payouts[position.user_id] = result.payouts.get(position.user_id, ZERO) + payout

        zeroed = db.execute(
            update(Balance)
            .where(
                Balance.event_id == event_id,
                or_(Balance.outcome_id.is_(None), Balance.outcome_id != winning_outcome_id),
                Balance.amount != 0,
            )
            .values(amount=ZERO)
            .execution_options(synchronize_session=False)
        )
        result.losing_positions_zeroed = zeroed.rowcount or 0

        event.status = EVENT_STATUS_RESOLVED
        event.result = outcome.name
        event.resolved_at = now
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "settlement_completed event_id=%s outcome_id=%s winners=%s payout=%s fees=%s losers_zeroed=%s",
        event_id,
        winning_outcome_id,
        result.winners,
        result.total_payout,
        result.total_fees,
        result.losing_positions_zeroed,
    )
    return result


def _credit_stable_balance(db: Session, user_id: str, symbol: str, amount: Decimal) -> None:
    balance = db.scalars(
        select(Balance)
        .where(
            Balance.user_id == user_id,
            Balance.token_symbol == symbol,
            Balance.event_id.is_(None),
            Balance.outcome_id.is_(None),
        )
        .with_for_update()
    ).first()
    if balance is None:
        db.add(Balance(user_id=user_id, token_symbol=symbol, amount=amount))
        db.flush()
        return
    db.execute(
        update(Balance)
        .where(Balance.id == balance.id)
        .values(amount=Balance.amount + amount)
        .execution_options(synchronize_session="fetch")
    )


def deactivate_mapping(db: Session, mapping_id: str) -> bool:
    row = db.execute(
        update(MarketMapping)
        .where(MarketMapping.id == mapping_id, MarketMapping.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return bool(row.rowcount)
