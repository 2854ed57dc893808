import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..db_utils import dialect_insert
from ..models import SOURCE_POLYMARKET, Event, OddsHistory, Outcome
from ..settings import settings
from .broadcast import Broadcaster
from .lmsr import binary_quantities, clamp01
from .mappings import MappedMarket
from .spike_filter import SpikeFilter

logger = logging.getLogger(__name__)

APPLIED = "applied"
UNMATCHED = "unmatched"
REJECTED = "rejected"


@dataclass
class ApplyResult:
    status: str
    outcome_id: str | None = None
    probability: float | None = None
    q_yes: float | None = None
    q_no: float | None = None
    broadcast: bool = False

    @property
    def applied(self) -> bool:
        return self.status == APPLIED


def bucket_start(ts: datetime, bucket_seconds: int | None = None) -> datetime:
    seconds = bucket_seconds or settings.ODDS_HISTORY_BUCKET_SECONDS
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    epoch = int(ts.timestamp())
    return datetime.fromtimestamp(epoch - (epoch % seconds), tz=timezone.utc)


def upsert_history_point(
    db: Session,
    event_id: str,
    outcome_id: str,
    token_id: str | None,
    bucket: datetime,
    price: float,
    probability: float,
) -> None:
    """Last write wins within a bucket."""
    stmt = dialect_insert(db, OddsHistory).values(
        event_id=event_id,
        outcome_id=outcome_id,
        external_token_id=token_id,
        timestamp=bucket,
        price=price,
        probability=probability,
        source=SOURCE_POLYMARKET,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["event_id", "outcome_id", "timestamp"],
        set_={"price": stmt.excluded.price, "probability": stmt.excluded.probability},
    )
    db.execute(stmt)


class MarketStateUpdater:
    def __init__(
        self,
        spike_filter: SpikeFilter,
        broadcaster: Broadcaster | None = None,
        last_price: Callable[[str], float | None] | None = None,
    ) -> None:
        self.spike_filter = spike_filter
        self.broadcaster = broadcaster
        self._last_price = last_price or (lambda _token_id: None)

    def apply(
        self,
        db: Session,
        event_id: str,
        token_id: str,
        price: float,
        mapping: MappedMarket,
        now: datetime | None = None,
    ) -> ApplyResult:
        outcome = self._resolve_outcome(db, event_id, token_id, mapping)
        if outcome is None:
            logger.warning("market_state_unmatched_token event_id=%s token_id=%s", event_id, token_id)
            return ApplyResult(status=UNMATCHED)

        probability = clamp01(price)
        if not self.spike_filter.evaluate(token_id, probability, outcome.probability):
            return ApplyResult(status=REJECTED, outcome_id=outcome.id)

        now = now or datetime.now(timezone.utc)
        result = ApplyResult(status=APPLIED, outcome_id=outcome.id, probability=probability)

        db.execute(update(Outcome).where(Outcome.id == outcome.id).values(probability=probability))

        yes_price = no_price = None
        if mapping.is_binary:
            yes_price, no_price = self._binary_prices(token_id, probability, mapping)
            result.q_yes, result.q_no = binary_quantities(yes_price, no_price, mapping.liquidity_parameter)
            db.execute(update(Event).where(Event.id == event_id).values(q_yes=result.q_yes, q_no=result.q_no))

        upsert_history_point(
            db,
            event_id=event_id,
            outcome_id=outcome.id,
            token_id=token_id,
            bucket=bucket_start(now),
            price=price,
            probability=probability,
        )
        db.commit()

        if self.broadcaster is not None:
            result.broadcast = self.broadcaster.publish_update(
                self._tick_payload(event_id, outcome.id, probability, price, now),
                self._event_payload(event_id, token_id, probability, mapping, yes_price, no_price, now),
            )
        return result

    def _resolve_outcome(self, db: Session, event_id: str, token_id: str, mapping: MappedMarket) -> Outcome | None:
        if mapping.is_binary and token_id in (mapping.yes_token_id, mapping.no_token_id):
            name = "YES" if token_id == mapping.yes_token_id else "NO"
            stmt = select(Outcome).where(Outcome.event_id == event_id, func.upper(Outcome.name) == name)
        else:
            stmt = select(Outcome).where(Outcome.event_id == event_id, Outcome.external_token_id == token_id)
        return db.scalars(stmt.limit(1)).first()

    def _binary_prices(self, token_id: str, probability: float, mapping: MappedMarket) -> tuple[float, float]:
        opposite_token = mapping.opposite_token(token_id)
        opposite = self._last_price(opposite_token) if opposite_token else None
        if opposite is None:
            opposite = 1 - probability
        opposite = clamp01(opposite)
        if token_id == mapping.no_token_id:
            return opposite, probability
        return probability, opposite

    def _tick_payload(self, event_id, outcome_id, probability, price, now: datetime) -> dict:
        return {
            "eventId": event_id,
            "outcomeId": outcome_id,
            "probability": probability,
            "price": price,
            "timestamp": _epoch_ms(now),
        }

    def _event_payload(self, event_id, token_id, probability, mapping, yes_price, no_price, now) -> dict:
        payload = {"eventId": event_id, "timestamp": _epoch_ms(now)}
        if mapping.is_binary:
            payload["yesPrice"] = yes_price
            payload["noPrice"] = no_price
            return payload
        outcomes = []
        for entry in mapping.outcome_tokens:
            if entry.token_id == token_id:
                value = probability
            else:
                value = self._last_price(entry.token_id) or 0.0
            outcomes.append({"id": entry.internal_id, "probability": value})
        payload["outcomes"] = outcomes
        return payload


def _epoch_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)
