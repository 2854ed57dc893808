import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..core.lmsr import clamp01
from ..core.market_state import bucket_start
from ..core.mappings import list_active_mappings
from ..db_utils import dialect_insert
from ..models import (
    EVENT_STATUS_ACTIVE,
    EVENT_TYPE_BINARY,
    SOURCE_POLYMARKET,
    Event,
    OddsHistory,
    Outcome,
)
from ..polymarket.client import PolymarketClient
from ..settings import settings

logger = logging.getLogger(__name__)


@dataclass
class HistorySyncResult:
    events: int = 0
    requested: int = 0
    synced: int = 0
    errors: int = 0


def tokens_to_sync(event: Event, outcomes: list[Outcome], yes_token_id: str | None) -> list[tuple[str, str]]:
    """(token_id, outcome_id) pairs; binary events sync the YES side only."""
    if event.type == EVENT_TYPE_BINARY:
        if not yes_token_id:
            return []
        yes = next((o for o in outcomes if (o.name or "").upper() == "YES"), None)
        return [(yes_token_id, yes.id)] if yes else []
    return [(o.external_token_id, o.id) for o in outcomes if o.external_token_id]


async def run_history_sync(
    db: Session,
    client: PolymarketClient | None = None,
    now: datetime | None = None,
    pacing_seconds: float | None = None,
) -> HistorySyncResult:
    client = client or PolymarketClient()
    now = now or datetime.now(timezone.utc)
    pacing = settings.HISTORY_SYNC_PACING_SECONDS if pacing_seconds is None else pacing_seconds
    bucket = bucket_start(now)
    result = HistorySyncResult()

    for mapping in list_active_mappings(db):
        event = db.get(Event, mapping.internal_event_id)
        if event is None or event.status != EVENT_STATUS_ACTIVE:
            continue
        outcomes = list(db.scalars(select(Outcome).where(Outcome.event_id == event.id)))
        pairs = tokens_to_sync(event, outcomes, mapping.yes_token_id)
        if not pairs:
            continue
        result.events += 1
        rows = []
        for token_id, outcome_id in pairs:
            if pacing > 0:
                await asyncio.sleep(pacing)
            result.requested += 1
            try:
                price = await client.fetch_book_mid(token_id)
            except Exception:
                result.errors += 1
                logger.warning("history_sync_fetch_failed token_id=%s", token_id, exc_info=True)
                continue
            if price is None:
                continue
            probability = clamp01(price)
            rows.append(
                {
                    "event_id": event.id,
                    "outcome_id": outcome_id,
                    "external_token_id": token_id,
                    "timestamp": bucket,
                    "price": price,
                    "probability": probability,
                    "source": SOURCE_POLYMARKET,
                }
            )
            db.execute(
                update(Outcome)
                .where(Outcome.id == outcome_id)
                .values(probability=probability)
                .execution_options(synchronize_session=False)
            )
        if rows:
            stmt = dialect_insert(db, OddsHistory).values(rows)
            db.execute(stmt.on_conflict_do_nothing(index_elements=["event_id", "outcome_id", "timestamp"]))
            result.synced += len(rows)
        db.commit()

    logger.info(
        "history_sync_done events=%s requested=%s synced=%s errors=%s",
        result.events,
        result.requested,
        result.synced,
        result.errors,
    )
    return result
