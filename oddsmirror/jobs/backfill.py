import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.lmsr import clamp01
from ..core.market_state import bucket_start
from ..db_utils import dialect_insert
from ..models import SOURCE_POLYMARKET, OddsHistory, Outcome
from ..polymarket.client import PolymarketClient, parse_ts
from ..settings import settings
from .backfill_queue import BackfillJob

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 500


@dataclass
class BackfillResult:
    job_id: str
    fetched: int = 0
    kept: int = 0
    inserted: int = 0
    latest_probability: float | None = None


def normalize_probability(raw) -> float:
    """Fractions pass through clamped; values in (1, 100] are read as percentages."""
    try:
        n = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(n):
        return 0.0
    if 1 < n <= 100:
        return clamp01(n / 100)
    return clamp01(n)


def backfill_window(job: BackfillJob, now: datetime) -> tuple[datetime, datetime]:
    start = now - timedelta(days=settings.BACKFILL_DEFAULT_LOOKBACK_DAYS)
    venue_start = parse_ts(job.start_date) if job.start_date else None
    if venue_start is not None and venue_start > start:
        start = venue_start
    return start, now


def bucket_points(points, start: datetime, end: datetime) -> dict[datetime, tuple[float, float]]:
    """Last point per bucket wins; points outside [start, end] are dropped."""
    buckets: dict[datetime, tuple[float, float]] = {}
    for point in sorted(points, key=lambda p: p.ts):
        if point.ts < start or point.ts > end:
            continue
        buckets[bucket_start(point.ts)] = (point.price, normalize_probability(point.price))
    return buckets


async def process_backfill_job(
    db: Session,
    client: PolymarketClient,
    job: BackfillJob,
    now: datetime | None = None,
) -> BackfillResult:
    now = now or datetime.now(timezone.utc)
    start, end = backfill_window(job, now)
    result = BackfillResult(job_id=job.id)

    points = await client.fetch_price_history(job.token_id, fidelity_minutes=settings.BACKFILL_FIDELITY_MINUTES)
    result.fetched = len(points)
    buckets = bucket_points(points, start, end)
    result.kept = len(buckets)
    if not buckets:
        logger.info("backfill_no_points job_id=%s token_id=%s fetched=%s", job.id, job.token_id, result.fetched)
        return result

    rows = [
        {
            "event_id": job.event_id,
            "outcome_id": job.outcome_id,
            "external_token_id": job.token_id,
            "timestamp": bucket,
            "price": price,
            "probability": probability,
            "source": SOURCE_POLYMARKET,
        }
        for bucket, (price, probability) in sorted(buckets.items())
    ]
    for offset in range(0, len(rows), INSERT_BATCH_SIZE):
        batch = rows[offset : offset + INSERT_BATCH_SIZE]
        stmt = dialect_insert(db, OddsHistory).values(batch)
        stmt = stmt.on_conflict_do_nothing(index_elements=["event_id", "outcome_id", "timestamp"])
        inserted = db.execute(stmt).rowcount
        result.inserted += max(inserted or 0, 0)

    result.latest_probability = rows[-1]["probability"]
    db.execute(
        update(Outcome)
        .where(Outcome.id == job.outcome_id)
        .values(probability=result.latest_probability)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info(
        "backfill_job_processed job_id=%s event_id=%s fetched=%s kept=%s inserted=%s latest=%.4f",
        job.id,
        job.event_id,
        result.fetched,
        result.kept,
        result.inserted,
        result.latest_probability,
    )
    return result
