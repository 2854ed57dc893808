import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..models import (
    EVENT_STATUS_ACTIVE,
    EVENT_STATUS_CLOSED,
    HEDGE_STATUS_FAILED,
    HEDGE_STATUS_HEDGED,
    HEDGE_STATUS_PENDING,
    SOURCE_POLYMARKET,
    Event,
    HedgePosition,
)
from ..settings import settings

logger = logging.getLogger(__name__)

HEDGED_REASON = "Stuck pending with external order id"
FAILED_REASON = "No external order id after timeout"
FAILURE_REASON = "Reconciled: no external order placed within timeout"


@dataclass
class HedgeReconcileResult:
    examined: int = 0
    hedged: int = 0
    failed: int = 0
    errors: int = 0


def close_expired(db: Session, now: datetime | None = None) -> int:
    """ACTIVE venue-sourced events past their resolution date become CLOSED."""
    now = now or datetime.now(timezone.utc)
    result = db.execute(
        update(Event)
        .where(
            Event.source == SOURCE_POLYMARKET,
            Event.status == EVENT_STATUS_ACTIVE,
            Event.resolution_date.is_not(None),
            Event.resolution_date < now,
        )
        .values(status=EVENT_STATUS_CLOSED, resolution_source=SOURCE_POLYMARKET)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    closed = result.rowcount or 0
    logger.info("reconcile_close_expired closed=%s", closed)
    return closed


def reconcile_hedges(db: Session, now: datetime | None = None) -> HedgeReconcileResult:
    """
    Finalize hedge positions stuck in pending.

    A recorded external order id is taken as proof the hedge went out; no id
    after the timeout means it never did.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=settings.HEDGE_STALE_SECONDS)
    stuck = db.scalars(
        select(HedgePosition)
        .where(HedgePosition.status == HEDGE_STATUS_PENDING, HedgePosition.created_at < cutoff)
        .order_by(HedgePosition.created_at.asc())
        .limit(settings.HEDGE_RECONCILE_BATCH_SIZE)
    ).all()

    result = HedgeReconcileResult(examined=len(stuck))
    reconciled_at = now.isoformat()
    for hedge in stuck:
        try:
            meta = dict(hedge.meta or {})
            meta["reconciled_at"] = reconciled_at
            if hedge.external_order_id:
                meta["reconciled_reason"] = HEDGED_REASON
                status = HEDGE_STATUS_HEDGED
                values = {HedgePosition.status: status, HedgePosition.hedged_at: now}
            else:
                meta["reconciled_reason"] = FAILED_REASON
                status = HEDGE_STATUS_FAILED
                values = {HedgePosition.status: status, HedgePosition.failure_reason: FAILURE_REASON}
            values[HedgePosition.meta] = meta
            # only rows still pending are finalized
            updated = db.execute(
                update(HedgePosition)
                .where(HedgePosition.id == hedge.id, HedgePosition.status == HEDGE_STATUS_PENDING)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            result.errors += 1
            logger.exception("hedge_reconcile_row_failed hedge_id=%s", hedge.id)
            continue
        if not updated.rowcount:
            continue
        if status == HEDGE_STATUS_HEDGED:
            result.hedged += 1
        else:
            result.failed += 1

    logger.info(
        "hedge_reconcile_done examined=%s hedged=%s failed=%s errors=%s",
        result.examined,
        result.hedged,
        result.failed,
        result.errors,
    )
    return result
