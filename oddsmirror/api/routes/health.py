import json
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ...db import get_db
from ...integrations.redis_client import redis_conn
from ...jobs.backfill_queue import BackfillQueue
from ...jobs.worker import HEARTBEAT_KEY
from ...models import EVENT_STATUS_CLOSED, Event, MarketMapping

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/status")
def status(db: Session = Depends(get_db)):
    heartbeat = None
    backfill = None
    try:
        raw = redis_conn.get(HEARTBEAT_KEY)
        heartbeat = json.loads(raw) if raw else None
        backfill = BackfillQueue(redis_conn).stats()
    except Exception:
        logger.warning("status_redis_unavailable", exc_info=True)

    active_mappings = db.scalar(
        select(func.count()).select_from(MarketMapping).where(MarketMapping.is_active.is_(True))
    )
    closed_unresolved = db.scalar(
        select(func.count()).select_from(Event).where(Event.status == EVENT_STATUS_CLOSED)
    )
    return {
        "worker_alive": heartbeat is not None,
        "heartbeat": heartbeat,
        "backfill": backfill,
        "active_mappings": active_mappings or 0,
        "closed_unresolved_events": closed_unresolved or 0,
    }
