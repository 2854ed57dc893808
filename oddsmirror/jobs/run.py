import asyncio

from sqlalchemy.orm import Session

from ..db import SessionLocal
from ..ingestion.messages import Tick
from ..ingestion.session import IngestionSession
from ..polymarket.client import PolymarketClient
from .backfill import process_backfill_job
from .backfill_queue import BackfillJob
from .history_sync import run_history_sync
from .reconcile import close_expired, reconcile_hedges
from .resolution import run_resolution_sync


def refresh_mappings_sync(session: IngestionSession) -> bool:
    db: Session = SessionLocal()
    try:
        return session.refresh(db)
    finally:
        db.close()


def apply_tick_sync(session: IngestionSession, tick: Tick):
    db: Session = SessionLocal()
    try:
        return session.handle_tick(db, tick)
    finally:
        db.close()


def close_expired_sync() -> int:
    db: Session = SessionLocal()
    try:
        return close_expired(db)
    finally:
        db.close()


def hedge_reconcile_sync():
    db: Session = SessionLocal()
    try:
        return reconcile_hedges(db)
    finally:
        db.close()


def resolution_sync_wrapper():
    db: Session = SessionLocal()
    try:
        return asyncio.run(run_resolution_sync(db, PolymarketClient()))
    finally:
        db.close()


def history_sync_wrapper():
    db: Session = SessionLocal()
    try:
        return asyncio.run(run_history_sync(db, PolymarketClient()))
    finally:
        db.close()


def backfill_job_sync(job: BackfillJob):
    db: Session = SessionLocal()
    try:
        return asyncio.run(process_backfill_job(db, PolymarketClient(), job))
    finally:
        db.close()
