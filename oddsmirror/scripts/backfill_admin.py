import argparse
import json

from sqlalchemy import select

from oddsmirror.core.logging_config import configure_logging
from oddsmirror.db import SessionLocal
from oddsmirror.integrations.redis_client import redis_conn
from oddsmirror.jobs.backfill_queue import BackfillQueue, jobs_for_mapping
from oddsmirror.models import MarketMapping, Outcome


def show_stats(args: argparse.Namespace) -> None:
    print(json.dumps(BackfillQueue(redis_conn).stats()))


def enqueue_event(args: argparse.Namespace) -> None:
    queue = BackfillQueue(redis_conn)
    db = SessionLocal()
    try:
        mapping = db.scalars(
            select(MarketMapping).where(MarketMapping.internal_event_id == args.event_id)
        ).first()
        if mapping is None:
            raise SystemExit(f"No mapping for event: {args.event_id}")
        outcomes = db.scalars(select(Outcome).where(Outcome.event_id == args.event_id)).all()
        jobs = jobs_for_mapping(mapping, outcomes)
        if not jobs:
            raise SystemExit(f"No outcomes with venue tokens on event: {args.event_id}")
        for job in jobs:
            queue.enqueue(job)
            print(job.id)
    finally:
        db.close()


def requeue_dead(args: argparse.Namespace) -> None:
    moved = BackfillQueue(redis_conn).requeue_dead_letter(limit=args.limit)
    print(f"requeued {moved}")


def recover(args: argparse.Namespace) -> None:
    recovered = BackfillQueue(redis_conn).recover_stuck()
    print(f"recovered {recovered}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and manage the odds history backfill queue")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stats = subparsers.add_parser("stats", help="Print pending/processing/dead-letter counts")
    stats.set_defaults(func=show_stats)

    enqueue = subparsers.add_parser("enqueue", help="Queue history backfill for every outcome of an event")
    enqueue.add_argument("--event-id", dest="event_id", required=True)
    enqueue.set_defaults(func=enqueue_event)

    dead = subparsers.add_parser("requeue-dead", help="Move dead-lettered jobs back to pending")
    dead.add_argument("--limit", type=int)
    dead.set_defaults(func=requeue_dead)

    rec = subparsers.add_parser("recover", help="Move jobs stuck in processing back to pending")
    rec.set_defaults(func=recover)

    return parser


def main() -> None:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
