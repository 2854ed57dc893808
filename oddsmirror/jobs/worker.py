import asyncio
import json
import logging
import os
import signal
import sys
import time

from ..capabilities import Capabilities, resolve_capabilities
from ..core.broadcast import Broadcaster
from ..core.logging_config import configure_logging
from ..db import engine
from ..ingestion.client import StreamingClient
from ..ingestion.connection import StreamExhaustedError
from ..ingestion.session import IngestionSession
from ..integrations.redis_client import redis_conn
from ..settings import settings
from .backfill_queue import BackfillQueue
from .run import (
    apply_tick_sync,
    backfill_job_sync,
    close_expired_sync,
    hedge_reconcile_sync,
    history_sync_wrapper,
    refresh_mappings_sync,
    resolution_sync_wrapper,
)

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "worker:heartbeat"

EXIT_OK = 0
EXIT_STREAM_EXHAUSTED = 2
EXIT_CRASHED = 1


async def _sleep_or_stop(stop: asyncio.Event, seconds: float) -> bool:
    """True once `stop` is set; otherwise returns after `seconds`."""
    if seconds <= 0:
        return stop.is_set()
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


async def run_periodic(name: str, interval: float, fn, stop: asyncio.Event, initial_delay: float) -> None:
    if await _sleep_or_stop(stop, initial_delay):
        return
    while not stop.is_set():
        started = time.monotonic()
        try:
            await fn()
            logger.debug("periodic_task_done task=%s elapsed=%.2f", name, time.monotonic() - started)
        except Exception:
            logger.exception("periodic_task_failed task=%s", name)
        if await _sleep_or_stop(stop, interval):
            return


async def consume_ticks(session: IngestionSession, ticks: asyncio.Queue) -> None:
    while True:
        tick = await ticks.get()
        try:
            await asyncio.to_thread(apply_tick_sync, session, tick)
        except Exception:
            logger.exception("tick_consumer_failed token_id=%s", tick.token_id)
        finally:
            ticks.task_done()


async def run_backfill_loop(queue: BackfillQueue, stop: asyncio.Event) -> None:
    """Serial consumer; a short pause after each job, a long one when idle."""
    while not stop.is_set():
        job = None
        try:
            job = await asyncio.to_thread(queue.next)
            if job is not None:
                try:
                    await asyncio.to_thread(backfill_job_sync, job)
                except Exception as exc:
                    logger.warning("backfill_job_failed job_id=%s attempt=%s error=%s", job.id, job.attempts, exc)
                    await asyncio.to_thread(queue.fail, job, exc)
                else:
                    await asyncio.to_thread(queue.complete, job)
        except Exception:
            logger.exception("backfill_loop_error")
            job = None
        delay = settings.BACKFILL_BUSY_DELAY_SECONDS if job else settings.BACKFILL_IDLE_DELAY_SECONDS
        if await _sleep_or_stop(stop, delay):
            return


def build_heartbeat(
    session: IngestionSession,
    client: StreamingClient,
    capabilities: Capabilities,
    queue: BackfillQueue | None,
) -> dict:
    payload = {
        "ts": int(time.time()),
        "pid": os.getpid(),
        "connection": client.state.status.value,
        "reconnect_attempts": client.state.attempts,
        "subscribed_tokens": len(client.state.subscribed_tokens),
        "mapped_tokens": len(session.token_ids),
        "tick_queue": client.ticks.qsize(),
        "dry_run": capabilities.dry_run,
        "stats": session.stats_snapshot(reset=True),
    }
    if queue is not None:
        payload["backfill"] = queue.stats()
    return payload


def write_heartbeat(redis_client, payload: dict) -> bool:
    """Best effort; a Redis outage only costs the liveness signal."""
    try:
        redis_client.set(HEARTBEAT_KEY, json.dumps(payload), ex=settings.HEARTBEAT_TTL_SECONDS)
        return True
    except Exception:
        logger.warning("heartbeat_write_failed", exc_info=True)
        return False


async def run_worker(capabilities: Capabilities | None = None, redis_client=None) -> int:
    capabilities = capabilities or resolve_capabilities()
    redis_client = redis_client or redis_conn
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    logger.info(
        "worker_starting dry_run=%s enabled=%s",
        capabilities.dry_run,
        ",".join(capabilities.enabled()) or "none",
    )

    broadcaster = Broadcaster(redis_client, enabled=capabilities.broadcast)
    session = IngestionSession(broadcaster=broadcaster, dry_run=capabilities.dry_run)
    await asyncio.to_thread(refresh_mappings_sync, session)
    if not session.token_ids:
        logger.info("worker_no_tokens waiting_for_mappings=true")

    ticks: asyncio.Queue = asyncio.Queue(maxsize=settings.TICK_QUEUE_MAX_SIZE)
    client = StreamingClient(session, ticks)
    queue = BackfillQueue(redis_client) if capabilities.backfill else None

    async def refresh_mappings():
        if await asyncio.to_thread(refresh_mappings_sync, session):
            await client.resubscribe()

    async def heartbeat():
        payload = await asyncio.to_thread(build_heartbeat, session, client, capabilities, queue)
        await asyncio.to_thread(write_heartbeat, redis_client, payload)
        logger.info(
            "worker_heartbeat connection=%s tokens=%s messages=%s updates=%s errors=%s rejected=%s",
            payload["connection"],
            payload["subscribed_tokens"],
            payload["stats"]["messages"],
            payload["stats"]["updates"],
            payload["stats"]["errors"],
            payload["stats"]["rejected"],
        )

    background = [
        asyncio.create_task(consume_ticks(session, ticks), name="ticks"),
        asyncio.create_task(
            run_periodic(
                "mapping_refresh",
                settings.MAPPING_REFRESH_SECONDS,
                refresh_mappings,
                stop,
                settings.MAPPING_REFRESH_SECONDS,
            ),
            name="mapping_refresh",
        ),
        asyncio.create_task(
            run_periodic("heartbeat", settings.HEARTBEAT_INTERVAL_SECONDS, heartbeat, stop, 0),
            name="heartbeat",
        ),
    ]
    if capabilities.mutates:
        background.append(
            asyncio.create_task(
                run_periodic(
                    "reconcile",
                    settings.RECONCILE_INTERVAL_SECONDS,
                    lambda: asyncio.to_thread(close_expired_sync),
                    stop,
                    30,
                ),
                name="reconcile",
            )
        )
        background.append(
            asyncio.create_task(
                run_periodic(
                    "resolution",
                    settings.RESOLUTION_INTERVAL_SECONDS,
                    lambda: asyncio.to_thread(resolution_sync_wrapper),
                    stop,
                    60,
                ),
                name="resolution",
            )
        )
    if capabilities.hedge_reconcile:
        background.append(
            asyncio.create_task(
                run_periodic(
                    "hedge_reconcile",
                    settings.HEDGE_RECONCILE_INTERVAL_SECONDS,
                    lambda: asyncio.to_thread(hedge_reconcile_sync),
                    stop,
                    45,
                ),
                name="hedge_reconcile",
            )
        )
    if capabilities.history_sync:
        background.append(
            asyncio.create_task(
                run_periodic(
                    "history_sync",
                    settings.HISTORY_SYNC_INTERVAL_SECONDS,
                    lambda: asyncio.to_thread(history_sync_wrapper),
                    stop,
                    settings.HISTORY_SYNC_INTERVAL_SECONDS,
                ),
                name="history_sync",
            )
        )
    if queue is not None:
        try:
            await asyncio.to_thread(queue.recover_stuck)
        except Exception:
            logger.exception("backfill_recovery_failed")
        background.append(asyncio.create_task(run_backfill_loop(queue, stop), name="backfill"))

    stream_task = asyncio.create_task(client.run(stop), name="stream")
    stop_task = asyncio.create_task(stop.wait(), name="stop")
    await asyncio.wait({stream_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    exit_code = EXIT_OK
    if stream_task.done() and not stream_task.cancelled():
        error = stream_task.exception()
        if isinstance(error, StreamExhaustedError):
            logger.error("worker_stream_exhausted error=%s", error)
            exit_code = EXIT_STREAM_EXHAUSTED
        elif error is not None:
            logger.error("worker_stream_crashed", exc_info=error)
            exit_code = EXIT_CRASHED

    logger.info("worker_stopping exit_code=%s", exit_code)
    stop.set()
    try:
        await client.close()
    except Exception:
        logger.warning("stream_close_failed", exc_info=True)
    for task in (*background, stream_task, stop_task):
        task.cancel()
    await asyncio.gather(*background, stream_task, stop_task, return_exceptions=True)
    return exit_code


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(run_worker())
    finally:
        try:
            redis_conn.close()
        except Exception:
            logger.warning("redis_close_failed", exc_info=True)
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
