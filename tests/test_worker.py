import asyncio
import json

from oddsmirror.capabilities import Capabilities
from oddsmirror.ingestion.client import StreamingClient
from oddsmirror.ingestion.connection import BackoffPolicy
from oddsmirror.ingestion.session import IngestionSession
from oddsmirror.jobs import worker
from oddsmirror.jobs.backfill_queue import BackfillJob, BackfillQueue


class _DownRedis:
    def set(self, *args, **kwargs):
        raise ConnectionError("redis down")


def _caps(dry_run=False):
    return Capabilities(dry_run=dry_run, broadcast=True, backfill=True, hedge_reconcile=True, history_sync=True)


def test_heartbeat_payload_and_write(fake_redis):
    session = IngestionSession()
    session.record_message()
    client = StreamingClient(session, asyncio.Queue(), policy=BackoffPolicy())
    queue = BackfillQueue(fake_redis)

    payload = worker.build_heartbeat(session, client, _caps(), queue)

    assert payload["connection"] == "disconnected"
    assert payload["stats"]["messages"] == 1
    assert payload["backfill"]["pending"] == 0
    assert worker.write_heartbeat(fake_redis, payload) is True
    assert json.loads(fake_redis.get(worker.HEARTBEAT_KEY))["pid"] == payload["pid"]
    assert fake_redis.expiry[worker.HEARTBEAT_KEY] == 90
    assert session.stats_snapshot()["messages"] == 0


def test_heartbeat_write_failure_is_not_fatal():
    assert worker.write_heartbeat(_DownRedis(), {"ts": 1}) is False


def test_run_periodic_survives_failures():
    calls = []

    async def _run():
        stop = asyncio.Event()

        async def task():
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError("first run fails")
            if len(calls) == 3:
                stop.set()

        await worker.run_periodic("test", 0.001, task, stop, initial_delay=0)

    asyncio.run(asyncio.wait_for(_run(), timeout=5))
    assert calls == [0, 1, 2]


def test_backfill_loop_completes_and_retries(fake_redis, monkeypatch):
    queue = BackfillQueue(fake_redis, max_attempts=3)
    queue.enqueue(BackfillJob.new("ev1", "ok", "tok-ok"))
    queue.enqueue(BackfillJob.new("ev1", "bad", "tok-bad"))
    processed = []

    def fake_process(job):
        processed.append(job.outcome_id)
        if job.outcome_id == "bad":
            raise RuntimeError("venue 503")

    monkeypatch.setattr(worker, "backfill_job_sync", fake_process)
    monkeypatch.setattr(worker.settings, "BACKFILL_BUSY_DELAY_SECONDS", 0.001)
    monkeypatch.setattr(worker.settings, "BACKFILL_IDLE_DELAY_SECONDS", 0.001)

    async def _run():
        stop = asyncio.Event()
        task = asyncio.create_task(worker.run_backfill_loop(queue, stop))
        while queue.stats()["dead_letter"] == 0:
            await asyncio.sleep(0.01)
        stop.set()
        await task

    asyncio.run(asyncio.wait_for(_run(), timeout=5))
    assert processed == ["ok", "bad", "bad", "bad"]
    assert queue.stats() == {"pending": 0, "processing": 0, "dead_letter": 1}
