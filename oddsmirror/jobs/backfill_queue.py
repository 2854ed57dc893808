import json
import logging
import time
from dataclasses import asdict, dataclass, field

from ..settings import settings

logger = logging.getLogger(__name__)

PENDING_KEY = "backfill:jobs"
PROCESSING_KEY = "backfill:processing"
DEAD_LETTER_KEY = "backfill:dead-letter"
ATTEMPTS_KEY = "backfill:attempts"

RETRIED = "retried"
DEAD_LETTERED = "dead_lettered"


@dataclass
class BackfillJob:
    id: str
    event_id: str
    outcome_id: str
    token_id: str
    market_id: str | None = None
    start_date: str | None = None
    queued_at: int = 0
    attempts: int = field(default=0, compare=False)
    raw: str | None = field(default=None, compare=False, repr=False)

    @classmethod
    def new(
        cls,
        event_id: str,
        outcome_id: str,
        token_id: str,
        market_id: str | None = None,
        start_date: str | None = None,
    ) -> "BackfillJob":
        now_ms = int(time.time() * 1000)
        return cls(
            id=f"{event_id}-{outcome_id}-{now_ms}",
            event_id=event_id,
            outcome_id=outcome_id,
            token_id=token_id,
            market_id=market_id,
            start_date=start_date,
            queued_at=now_ms,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("attempts")
        data.pop("raw")
        return data

    def payload(self) -> str:
        """List entry for this job; stable so LREM can find it again."""
        return self.raw or json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_payload(cls, raw) -> "BackfillJob":
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode()
        data = json.loads(raw)
        return cls(
            id=str(data["id"]),
            event_id=str(data["event_id"]),
            outcome_id=str(data["outcome_id"]),
            token_id=str(data["token_id"]),
            market_id=data.get("market_id"),
            start_date=data.get("start_date"),
            queued_at=int(data.get("queued_at") or 0),
            raw=raw,
        )


class BackfillQueue:
    """
    Pending, processing and dead-letter Redis lists.

    A job moves between lists only via LMOVE or a MULTI pipeline, so it is in
    exactly one list at any time. Attempt counts live in a hash keyed by job id
    so the list payload never changes while a job is in flight.
    """

    def __init__(self, redis_conn, max_attempts: int | None = None) -> None:
        self.redis = redis_conn
        self.max_attempts = max_attempts or settings.BACKFILL_MAX_ATTEMPTS

    def enqueue(self, job: BackfillJob) -> str:
        payload = job.payload()
        pipe = self.redis.pipeline(transaction=True)
        pipe.hdel(ATTEMPTS_KEY, job.id)
        pipe.lpush(PENDING_KEY, payload)
        pipe.execute()
        logger.info("backfill_job_enqueued job_id=%s event_id=%s token_id=%s", job.id, job.event_id, job.token_id)
        return job.id

    def next(self) -> BackfillJob | None:
        raw = self.redis.lmove(PENDING_KEY, PROCESSING_KEY, "RIGHT", "LEFT")
        if raw is None:
            return None
        try:
            job = BackfillJob.from_payload(raw)
        except (ValueError, KeyError, TypeError):
            self._dead_letter_malformed(raw)
            return None
        job.attempts = int(self.redis.hincrby(ATTEMPTS_KEY, job.id, 1))
        return job

    def complete(self, job: BackfillJob) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(PROCESSING_KEY, 1, job.payload())
        pipe.hdel(ATTEMPTS_KEY, job.id)
        pipe.execute()
        logger.info("backfill_job_completed job_id=%s attempts=%s", job.id, job.attempts)

    def fail(self, job: BackfillJob, error: BaseException | str) -> str:
        reason = str(error) or error.__class__.__name__
        payload = job.payload()
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(PROCESSING_KEY, 1, payload)
        if job.attempts < self.max_attempts:
            pipe.lpush(PENDING_KEY, payload)
            pipe.execute()
            logger.warning(
                "backfill_job_retry job_id=%s attempt=%s max_attempts=%s error=%s",
                job.id,
                job.attempts,
                self.max_attempts,
                reason,
            )
            return RETRIED

        record = dict(job.to_dict(), attempts=job.attempts, error=reason, failed_at=int(time.time() * 1000))
        pipe.lpush(DEAD_LETTER_KEY, json.dumps(record, sort_keys=True))
        pipe.hdel(ATTEMPTS_KEY, job.id)
        pipe.execute()
        logger.error("backfill_job_dead_lettered job_id=%s attempts=%s error=%s", job.id, job.attempts, reason)
        return DEAD_LETTERED

    def recover_stuck(self) -> int:
        """Jobs left in processing by a dead worker go to the head of pending, oldest first."""
        recovered = 0
        while self.redis.lmove(PROCESSING_KEY, PENDING_KEY, "LEFT", "RIGHT") is not None:
            recovered += 1
        if recovered:
            logger.warning("backfill_jobs_recovered count=%s", recovered)
        return recovered

    def requeue_dead_letter(self, limit: int | None = None) -> int:
        """Manual retry: dead-letter entries go back to pending with a fresh budget."""
        moved = 0
        while limit is None or moved < limit:
            raw = self.redis.lmove(DEAD_LETTER_KEY, PENDING_KEY, "RIGHT", "LEFT")
            if raw is None:
                break
            try:
                job = BackfillJob.from_payload(raw)
            except (ValueError, KeyError, TypeError):
                logger.warning("backfill_dead_letter_unreadable payload=%r", raw)
                continue
            job.raw = None
            pipe = self.redis.pipeline(transaction=True)
            pipe.lrem(PENDING_KEY, 1, raw)
            pipe.lpush(PENDING_KEY, job.payload())
            pipe.hdel(ATTEMPTS_KEY, job.id)
            pipe.execute()
            moved += 1
        if moved:
            logger.info("backfill_dead_letter_requeued count=%s", moved)
        return moved

    def stats(self) -> dict[str, int]:
        return {
            "pending": int(self.redis.llen(PENDING_KEY)),
            "processing": int(self.redis.llen(PROCESSING_KEY)),
            "dead_letter": int(self.redis.llen(DEAD_LETTER_KEY)),
        }

    def _dead_letter_malformed(self, raw) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(PROCESSING_KEY, 1, raw)
        pipe.lpush(
            DEAD_LETTER_KEY,
            json.dumps({"payload": _as_text(raw), "error": "malformed payload", "failed_at": int(time.time() * 1000)}),
        )
        pipe.execute()
        logger.error("backfill_job_malformed payload=%r", raw)


def _as_text(raw) -> str:
    return raw.decode(errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)


def jobs_for_mapping(mapping, outcomes) -> list[BackfillJob]:
    """One job per outcome of a newly mapped event that has a venue token."""
    start_date = mapping.external_start_date.isoformat() if mapping.external_start_date else None
    yes_no = {"YES": mapping.yes_token_id, "NO": mapping.no_token_id}
    jobs = []
    for outcome in outcomes:
        token_id = outcome.external_token_id or yes_no.get((outcome.name or "").upper())
        if not token_id:
            continue
        jobs.append(
            BackfillJob.new(
                event_id=mapping.internal_event_id,
                outcome_id=outcome.id,
                token_id=token_id,
                market_id=mapping.external_market_id,
                start_date=start_date,
            )
        )
    return jobs
