import json
import logging

from oddsmirror.core.logging_config import JsonFormatter, log_level, split_event


def test_split_event_reads_key_value_pairs():
    event, fields = split_event("backfill_job_retry job_id=ev1-o1-1 attempt=2 error=timeout")
    assert event == "backfill_job_retry"
    assert fields == {"job_id": "ev1-o1-1", "attempt": "2", "error": "timeout"}
    assert split_event("Something happened here") == (None, {})


def test_json_formatter_structures_event_lines():
    record = logging.LogRecord(
        "oddsmirror.jobs.worker", logging.INFO, __file__, 1, "worker_stopping exit_code=%s", (2,), None
    )
    record.component = "stream"

    entry = json.loads(JsonFormatter().format(record))

    assert entry["message"] == "worker_stopping exit_code=2"
    assert entry["event"] == "worker_stopping"
    assert entry["fields"] == {"exit_code": "2"}
    assert entry["extra"] == {"component": "stream"}


def test_log_level_falls_back_to_default():
    assert log_level("debug") == logging.DEBUG
    assert log_level("nonsense", default=logging.WARNING) == logging.WARNING
    assert log_level(None) == logging.INFO
