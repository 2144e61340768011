import json
import logging

import pytest

from pricehub.core.logging import JsonFormatter, _redact, set_correlation_id, set_job_name
from pricehub.core.observability import log_step


def _record(msg="hello", extra=None, level=logging.INFO):
    record = logging.LogRecord("pricehub.test", level, __file__, 1, msg, None, None)
    if extra is not None:
        record.extra = extra
    return record


def test_json_formatter_merges_extra_and_context():
    set_job_name("process_rule_runs_job")
    set_correlation_id("run-1")
    try:
        payload = json.loads(JsonFormatter().format(_record(extra={"run_id": "run-1", "applied": 2})))
    finally:
        set_job_name(None)
        set_correlation_id(None)

    assert payload["message"] == "hello"
    assert payload["level"] == "INFO"
    assert payload["job_name"] == "process_rule_runs_job"
    assert payload["correlation_id"] == "run-1"
    assert payload["run_id"] == "run-1"
    assert payload["applied"] == 2


def test_json_formatter_redacts_secrets():
    payload = json.loads(JsonFormatter().format(_record(extra={"headers": {"Authorization": "Bearer x"},
                                                              "token": "abc"})))
    assert payload["headers"]["Authorization"] == "***"
    assert payload["token"] == "***"


def test_redact_truncates_long_strings():
    redacted = _redact({"body": "x" * 5000, "items": [{"password": "p"}]})
    assert redacted["body"].startswith("x" * 100)
    assert "chars)" in redacted["body"]
    assert redacted["items"] == [{"password": "***"}]


@pytest.mark.asyncio
async def test_log_step_logs_exit(caplog):
    caplog.set_level(logging.DEBUG, logger="steps")

    @log_step("demo.step")
    async def step(value):
        return value * 2

    assert await step(value=21) == 42
    exits = [r for r in caplog.records if r.message == "EXIT demo.step"]
    assert len(exits) == 1
    assert exits[0].extra["result_preview"] == "42"
    assert "elapsed_ms" in exits[0].extra


@pytest.mark.asyncio
async def test_log_step_logs_and_reraises_errors(caplog):
    @log_step("demo.broken")
    async def broken():
        raise RuntimeError("kaput")

    with pytest.raises(RuntimeError):
        await broken()
    errors = [r for r in caplog.records if r.levelno == logging.ERROR and "demo.broken" in r.message]
    assert len(errors) == 1
    assert errors[0].exc_info is not None
