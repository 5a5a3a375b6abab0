from __future__ import annotations

import json
import logging
from typing import Any

import pytest

from tasksync.observability import (
    ConsoleLogFormatter,
    Metrics,
    get_json_logger,
    get_metrics,
    get_session_context,
    set_session_context,
    use_session_context,
)
from tasksync.sync.connectivity import ConnectivityMonitor
from tasksync.sync.engine import SyncEngine
from tests.helpers.fakes import InMemoryCacheStore, InMemoryRemoteStore


def _parse_json_lines(output: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in output.strip().splitlines() if line.strip()]


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def test_json_logger_redacts_and_formats(capsys: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_FORMAT", "json")
    logger = get_json_logger("obs-test-redact")
    logger.info(
        "hello",
        extra={
            "event": "greeting",
            "task_id": "t-1",
            "metadata": {"apikey": "secret-value", "nested": {"token": "XYZ"}, "safe": "ok"},
        },
    )

    (rec,) = _parse_json_lines(capsys.readouterr().out)
    assert rec["msg"] == "hello"
    assert rec["level"] == "info"
    assert rec["logger"] == "obs-test-redact"
    assert rec["event"] == "greeting"
    assert rec["task_id"] == "t-1"
    assert rec["metadata"]["apikey"] == "[REDACTED]"
    assert rec["metadata"]["nested"]["token"] == "[REDACTED]"
    assert rec["metadata"]["safe"] == "ok"


def test_session_context_is_merged_into_records(
    capsys: Any, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("LOG_FORMAT", "json")
    logger = get_json_logger("obs-test-context")

    with use_session_context("sess-1", "user-9"):
        logger.info("inside")
        assert get_session_context() == {"session_id": "sess-1", "owner": "user-9"}
    logger.info("outside")

    inside, outside = _parse_json_lines(capsys.readouterr().out)
    assert inside["session_id"] == "sess-1" and inside["owner"] == "user-9"
    assert "session_id" not in outside


def test_exceptions_carry_type_and_stack(capsys: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_FORMAT", "json")
    logger = get_json_logger("obs-test-exc")
    try:
        raise ValueError("bad value")
    except ValueError:
        logger.exception("failed")

    (rec,) = _parse_json_lines(capsys.readouterr().out)
    assert rec["level"] == "error"
    assert rec["err_type"] == "ValueError"
    assert rec["err"] == "bad value"
    assert "Traceback" in rec["stack"]


def test_module_level_overrides(capsys: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_FORMAT", "json")
    monkeypatch.setenv("LOG_MODULE_LEVELS", "obs-quiet=ERROR")
    quiet = get_json_logger("obs-quiet.child")
    loud = get_json_logger("obs-loud")

    quiet.warning("dropped")
    loud.warning("kept")

    lines = _parse_json_lines(capsys.readouterr().out)
    assert [r["msg"] for r in lines] == ["kept"]


def test_console_formatter_is_single_line() -> None:
    set_session_context("abcdef123456")
    record = logging.LogRecord("tasksync.sync", logging.WARNING, __file__, 1, "push", None, None)
    record.event = "remote_push_failed"
    record.task_id = "temp-0123456789abcdef"
    record.error = "timeout"

    line = ConsoleLogFormatter().format(record)

    assert "\n" not in line
    assert "WARNING tasksync.sync remote_push_failed" in line
    assert "task=temp-01234567" in line
    assert "session=abcdef12" in line
    assert line.endswith("push (timeout)")


def test_metrics_counters_increment_and_snapshot() -> None:
    metrics = Metrics()
    metrics.increment("remote_push_failed", {"op": "insert"}, 2)
    metrics.increment("remote_push_failed", {"op": "insert"})
    metrics.increment("remote_push_failed", {"op": "update"})

    assert metrics.value("remote_push_failed", {"op": "insert"}) == 3
    snap = metrics.snapshot()
    entry = next(e for e in snap if e["labels"] == {"op": "update"})
    assert entry == {"name": "remote_push_failed", "labels": {"op": "update"}, "value": 1}


@pytest.mark.asyncio
async def test_engine_logs_remote_failures_with_structured_fields() -> None:
    logger = get_json_logger("tasksync.sync")
    handler = _ListHandler()
    logger.addHandler(handler)
    try:
        remote = InMemoryRemoteStore()
        row = remote.seed(user_id="u")
        engine = SyncEngine(
            remote=remote,
            cache=InMemoryCacheStore(),
            connectivity=ConnectivityMonitor(),
            owner="u",
        )
        await engine.fetch_remote()
        remote.fail_updates = 1

        engine.toggle_complete(row["id"])
        await engine.drain()
    finally:
        logger.removeHandler(handler)

    failures = [r for r in handler.records if getattr(r, "event", None) == "remote_push_failed"]
    assert len(failures) == 1
    assert failures[0].task_id == row["id"]  # type: ignore[attr-defined]
    assert failures[0].metadata == {"op": "update"}  # type: ignore[attr-defined]
    assert get_metrics().value("remote_push_failed", {"op": "update"}) == 1
