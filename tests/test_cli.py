from __future__ import annotations

import json
from typing import Any

import pytest

from tasksync import cli
from tasksync.config import SyncConfig
from tasksync.session import Session
from tests.helpers.fakes import InMemoryCacheStore, InMemoryRemoteStore


@pytest.fixture()
def remote(monkeypatch: pytest.MonkeyPatch) -> InMemoryRemoteStore:
    store = InMemoryRemoteStore()
    cache = InMemoryCacheStore()

    def from_config(cls: type[Session], config: SyncConfig, **kwargs: Any) -> Session:
        kwargs.pop("probe_interval", None)
        return cls(remote=store, cache=cache, owner=config.user_id, **kwargs)

    monkeypatch.setattr(Session, "from_config", classmethod(from_config))
    monkeypatch.setenv("TASKSYNC_BACKEND", "redis")
    monkeypatch.setenv("TASKSYNC_USER_ID", "cli-user")
    return store


def _output(capsys: Any) -> list[str]:
    # structured log records share stdout with command output
    lines = capsys.readouterr().out.splitlines()
    return [line for line in lines if not line.startswith('{"ts"')]


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return int(excinfo.value.code or 0)


def test_add_then_list(remote: InMemoryRemoteStore, capsys: Any) -> None:
    assert _run(["add", "water", "plants", "#home", "--importance", "3"]) == 0
    (added,) = _output(capsys)
    assert "Water plants" in added and "#home" in added

    assert _run(["list", "--json"]) == 0
    (row,) = [json.loads(line) for line in _output(capsys)]
    assert row["task"] == "Water plants"
    assert row["user_id"] == "cli-user"
    assert row["id"] in remote.rows


def test_add_category_option_overrides_title_tag(
    remote: InMemoryRemoteStore, capsys: Any
) -> None:
    assert _run(["add", "call", "bob", "#later", "--category", "work", "--json"]) == 0
    (line,) = _output(capsys)
    row = json.loads(line)
    assert row["task"] == "Call bob"
    assert row["category"] == "work"
    assert remote.rows[row["id"]]["category"] == "work"


def test_add_rejects_blank_and_invalid_input(remote: InMemoryRemoteStore, capsys: Any) -> None:
    assert _run(["add", " "]) == 1
    assert _run(["add", "x", "--deadline", "someday"]) == 1
    assert "error:" in capsys.readouterr().err
    assert remote.ops("insert") == []


def test_sync_and_archive_old(remote: InMemoryRemoteStore, capsys: Any) -> None:
    remote.seed(user_id="cli-user", created_at="2020-01-01T00:00:00+00:00")
    assert _run(["sync"]) == 0
    assert _output(capsys) == ["1 tasks, 0 pending"]

    assert _run(["archive-old"]) == 0
    assert _output(capsys) == ["archived 1 tasks"]
    assert _run(["archive-old"]) == 0
    assert _output(capsys) == ["nothing to archive"]


def test_keep_alive_exit_codes(remote: InMemoryRemoteStore, capsys: Any) -> None:
    assert _run(["keep-alive"]) == 0
    remote.online = False
    assert _run(["keep-alive"]) == 1
    assert "keep-alive failed" in capsys.readouterr().err


def test_config_errors_exit_with_code_2(
    monkeypatch: pytest.MonkeyPatch, capsys: Any
) -> None:
    monkeypatch.setenv("TASKSYNC_BACKEND", "sqlite")
    assert _run(["sync"]) == 2
    assert "TASKSYNC_BACKEND" in capsys.readouterr().err


def test_no_command_prints_help(capsys: Any) -> None:
    cli.main([])
    assert "usage: tasksync" in capsys.readouterr().out
