"""Tests for the webapp runtime record."""

from __future__ import annotations

import json
import os
from pathlib import Path

from pr_review_relay.runtime import (
    delete_runtime,
    pid_alive,
    read_runtime,
    webapp_url,
    write_runtime,
)


def test_write_and_read(tmp_path: Path) -> None:
    path = tmp_path / "cfg" / "runtime.json"
    info = write_runtime(path, 3847)
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["port"] == 3847
    assert payload["pid"] == os.getpid()
    assert "startedAt" in payload
    assert read_runtime(path) == info


def test_webapp_url_for_live_process(tmp_path: Path) -> None:
    path = tmp_path / "runtime.json"
    write_runtime(path, 4000)
    assert webapp_url(path) == "http://localhost:4000"


def test_webapp_url_for_dead_process(tmp_path: Path) -> None:
    path = tmp_path / "runtime.json"
    path.write_text(
        json.dumps({"port": 4000, "pid": 0, "startedAt": "2026-01-01T00:00:00.000Z"}),
        encoding="utf-8",
    )
    assert webapp_url(path) is None


def test_missing_or_invalid(tmp_path: Path) -> None:
    path = tmp_path / "runtime.json"
    assert read_runtime(path) is None
    path.write_text("{", encoding="utf-8")
    assert read_runtime(path) is None
    assert webapp_url(path) is None


def test_delete_is_idempotent(tmp_path: Path) -> None:
    path = tmp_path / "runtime.json"
    write_runtime(path, 1)
    delete_runtime(path)
    delete_runtime(path)
    assert not path.exists()


def test_pid_alive() -> None:
    assert pid_alive(os.getpid()) is True
    assert pid_alive(0) is False


def test_http_main_serves_stateful_sessions(monkeypatch, tmp_path: Path) -> None:
    from pr_review_relay import server

    calls: list[dict] = []

    def fake_run(**kwargs) -> None:
        calls.append(kwargs)
        assert read_runtime(tmp_path / "runtime.json") is not None

    monkeypatch.setattr(server.mcp, "run", fake_run)
    monkeypatch.setattr(server, "default_config_dir", lambda: tmp_path)
    monkeypatch.setenv("RELAY_TRANSPORT", "http")
    monkeypatch.setenv("RELAY_PORT", "4123")
    monkeypatch.setenv("RELAY_LOG_DIR", str(tmp_path / "logs"))

    server.main()

    assert len(calls) == 1
    assert calls[0]["transport"] == "streamable-http"
    assert calls[0]["port"] == 4123
    assert "stateless_http" not in calls[0]
    assert not (tmp_path / "runtime.json").exists()
