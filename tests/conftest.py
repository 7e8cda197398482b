"""Shared test fixtures and configuration."""

from __future__ import annotations

import datetime as dt
import json
import os
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

os.environ.setdefault("FLOWWATCH_ENV", "test")
os.environ.setdefault("FLOWWATCH_LOG_LEVEL", "WARNING")

from flowwatch.config import Settings
from flowwatch.supervisor.models import EventKind, LogEntry, WorkerInfo
from flowwatch.supervisor.rules import DetectionRules

T0 = dt.datetime(2026, 3, 2, 9, 0, 0, tzinfo=dt.UTC)


def at(seconds: float) -> dt.datetime:
    """Timestamp ``seconds`` after the fixed test epoch."""
    return T0 + dt.timedelta(seconds=seconds)


def record(
    event: str,
    command: str = "build",
    phase: Optional[str] = None,
    data: Optional[dict[str, Any]] = None,
    seconds: float = 0.0,
    agent: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "ts": at(seconds).isoformat(),
        "cmd": command,
        "event": event,
        "data": data or {},
    }
    if phase:
        raw["phase"] = phase
    if agent:
        raw["agent"] = agent
    return raw


@pytest.fixture
def make_entry() -> Callable[..., LogEntry]:
    """Factory for LogEntry objects; offsets increase per call."""
    counter = {"offset": 0}

    def _make(
        event: str | EventKind,
        command: str = "build",
        phase: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        seconds: float = 0.0,
        worker: Optional[WorkerInfo] = None,
    ) -> LogEntry:
        counter["offset"] += 100
        return LogEntry(
            timestamp=at(seconds),
            command=command,
            event=EventKind(event),
            phase=phase,
            data=data or {},
            worker=worker,
            offset=counter["offset"],
        )

    return _make


@pytest.fixture
def write_log() -> Callable[..., None]:
    """Append JSON lines (dicts) or raw strings to a log file."""

    def _write(path: Path, *lines: dict[str, Any] | str, newline: bool = True) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        text = "\n".join(
            line if isinstance(line, str) else json.dumps(line) for line in lines
        )
        with path.open("a", encoding="utf-8") as fh:
            fh.write(text + ("\n" if newline else ""))

    return _write


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a temp workspace."""
    return Settings(
        env="test",
        log_level="WARNING",
        workspace_dir=tmp_path / ".oss",
        poll_interval_seconds=0.01,
        tick_interval_seconds=3600,
        _env_file=None,
    )


@pytest.fixture
def rules() -> DetectionRules:
    return DetectionRules()


@pytest.fixture(name="at")
def at_fixture() -> Callable[[float], dt.datetime]:
    return at


@pytest.fixture
def make_record() -> Callable[..., dict[str, Any]]:
    """Factory for raw log records (the dicts written to the log file)."""
    return record
