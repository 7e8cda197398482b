"""Data model for the supervision engine: log entries, workflow state, issues."""

from __future__ import annotations

import datetime as dt
import hashlib
import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional

RECENT_ENTRY_LIMIT = 20


class EventKind(StrEnum):
    """Kinds of events the monitored workflow writes to its log."""
    START = "START"
    PHASE_START = "PHASE_START"
    PHASE_COMPLETE = "PHASE_COMPLETE"
    MILESTONE = "MILESTONE"
    AGENT_SPAWN = "AGENT_SPAWN"
    AGENT_COMPLETE = "AGENT_COMPLETE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class ChainStatus(StrEnum):
    """Progress of one command in the expected command chain."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class IssueKind(StrEnum):
    """Catalogue of problems the analyzer can detect."""
    # Presence of a bad signal
    LOOP = "loop"
    STUCK_PHASE = "stuck-phase"
    REGRESSION = "regression"
    OUT_OF_ORDER = "out-of-order"
    EXPLICIT_FAILURE = "explicit-failure"
    AGENT_FAILURE = "agent-failure"
    TDD_VIOLATION = "tdd-violation"
    CHAIN_BROKEN = "chain-broken"
    # Absence of a good signal
    SILENCE = "silence"
    MISSING_MILESTONE = "missing-milestone"
    VELOCITY_DECLINE = "velocity-decline"
    INCOMPLETE_CHAIN = "incomplete-chain"
    AGENT_SILENCE = "agent-silence"
    # Positive signals ceased
    ABRUPT_STOP = "abrupt-stop"
    PARTIAL_COMPLETION = "partial-completion"
    ABANDONED_AGENT = "abandoned-agent"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def parse_timestamp(value: Any) -> dt.datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed


def _iso(value: Optional[dt.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[dt.datetime]:
    return parse_timestamp(value) if value else None


def drift_signature(source: str, anomaly_type: str, context: dict[str, Any]) -> str:
    """Stable dedup key for a task: source + anomaly type + salient context."""
    payload = json.dumps(
        {"source": source, "anomaly_type": anomaly_type, "context": context},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class WorkerInfo:
    """Descriptor of a delegated worker attached to a log entry."""
    type: str
    id: str
    parent_command: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "id": self.id}
        if self.parent_command:
            data["parent_cmd"] = self.parent_command
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["WorkerInfo"]:
        if not isinstance(raw, dict):
            return None
        worker_id = raw.get("id")
        if not worker_id:
            return None
        return cls(
            type=str(raw.get("type") or "unknown"),
            id=str(worker_id),
            parent_command=raw.get("parent_cmd") or raw.get("parent_command"),
        )


@dataclass(frozen=True)
class LogEntry:
    """One parsed event. Ordering comes from ``offset`` (file position)."""
    timestamp: dt.datetime
    command: str
    event: EventKind
    phase: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    worker: Optional[WorkerInfo] = None
    offset: int = -1

    @classmethod
    def from_dict(cls, raw: dict[str, Any], offset: int = -1) -> "LogEntry":
        """Build an entry from a decoded log record. Raises ValueError if invalid."""
        if not isinstance(raw, dict):
            raise ValueError("log record is not an object")
        command = raw.get("cmd")
        if not isinstance(command, str) or not command:
            raise ValueError("log record has no command")
        event = EventKind(raw.get("event"))
        phase = raw.get("phase")
        if phase is not None and not isinstance(phase, str):
            raise ValueError("phase must be a string")
        data = raw.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("data must be an object")
        return cls(
            timestamp=parse_timestamp(raw.get("ts")),
            command=command,
            event=event,
            phase=phase or None,
            data=data,
            worker=WorkerInfo.from_dict(raw.get("agent")),
            offset=offset,
        )

    def to_dict(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "ts": self.timestamp.isoformat(),
            "cmd": self.command,
            "event": self.event.value,
            "data": self.data,
        }
        if self.phase:
            record["phase"] = self.phase
        if self.worker:
            record["agent"] = self.worker.to_dict()
        return record

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    @property
    def phase_key(self) -> Optional[str]:
        return self.phase.lower() if self.phase else None


@dataclass
class ActiveWorker:
    """A delegated worker that has been spawned and not yet completed."""
    id: str
    type: str
    parent: Optional[str]
    spawn_time: dt.datetime
    started: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "parent": self.parent,
            "spawn_time": self.spawn_time.isoformat(),
            "started": self.started,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ActiveWorker":
        return cls(
            id=raw["id"],
            type=raw.get("type", "unknown"),
            parent=raw.get("parent"),
            spawn_time=parse_timestamp(raw["spawn_time"]),
            started=bool(raw.get("started", False)),
        )


@dataclass
class WorkflowState:
    """What the monitored workflow is doing right now.

    Mutated only by the analyzer, one entry at a time. ``phase_start_time``
    is None exactly when no phase is active.
    """
    current_command: Optional[str] = None
    current_phase: Optional[str] = None
    phase_start_time: Optional[dt.datetime] = None
    last_activity_time: Optional[dt.datetime] = None
    milestone_timestamps: list[dt.datetime] = field(default_factory=list)
    active_workers: dict[str, ActiveWorker] = field(default_factory=dict)
    chain_position: int = -1
    chain_progress: dict[str, ChainStatus] = field(default_factory=dict)
    command_closed: bool = False
    started_commands: list[str] = field(default_factory=list)
    completed_scopes: list[str] = field(default_factory=list)
    seen_phases: list[str] = field(default_factory=list)
    cycle_phases: list[str] = field(default_factory=list)
    completed_phases: list[str] = field(default_factory=list)
    phase_milestone_counts: dict[str, int] = field(default_factory=dict)
    last_milestone_signature: Optional[str] = None
    repeat_counts: dict[str, int] = field(default_factory=dict)
    repeat_key: Optional[str] = None
    progress_epoch: int = 0
    entries_seen: int = 0
    recent_entries: list[LogEntry] = field(default_factory=list)

    @property
    def phase_active(self) -> bool:
        return self.current_phase is not None

    @property
    def command_active(self) -> bool:
        return self.current_command is not None and not self.command_closed

    @property
    def last_milestone_time(self) -> Optional[dt.datetime]:
        return self.milestone_timestamps[-1] if self.milestone_timestamps else None

    def remember(self, entry: LogEntry) -> None:
        self.recent_entries.append(entry)
        if len(self.recent_entries) > RECENT_ENTRY_LIMIT:
            del self.recent_entries[: len(self.recent_entries) - RECENT_ENTRY_LIMIT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_command": self.current_command,
            "current_phase": self.current_phase,
            "phase_start_time": _iso(self.phase_start_time),
            "last_activity_time": _iso(self.last_activity_time),
            "milestone_timestamps": [t.isoformat() for t in self.milestone_timestamps],
            "active_workers": {k: w.to_dict() for k, w in self.active_workers.items()},
            "chain_position": self.chain_position,
            "chain_progress": {k: v.value for k, v in self.chain_progress.items()},
            "command_closed": self.command_closed,
            "started_commands": list(self.started_commands),
            "completed_scopes": list(self.completed_scopes),
            "seen_phases": list(self.seen_phases),
            "cycle_phases": list(self.cycle_phases),
            "completed_phases": list(self.completed_phases),
            "phase_milestone_counts": dict(self.phase_milestone_counts),
            "last_milestone_signature": self.last_milestone_signature,
            "repeat_counts": dict(self.repeat_counts),
            "repeat_key": self.repeat_key,
            "progress_epoch": self.progress_epoch,
            "entries_seen": self.entries_seen,
            "recent_entries": [
                {**e.to_dict(), "offset": e.offset} for e in self.recent_entries
            ],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "WorkflowState":
        """Inverse of to_dict. Raises KeyError/ValueError/TypeError on bad input."""
        return cls(
            current_command=raw.get("current_command"),
            current_phase=raw.get("current_phase"),
            phase_start_time=_from_iso(raw.get("phase_start_time")),
            last_activity_time=_from_iso(raw.get("last_activity_time")),
            milestone_timestamps=[parse_timestamp(t) for t in raw.get("milestone_timestamps", [])],
            active_workers={
                k: ActiveWorker.from_dict(v) for k, v in raw.get("active_workers", {}).items()
            },
            chain_position=int(raw.get("chain_position", -1)),
            chain_progress={
                k: ChainStatus(v) for k, v in raw.get("chain_progress", {}).items()
            },
            command_closed=bool(raw.get("command_closed", False)),
            started_commands=list(raw.get("started_commands", [])),
            completed_scopes=list(raw.get("completed_scopes", [])),
            seen_phases=list(raw.get("seen_phases", [])),
            cycle_phases=list(raw.get("cycle_phases", [])),
            completed_phases=list(raw.get("completed_phases", [])),
            phase_milestone_counts={
                k: int(v) for k, v in raw.get("phase_milestone_counts", {}).items()
            },
            last_milestone_signature=raw.get("last_milestone_signature"),
            repeat_counts={k: int(v) for k, v in raw.get("repeat_counts", {}).items()},
            repeat_key=raw.get("repeat_key"),
            progress_epoch=int(raw.get("progress_epoch", 0)),
            entries_seen=int(raw.get("entries_seen", 0)),
            recent_entries=[
                LogEntry.from_dict(e, offset=int(e.get("offset", -1)))
                for e in raw.get("recent_entries", [])
            ],
        )


@dataclass(frozen=True)
class Issue:
    """A detected problem with the supporting evidence.

    ``context`` holds the salient fields that identify the underlying
    problem; two issues with equal kind and context are the same problem.
    """
    kind: IssueKind
    confidence: float
    description: str
    suggested_action: str
    evidence: tuple[LogEntry, ...] = ()
    auto_fixable: bool = False
    context: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence out of range: {self.confidence}")

    @property
    def salient_context(self) -> dict[str, Any]:
        return {"issue": self.kind.value, **self.context}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "confidence": round(self.confidence, 3),
            "description": self.description,
            "suggested_action": self.suggested_action,
            "auto_fixable": self.auto_fixable,
            "context": self.context,
            "details": self.details,
            "evidence": [e.to_dict() for e in self.evidence],
        }
