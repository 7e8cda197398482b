"""Task Queue: durable, deduplicated, expiring queue of remediation tasks.

Tasks are added by:
- The supervision loop (interventions generated from detected issues)
- The webhook ingress (negative review events)

An external drain process reads the file and moves tasks through
pending -> in_progress -> done/failed. Every write goes through an atomic
replace and the file is re-read before each operation, so both sides always
see a complete document.
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Iterable, Optional

from flowwatch.errors import InvalidTransitionError, TaskNotFoundError
from flowwatch.logging_config import get_logger
from flowwatch.supervisor.models import parse_timestamp, utcnow
from flowwatch.supervisor.persistence import atomic_write_json, read_json

logger = get_logger(__name__)

QUEUE_VERSION = "1.0"
ARCHIVE_LIMIT = 500


class TaskStatus(StrEnum):
    """Lifecycle of a queued task. Only moves forward."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class TaskPriority(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}

_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.DONE: 2,
    TaskStatus.FAILED: 2,
}

OPEN_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})
FINISHED_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED})


@dataclass
class QueueTask:
    """One unit of remediation work."""

    prompt: str
    anomaly_type: str
    source: str
    priority: TaskPriority = TaskPriority.MEDIUM
    suggested_agent: str = "debugger"
    context: dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None
    auto_execute: bool = False
    status: TaskStatus = TaskStatus.PENDING
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: dt.datetime = field(default_factory=utcnow)
    expires_at: Optional[dt.datetime] = None
    last_seen_at: Optional[dt.datetime] = None
    started_at: Optional[dt.datetime] = None
    finished_at: Optional[dt.datetime] = None
    occurrences: int = 1
    result: Optional[str] = None

    def is_expired(
        self, now: Optional[dt.datetime] = None, expiry: Optional[dt.timedelta] = None,
    ) -> bool:
        """True once ``expires_at`` has passed.

        Tasks written without an ``expires_at`` fall back to
        ``created_at + expiry`` when an expiry window is given.
        """
        deadline = self.expires_at
        if deadline is None and expiry is not None:
            deadline = self.created_at + expiry
        return deadline is not None and deadline <= (now or utcnow())

    def to_dict(self) -> dict[str, Any]:
        def iso(value: Optional[dt.datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "priority": self.priority.value,
            "source": self.source,
            "anomaly_type": self.anomaly_type,
            "prompt": self.prompt,
            "suggested_agent": self.suggested_agent,
            "context": self.context,
            "signature": self.signature,
            "auto_execute": self.auto_execute,
            "status": self.status.value,
            "created_at": iso(self.created_at),
            "expires_at": iso(self.expires_at),
            "last_seen_at": iso(self.last_seen_at),
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
            "occurrences": self.occurrences,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "QueueTask":
        def when(key: str) -> Optional[dt.datetime]:
            value = raw.get(key)
            return parse_timestamp(value) if value else None

        return cls(
            id=str(raw["id"]),
            prompt=str(raw.get("prompt", "")),
            anomaly_type=str(raw.get("anomaly_type", "unknown")),
            source=str(raw.get("source", "unknown")),
            priority=TaskPriority(raw.get("priority", TaskPriority.MEDIUM)),
            suggested_agent=str(raw.get("suggested_agent") or "debugger"),
            context=dict(raw.get("context") or {}),
            signature=raw.get("signature"),
            auto_execute=bool(raw.get("auto_execute", False)),
            status=TaskStatus(raw.get("status", TaskStatus.PENDING)),
            created_at=when("created_at") or utcnow(),
            expires_at=when("expires_at"),
            last_seen_at=when("last_seen_at"),
            started_at=when("started_at"),
            finished_at=when("finished_at"),
            occurrences=int(raw.get("occurrences", 1)),
            result=raw.get("result"),
        )


def _sort_key(task: QueueTask) -> tuple[int, dt.datetime]:
    return (task.priority.rank, task.created_at)


class TaskQueue:
    """File-backed queue. One instance per file; no module-level singleton."""

    def __init__(
        self,
        path: Path,
        archive_path: Optional[Path] = None,
        *,
        expiry_hours: float = 24.0,
        max_size: int = 50,
    ) -> None:
        self._path = path
        self._archive_path = archive_path
        self._expiry = dt.timedelta(hours=expiry_hours)
        self._max_size = max(1, max_size)
        self._tasks: list[QueueTask] = []
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    # ── Persistence ──────────────────────────────────────────────────

    def _load(self) -> None:
        """Load tasks from disk. A missing or corrupted file is an empty queue."""
        raw = read_json(self._path, default=None)
        if raw is None:
            self._tasks = []
            return
        records = raw.get("tasks", []) if isinstance(raw, dict) else raw
        if not isinstance(records, list):
            logger.warning("queue_file_invalid", path=str(self._path))
            self._tasks = []
            return
        tasks = []
        for record in records:
            try:
                tasks.append(QueueTask.from_dict(record))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("queue_task_skipped", error=str(exc))
        self._tasks = tasks

    def _save(self, now: Optional[dt.datetime] = None) -> None:
        """Write cycle: prune expired tasks, cap the size, replace the file."""
        now = now or utcnow()
        dropped = self._prune_expired(now) + self._enforce_limit()
        self._tasks.sort(key=_sort_key)
        atomic_write_json(self._path, {
            "version": QUEUE_VERSION,
            "updated_at": now.isoformat(),
            "tasks": [t.to_dict() for t in self._tasks],
        })
        if dropped:
            self._archive(dropped)

    def _prune_expired(self, now: dt.datetime) -> list[QueueTask]:
        expired = [t for t in self._tasks if t.is_expired(now, self._expiry)]
        if expired:
            self._tasks = [t for t in self._tasks if not t.is_expired(now, self._expiry)]
            logger.info("queue_tasks_expired", count=len(expired), remaining=len(self._tasks))
        return expired

    def _enforce_limit(self) -> list[QueueTask]:
        overflow = len(self._tasks) - self._max_size
        if overflow <= 0:
            return []
        # Finished tasks go first, then the lowest-priority oldest open ones
        candidates = sorted(
            self._tasks,
            key=lambda t: (t.status in OPEN_STATUSES, -t.priority.rank, t.created_at),
        )
        dropped = candidates[:overflow]
        dropped_ids = {t.id for t in dropped}
        self._tasks = [t for t in self._tasks if t.id not in dropped_ids]
        logger.warning("queue_overflow", dropped=len(dropped), max_size=self._max_size)
        return dropped

    def _archive(self, tasks: list[QueueTask]) -> None:
        if self._archive_path is None:
            return
        archived = read_json(self._archive_path, default=[])
        if not isinstance(archived, list):
            archived = []
        archived.extend(t.to_dict() for t in tasks)
        atomic_write_json(self._archive_path, archived[-ARCHIVE_LIMIT:])

    def _find(self, task_id: str) -> QueueTask:
        for task in self._tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    # ── Public API ───────────────────────────────────────────────────

    def add_task(self, task: QueueTask, now: Optional[dt.datetime] = None) -> str:
        """Add a task, or merge it into an open task with the same signature.

        Returns the id of the stored task. Submitting the same problem any
        number of times leaves exactly one open task for it.
        """
        now = now or utcnow()
        self._load()
        if task.signature:
            for existing in self._tasks:
                if (
                    existing.signature == task.signature
                    and existing.status in OPEN_STATUSES
                    and not existing.is_expired(now, self._expiry)
                ):
                    existing.occurrences += 1
                    existing.last_seen_at = now
                    if task.priority.rank < existing.priority.rank:
                        existing.priority = task.priority
                    self._save(now)
                    logger.info(
                        "queue_task_merged",
                        id=existing.id,
                        signature=task.signature,
                        occurrences=existing.occurrences,
                    )
                    return existing.id

        task.status = TaskStatus.PENDING
        task.created_at = now
        task.last_seen_at = now
        if task.expires_at is None:
            task.expires_at = now + self._expiry
        self._tasks.append(task)
        self._save(now)
        logger.info(
            "queue_task_added",
            id=task.id,
            priority=task.priority.value,
            anomaly_type=task.anomaly_type,
            source=task.source,
        )
        return task.id

    def get_tasks(
        self,
        status: Optional[TaskStatus | str] = None,
        priority: Optional[TaskPriority | str] = None,
        *,
        include_expired: bool = False,
        now: Optional[dt.datetime] = None,
    ) -> list[QueueTask]:
        """List tasks, highest priority and oldest first."""
        wanted_status = TaskStatus(status) if status else None
        wanted_priority = TaskPriority(priority) if priority else None
        now = now or utcnow()
        self._load()
        tasks = self._tasks
        if not include_expired:
            tasks = [t for t in tasks if not t.is_expired(now, self._expiry)]
        if wanted_status is not None:
            tasks = [t for t in tasks if t.status == wanted_status]
        if wanted_priority is not None:
            tasks = [t for t in tasks if t.priority == wanted_priority]
        return sorted(tasks, key=_sort_key)

    def get_task(self, task_id: str) -> QueueTask:
        self._load()
        return self._find(task_id)

    def get_pending_count(self, now: Optional[dt.datetime] = None) -> int:
        """Pending tasks that have not expired."""
        return len(self.get_tasks(TaskStatus.PENDING, now=now))

    def get_next_task(self, now: Optional[dt.datetime] = None) -> Optional[QueueTask]:
        pending = self.get_tasks(TaskStatus.PENDING, now=now)
        return pending[0] if pending else None

    def mark_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        result: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> QueueTask:
        """Move a task forward in its lifecycle.

        Raises TaskNotFoundError for unknown ids and InvalidTransitionError
        for backward moves (e.g. done -> pending).
        """
        now = now or utcnow()
        status = TaskStatus(status)
        self._load()
        task = self._find(task_id)
        if status == task.status:
            return task
        if _STATUS_RANK[status] <= _STATUS_RANK[task.status]:
            raise InvalidTransitionError(task_id, task.status.value, status.value)
        task.status = status
        if status == TaskStatus.IN_PROGRESS:
            task.started_at = now
        else:
            task.finished_at = now
            if result is not None:
                task.result = result
        self._save(now)
        logger.info("queue_task_status", id=task_id, status=status.value)
        return task

    def prune(self, now: Optional[dt.datetime] = None) -> int:
        """Run a write cycle now; returns how many tasks expired."""
        now = now or utcnow()
        self._load()
        expired = sum(1 for t in self._tasks if t.is_expired(now, self._expiry))
        self._save(now)
        return expired

    def purge_finished(self) -> int:
        """Remove all done and failed tasks. Returns the number removed."""
        self._load()
        before = len(self._tasks)
        self._tasks = [t for t in self._tasks if t.status not in FINISHED_STATUSES]
        removed = before - len(self._tasks)
        if removed:
            self._save()
            logger.info("queue_purged", removed=removed, remaining=len(self._tasks))
        return removed

    def signatures(self, statuses: Iterable[TaskStatus | str] = ()) -> set[str]:
        """Signatures of tasks in ``statuses`` (all statuses when empty)."""
        wanted = {TaskStatus(s) for s in statuses}
        self._load()
        return {
            t.signature for t in self._tasks
            if t.signature and (not wanted or t.status in wanted)
        }

    def count_by_priority(self, now: Optional[dt.datetime] = None) -> dict[str, int]:
        counts = {p.value: 0 for p in TaskPriority}
        for task in self.get_tasks(TaskStatus.PENDING, now=now):
            counts[task.priority.value] += 1
        return counts

    def stats(self, now: Optional[dt.datetime] = None) -> dict[str, Any]:
        """Summary counts for status output."""
        now = now or utcnow()
        self._load()
        by_status = {s.value: 0 for s in TaskStatus}
        expired = 0
        for task in self._tasks:
            if task.is_expired(now, self._expiry):
                expired += 1
                continue
            by_status[task.status.value] += 1
        return {
            "total": len(self._tasks) - expired,
            "expired": expired,
            "by_status": by_status,
            "pending_by_priority": self.count_by_priority(now),
            "max_size": self._max_size,
        }
