"""Supervision Loop: wires the reader, analyzer, generator and queue together.

All state changes go through a single consumer task reading from an inbox:
log batches from the tail and ticks from the timer are both submitted as
work items, so WorkflowState is never touched by two writers at once.

Startup recovery:
- snapshot valid, offset checkpoint agrees, log not shrunk -> resume
- anything else -> replay the whole log, skipping issues that already have
  a task in the queue
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from flowwatch.config import Settings, get_settings
from flowwatch.errors import StateInconsistencyError
from flowwatch.logging_config import get_logger
from flowwatch.supervisor.analyzer import WorkflowAnalyzer
from flowwatch.supervisor.interventions import Intervention, InterventionGenerator, ResponseClass
from flowwatch.supervisor.log_reader import LogBatch, LogReader
from flowwatch.supervisor.models import Issue, utcnow
from flowwatch.supervisor.notifier import SupervisorNotifier
from flowwatch.supervisor.persistence import Snapshot, SnapshotStore
from flowwatch.supervisor.rules import DetectionRules
from flowwatch.supervisor.task_queue import TaskQueue, TaskStatus

logger = get_logger(__name__)

EMITTED_LIMIT = 1000
KNOWN_TASK_STATUSES = (
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
    TaskStatus.DONE,
    TaskStatus.FAILED,
)

InterventionCallback = Callable[[Intervention], Any]


@dataclass
class _WorkItem:
    kind: str  # batch | tick | stop
    done: asyncio.Future
    batch: Optional[LogBatch] = None
    now: Optional[dt.datetime] = None


@dataclass
class LoopStats:
    entries_processed: int = 0
    batches_processed: int = 0
    ticks: int = 0
    issues_detected: int = 0
    interventions: dict[str, int] = field(
        default_factory=lambda: {r.value: 0 for r in ResponseClass}
    )
    recovery: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries_processed": self.entries_processed,
            "batches_processed": self.batches_processed,
            "ticks": self.ticks,
            "issues_detected": self.issues_detected,
            "interventions": dict(self.interventions),
            "recovery": self.recovery,
        }


class SupervisionLoop:
    """Owns the supervision lifecycle: recover, tail, analyze, intervene, persist."""

    def __init__(
        self,
        reader: LogReader,
        analyzer: WorkflowAnalyzer,
        generator: InterventionGenerator,
        queue: TaskQueue,
        notifier: SupervisorNotifier,
        snapshots: SnapshotStore,
        *,
        tick_interval: float = 15.0,
        replay_notify: bool = False,
    ) -> None:
        self._reader = reader
        self._analyzer = analyzer
        self._generator = generator
        self._queue = queue
        self._notifier = notifier
        self._snapshots = snapshots
        self._tick_interval = tick_interval
        self._replay_notify = replay_notify

        self._emitted: OrderedDict[str, None] = OrderedDict()
        self._callbacks: list[InterventionCallback] = []
        self._log_offset = 0
        self._malformed = 0
        self.stats = LoopStats()

        self._inbox: Optional[asyncio.Queue[_WorkItem]] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._tail_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._stopped: Optional[asyncio.Event] = None
        self._running = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SupervisionLoop":
        """Build a loop with file-backed stores under the workspace directory."""
        settings = settings or get_settings()
        settings.ensure_workspace()
        return cls(
            reader=LogReader(
                settings.log_path,
                settings.offset_path,
                poll_interval=settings.poll_interval_seconds,
                read_timeout=settings.read_timeout_seconds,
                max_read_bytes=settings.max_read_bytes,
            ),
            analyzer=WorkflowAnalyzer(
                DetectionRules.from_settings(settings),
                critical_threshold=settings.auto_remediate_threshold,
                warning_threshold=settings.notify_suggest_threshold,
            ),
            generator=InterventionGenerator.from_settings(settings),
            queue=TaskQueue(
                settings.queue_path,
                settings.archive_path,
                expiry_hours=settings.queue_expiry_hours,
                max_size=settings.queue_max_size,
            ),
            notifier=SupervisorNotifier.from_settings(settings),
            snapshots=SnapshotStore(settings.state_path),
            tick_interval=settings.tick_interval_seconds,
            replay_notify=settings.replay_notify,
        )

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def analyzer(self) -> WorkflowAnalyzer:
        return self._analyzer

    @property
    def queue(self) -> TaskQueue:
        return self._queue

    @property
    def reader(self) -> LogReader:
        return self._reader

    @property
    def emitted_signatures(self) -> list[str]:
        return list(self._emitted)

    def on_intervention(self, callback: InterventionCallback) -> None:
        """Register a callback invoked (sync or async) for each new intervention."""
        self._callbacks.append(callback)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "log_offset": self._log_offset,
            "malformed_lines": self._malformed,
            "workflow": self._analyzer.summary(),
            "queue": self._queue.stats(),
            "stats": self.stats.to_dict(),
        }

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        await self.recover()
        self._inbox = asyncio.Queue()
        self._stopped = asyncio.Event()
        self._running = True
        self._consumer_task = asyncio.create_task(self._consume())
        self._tail_task = asyncio.create_task(self._reader.tail(self._submit_batch))
        self._timer_task = asyncio.create_task(self._tick_loop())
        logger.info("supervision_started", log=str(self._reader.path), offset=self._log_offset)

    async def run(self) -> None:
        """Start and block until :meth:`stop` completes."""
        await self.start()
        assert self._stopped is not None
        await self._stopped.wait()

    async def stop(self) -> None:
        """Cooperative stop: finish the current batch, flush the snapshot."""
        if not self._running:
            return
        self._running = False
        self._reader.stop()
        if self._timer_task:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
        if self._tail_task:
            await self._tail_task
        if self._inbox is not None and self._consumer_task is not None:
            await self._submit(_WorkItem(kind="stop", done=asyncio.get_running_loop().create_future()))
            await self._consumer_task
        self._save_snapshot()
        logger.info("supervision_stopped", offset=self._log_offset, stats=self.stats.to_dict())
        if self._stopped is not None:
            self._stopped.set()

    # ── Recovery ─────────────────────────────────────────────────────

    async def recover(self) -> str:
        """Restore state from the snapshot or rebuild it from the log.

        Returns "resumed" or "replayed".
        """
        try:
            snapshot = self._load_consistent_snapshot()
        except StateInconsistencyError as exc:
            logger.info("state_rebuild_required", reason=str(exc))
            await self._replay()
            self.stats.recovery = "replayed"
            return "replayed"

        self._analyzer.reset(snapshot.state)
        self._reader.seek(snapshot.log_offset)
        self._log_offset = snapshot.log_offset
        self._malformed = snapshot.malformed_lines
        self._emitted = OrderedDict((sig, None) for sig in snapshot.emitted[-EMITTED_LIMIT:])
        self.stats.recovery = "resumed"
        logger.info("state_resumed", offset=snapshot.log_offset, saved_at=snapshot.saved_at)
        return "resumed"

    def _load_consistent_snapshot(self) -> Snapshot:
        snapshot = self._snapshots.load()
        checkpoint = self._reader.load_checkpoint()
        if checkpoint is None:
            raise StateInconsistencyError("no log offset checkpoint")
        if checkpoint != snapshot.log_offset:
            raise StateInconsistencyError(
                f"snapshot offset {snapshot.log_offset} != checkpoint {checkpoint}"
            )
        size = self._reader.size()
        if size < snapshot.log_offset:
            raise StateInconsistencyError(
                f"log shrank to {size} bytes, below offset {snapshot.log_offset}"
            )
        return snapshot

    async def _replay(self) -> None:
        known = self._queue.signatures(KNOWN_TASK_STATUSES)
        batch = await asyncio.to_thread(self._reader.read_through)
        self._analyzer.reset()
        self._emitted.clear()
        self._malformed = 0
        for entry in batch.entries:
            issues = self._analyzer.process(entry)
            await self._dispatch(issues, notify=self._replay_notify, suppress=known)
        self.stats.entries_processed += len(batch.entries)
        self._reader.commit(batch)
        self._log_offset = batch.end_offset
        self._malformed = batch.malformed
        logger.info(
            "state_replayed",
            entries=len(batch.entries),
            malformed=batch.malformed,
            offset=batch.end_offset,
            known_tasks=len(known),
        )
        self._save_snapshot()
        # Absence detectors against wall-clock time, now that state is current
        await self.process_tick()

    # ── Processing (single consumer) ─────────────────────────────────

    async def process_batch(self, batch: LogBatch) -> list[Issue]:
        """Apply a batch in order and dispatch whatever it raises."""
        suppress: frozenset[str] | set[str] = frozenset()
        if batch.reset:
            logger.warning("log_reset_rebuilding", offset=batch.start_offset)
            suppress = self._queue.signatures(KNOWN_TASK_STATUSES)
            self._analyzer.reset()
            self._emitted.clear()
            self._malformed = 0

        all_issues: list[Issue] = []
        for entry in batch.entries:
            issues = self._analyzer.process(entry)
            all_issues.extend(issues)
            await self._dispatch(issues, suppress=suppress)

        self._log_offset = batch.end_offset
        self._malformed += batch.malformed
        self.stats.entries_processed += len(batch.entries)
        self.stats.batches_processed += 1
        if batch.malformed:
            logger.info("log_malformed_lines", count=batch.malformed, total=self._malformed)
        self._save_snapshot()
        return all_issues

    async def process_tick(self, now: Optional[dt.datetime] = None) -> list[Issue]:
        """Evaluate the absence-based detectors."""
        issues = self._analyzer.evaluate_timer(now or utcnow())
        self.stats.ticks += 1
        await self._dispatch(issues)
        if issues:
            self._save_snapshot()
        return issues

    async def _dispatch(
        self,
        issues: list[Issue],
        *,
        notify: bool = True,
        suppress: frozenset[str] | set[str] = frozenset(),
    ) -> None:
        for issue in issues:
            self.stats.issues_detected += 1
            intervention = self._generator.generate(issue)
            signature = intervention.signature
            if signature in self._emitted:
                continue
            self._remember(signature)
            if signature in suppress:
                logger.debug("intervention_already_queued", signature=signature, kind=issue.kind.value)
                continue

            if intervention.task is not None:
                try:
                    self._queue.add_task(intervention.task)
                except OSError as exc:
                    logger.error("queue_write_failed", signature=signature, error=str(exc))
            if notify and intervention.notification is not None:
                await self._notifier.notify(intervention.notification)

            self.stats.interventions[intervention.response.value] += 1
            logger.info(
                "intervention_dispatched",
                kind=issue.kind.value,
                confidence=round(issue.confidence, 3),
                response=intervention.response.value,
                signature=signature,
            )
            for callback in self._callbacks:
                try:
                    result = callback(intervention)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as exc:
                    logger.error("intervention_callback_failed", error=str(exc))

    def _remember(self, signature: str) -> None:
        self._emitted[signature] = None
        while len(self._emitted) > EMITTED_LIMIT:
            self._emitted.popitem(last=False)

    def _save_snapshot(self) -> None:
        try:
            self._snapshots.save(Snapshot(
                state=self._analyzer.state,
                log_offset=self._log_offset,
                malformed_lines=self._malformed,
                emitted=list(self._emitted),
            ))
        except OSError as exc:
            logger.error("snapshot_save_failed", path=str(self._snapshots.path), error=str(exc))

    # ── Inbox plumbing ───────────────────────────────────────────────

    async def _submit(self, item: _WorkItem) -> None:
        assert self._inbox is not None
        await self._inbox.put(item)
        await item.done

    async def _submit_batch(self, batch: LogBatch) -> None:
        await self._submit(_WorkItem(
            kind="batch", batch=batch, done=asyncio.get_running_loop().create_future(),
        ))

    async def _tick_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._tick_interval)
            await self._submit(_WorkItem(
                kind="tick", done=asyncio.get_running_loop().create_future(),
            ))

    async def _consume(self) -> None:
        assert self._inbox is not None
        while True:
            item = await self._inbox.get()
            try:
                if item.kind == "batch" and item.batch is not None:
                    await self.process_batch(item.batch)
                elif item.kind == "tick":
                    await self.process_tick(item.now)
            except Exception as exc:
                logger.error("supervision_item_failed", kind=item.kind, error=str(exc), exc_info=True)
            finally:
                if not item.done.done():
                    item.done.set_result(None)
                self._inbox.task_done()
            if item.kind == "stop":
                return
