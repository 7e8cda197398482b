"""Workflow analyzer: folds log entries into WorkflowState and runs detectors.

The analyzer is the only writer of WorkflowState. Entries must be applied in
file order, one at a time; the supervision loop guarantees this.
"""

from __future__ import annotations

import datetime as dt
import json
from typing import Any, Iterable, Optional

from flowwatch.logging_config import get_logger
from flowwatch.supervisor.detectors import DetectionContext, run_detectors
from flowwatch.supervisor.models import (
    ActiveWorker,
    ChainStatus,
    EventKind,
    HealthStatus,
    Issue,
    IssueKind,
    LogEntry,
    WorkflowState,
    utcnow,
)
from flowwatch.supervisor.rules import DetectionRules

logger = get_logger(__name__)

MILESTONE_HISTORY_LIMIT = 100

CRITICAL_KINDS = frozenset({
    IssueKind.EXPLICIT_FAILURE,
    IssueKind.AGENT_FAILURE,
    IssueKind.REGRESSION,
    IssueKind.TDD_VIOLATION,
    IssueKind.LOOP,
})


def assess_health(
    issues: Iterable[Issue],
    critical_threshold: float = 0.9,
    warning_threshold: float = 0.7,
) -> HealthStatus:
    """Collapse a pass's issues into a single health status."""
    issues = list(issues)
    if any(i.kind in CRITICAL_KINDS and i.confidence > critical_threshold for i in issues):
        return HealthStatus.CRITICAL
    if any(i.confidence >= warning_threshold for i in issues):
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def _milestone_signature(entry: LogEntry) -> str:
    return json.dumps(
        {"phase": entry.phase_key, "data": entry.data}, sort_keys=True, default=str,
    )


def _worker_id(entry: LogEntry) -> Optional[str]:
    agent_id = entry.data.get("agent_id")
    if agent_id:
        return str(agent_id)
    return entry.worker.id if entry.worker else None


class WorkflowAnalyzer:
    """State machine over the entry stream plus the detector catalogue."""

    def __init__(
        self,
        rules: Optional[DetectionRules] = None,
        state: Optional[WorkflowState] = None,
        *,
        critical_threshold: float = 0.9,
        warning_threshold: float = 0.7,
    ) -> None:
        self._rules = rules or DetectionRules()
        self._state = state or WorkflowState()
        self._critical_threshold = critical_threshold
        self._warning_threshold = warning_threshold
        self._last_issues: list[Issue] = []

    @property
    def rules(self) -> DetectionRules:
        return self._rules

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def last_issues(self) -> list[Issue]:
        return list(self._last_issues)

    def reset(self, state: Optional[WorkflowState] = None) -> None:
        self._state = state or WorkflowState()
        self._last_issues = []

    # ── Public API ───────────────────────────────────────────────────

    def process(self, entry: LogEntry) -> list[Issue]:
        """Apply one entry and return every issue the entry detectors raise.

        Entry detectors are evaluated at the entry's own timestamp, so a
        replay of the same log yields the same issues as the live stream.
        """
        self.apply(entry)
        issues = run_detectors(
            self._state, entry, DetectionContext(rules=self._rules, now=entry.timestamp),
        )
        self._last_issues = issues
        return issues

    def process_batch(self, entries: Iterable[LogEntry]) -> list[Issue]:
        issues: list[Issue] = []
        for entry in entries:
            issues.extend(self.process(entry))
        self._last_issues = issues
        return issues

    def evaluate_timer(self, now: Optional[dt.datetime] = None) -> list[Issue]:
        """Run the absence-based detectors against the current state."""
        issues = run_detectors(
            self._state,
            None,
            DetectionContext(rules=self._rules, now=now or utcnow()),
            timer=True,
        )
        self._last_issues = issues
        return issues

    def rebuild(self, entries: Iterable[LogEntry]) -> WorkflowState:
        """Reset and replay ``entries`` without running detectors."""
        self.reset()
        for entry in entries:
            self.apply(entry)
        return self._state

    def health(self, issues: Optional[Iterable[Issue]] = None) -> HealthStatus:
        return assess_health(
            self._last_issues if issues is None else issues,
            self._critical_threshold,
            self._warning_threshold,
        )

    def summary(self) -> dict[str, Any]:
        """Snapshot of the interesting parts of the state, for status output."""
        s = self._state
        return {
            "health": self.health().value,
            "current_command": s.current_command,
            "current_phase": s.current_phase,
            "phase_start_time": s.phase_start_time.isoformat() if s.phase_start_time else None,
            "last_activity_time": s.last_activity_time.isoformat() if s.last_activity_time else None,
            "command_closed": s.command_closed,
            "milestones": len(s.milestone_timestamps),
            "active_workers": sorted(s.active_workers),
            "chain_position": s.chain_position,
            "chain_progress": {
                cmd: s.chain_progress.get(cmd, ChainStatus.PENDING).value
                for cmd in self._rules.command_chain
            },
            "entries_seen": s.entries_seen,
        }

    # ── State machine ────────────────────────────────────────────────

    def apply(self, entry: LogEntry) -> None:
        """Fold one entry into the state."""
        s = self._state
        s.entries_seen += 1
        s.last_activity_time = entry.timestamp
        self._track_repetition(entry)

        if entry.event == EventKind.START:
            self._on_start(entry)
        elif entry.event == EventKind.PHASE_START:
            self._on_phase_start(entry)
        elif entry.event == EventKind.PHASE_COMPLETE:
            self._on_phase_complete(entry)
        elif entry.event == EventKind.MILESTONE:
            self._on_milestone(entry)
        elif entry.event == EventKind.AGENT_SPAWN:
            self._on_agent_spawn(entry)
        elif entry.event == EventKind.AGENT_COMPLETE:
            self._on_agent_complete(entry)
        elif entry.event == EventKind.COMPLETE:
            self._on_close(entry, ChainStatus.COMPLETE)
        elif entry.event == EventKind.FAILED:
            self._on_close(entry, ChainStatus.FAILED)

        if entry.worker and entry.event != EventKind.AGENT_SPAWN:
            worker = s.active_workers.get(entry.worker.id)
            if worker is not None:
                worker.started = True
        s.remember(entry)

    def _is_new_run(self, entry: LogEntry) -> bool:
        s = self._state
        return entry.command != s.current_command or s.command_closed

    def _is_progress(self, entry: LogEntry) -> bool:
        s = self._state
        if entry.event in (EventKind.PHASE_COMPLETE, EventKind.COMPLETE):
            return True
        if entry.event == EventKind.START:
            return self._is_new_run(entry)
        if entry.event == EventKind.MILESTONE:
            return _milestone_signature(entry) != s.last_milestone_signature
        if entry.event == EventKind.AGENT_COMPLETE:
            return str(entry.data.get("status", "")).lower() != "failed"
        return False

    def _track_repetition(self, entry: LogEntry) -> None:
        s = self._state
        if self._is_progress(entry):
            # The progress entry opens the new run and counts as its first occurrence
            s.repeat_counts.clear()
            s.progress_epoch += 1
        # Parallel spawns of different worker types are not repetition
        extra = ""
        if entry.event == EventKind.AGENT_SPAWN:
            extra = str(entry.data.get("agent_type") or (entry.worker.type if entry.worker else ""))
        key = "|".join((
            entry.command,
            entry.phase_key or s.current_phase or "",
            entry.event.value,
            extra,
        ))
        s.repeat_counts[key] = s.repeat_counts.get(key, 0) + 1
        s.repeat_key = key

    def _begin_command(self, entry: LogEntry) -> None:
        s = self._state
        s.current_command = entry.command
        s.command_closed = False
        s.current_phase = None
        s.phase_start_time = None
        s.seen_phases.clear()
        s.cycle_phases.clear()
        s.completed_phases.clear()
        s.phase_milestone_counts.clear()
        s.milestone_timestamps.clear()
        s.last_milestone_signature = None
        index = self._rules.chain_index(entry.command)
        if index > s.chain_position:
            s.chain_position = index
        if index >= 0:
            s.chain_progress[entry.command] = ChainStatus.IN_PROGRESS

    def _on_start(self, entry: LogEntry) -> None:
        if self._is_new_run(entry):
            self._begin_command(entry)
        if entry.command not in self._state.started_commands:
            self._state.started_commands.append(entry.command)

    def _on_phase_start(self, entry: LogEntry) -> None:
        s = self._state
        if self._is_new_run(entry):
            self._begin_command(entry)
        phase = entry.phase_key
        if not phase:
            return
        if phase != s.current_phase:
            s.current_phase = phase
            s.phase_start_time = entry.timestamp
            s.phase_milestone_counts[phase] = 0
            order = self._rules.phases_for(entry.command)
            if order and phase == order[0]:
                s.cycle_phases.clear()
        if phase not in s.seen_phases:
            s.seen_phases.append(phase)

    def _on_phase_complete(self, entry: LogEntry) -> None:
        s = self._state
        phase = entry.phase_key or s.current_phase
        if phase:
            if phase not in s.cycle_phases:
                s.cycle_phases.append(phase)
            if phase not in s.completed_phases:
                s.completed_phases.append(phase)
            scope = f"{entry.command}:{phase}"
            if scope not in s.completed_scopes:
                s.completed_scopes.append(scope)
        if phase == s.current_phase:
            s.current_phase = None
            s.phase_start_time = None

    def _on_milestone(self, entry: LogEntry) -> None:
        s = self._state
        if s.current_command is None:
            self._begin_command(entry)
        stamp = entry.timestamp
        if s.milestone_timestamps and stamp < s.milestone_timestamps[-1]:
            # Clock skew: keep the history non-decreasing
            stamp = s.milestone_timestamps[-1]
        s.milestone_timestamps.append(stamp)
        if len(s.milestone_timestamps) > MILESTONE_HISTORY_LIMIT:
            del s.milestone_timestamps[0]
        phase = entry.phase_key or s.current_phase
        if phase:
            s.phase_milestone_counts[phase] = s.phase_milestone_counts.get(phase, 0) + 1
        s.last_milestone_signature = _milestone_signature(entry)

    def _on_agent_spawn(self, entry: LogEntry) -> None:
        worker_id = _worker_id(entry)
        if not worker_id:
            logger.debug("agent_spawn_without_id", command=entry.command, offset=entry.offset)
            return
        worker_type = entry.data.get("agent_type") or (entry.worker.type if entry.worker else None)
        parent = entry.worker.parent_command if entry.worker and entry.worker.parent_command else entry.command
        self._state.active_workers[worker_id] = ActiveWorker(
            id=worker_id,
            type=str(worker_type or "unknown"),
            parent=parent,
            spawn_time=entry.timestamp,
        )

    def _on_agent_complete(self, entry: LogEntry) -> None:
        worker_id = _worker_id(entry)
        if worker_id:
            self._state.active_workers.pop(worker_id, None)

    def _on_close(self, entry: LogEntry, status: ChainStatus) -> None:
        s = self._state
        if entry.command in self._rules.command_chain:
            s.chain_progress[entry.command] = status
        if status == ChainStatus.COMPLETE and entry.command not in s.completed_scopes:
            s.completed_scopes.append(entry.command)
        s.current_command = entry.command
        s.command_closed = True
        s.current_phase = None
        s.phase_start_time = None
