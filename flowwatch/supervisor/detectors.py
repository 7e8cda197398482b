"""Issue detectors.

Each detector is a plain function ``(state, entry, ctx) -> list[Issue]``
registered with :func:`detector`. Detectors read the state, never write it.
``entry`` is the entry that was just applied, or None on a timer pass.
"""

from __future__ import annotations

import datetime as dt
import statistics
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from flowwatch.supervisor.models import (
    ChainStatus,
    EventKind,
    Issue,
    IssueKind,
    LogEntry,
    WorkflowState,
)
from flowwatch.supervisor.rules import DetectionRules

VELOCITY_MIN_MILESTONES = 4
EVIDENCE_LIMIT = 5

SUGGESTED_ACTIONS: dict[IssueKind, str] = {
    IssueKind.LOOP: (
        "Break out of the loop with a different approach. Work out which step "
        "keeps repeating and why it does not succeed."
    ),
    IssueKind.STUCK_PHASE: (
        "Find out why the phase is not completing: look for blocking errors, "
        "hung commands or missing dependencies."
    ),
    IssueKind.REGRESSION: (
        "Fix or revert the change that broke previously passing work before moving on."
    ),
    IssueKind.OUT_OF_ORDER: (
        "Return to the skipped phase and finish it before continuing."
    ),
    IssueKind.EXPLICIT_FAILURE: (
        "Investigate the reported error and fix its root cause, then re-run the command."
    ),
    IssueKind.AGENT_FAILURE: (
        "Review why the delegated worker failed and retry it or take a different approach."
    ),
    IssueKind.TDD_VIOLATION: (
        "Write a failing test first, then implement the code that makes it pass."
    ),
    IssueKind.CHAIN_BROKEN: (
        "Run the prerequisite command before this one so its outputs are available."
    ),
    IssueKind.SILENCE: (
        "Check whether the workflow is still running or waiting for input."
    ),
    IssueKind.MISSING_MILESTONE: (
        "Log a milestone for each unit of work so progress can be tracked."
    ),
    IssueKind.VELOCITY_DECLINE: (
        "Progress is slowing down. Check for growing complexity or a blocker."
    ),
    IssueKind.INCOMPLETE_CHAIN: (
        "Make sure the command records its outputs before it is marked complete."
    ),
    IssueKind.AGENT_SILENCE: (
        "Check that the delegated worker actually started; restart it if needed."
    ),
    IssueKind.ABRUPT_STOP: (
        "The workflow stopped after making progress. Check for a crash, timeout "
        "or interruption and resume from the last milestone."
    ),
    IssueKind.PARTIAL_COMPLETION: (
        "Resume from the stalled phase or clear the blocker holding it up."
    ),
    IssueKind.ABANDONED_AGENT: (
        "A delegated worker never reported completion. Check it for hangs or errors."
    ),
}


@dataclass(frozen=True)
class DetectionContext:
    rules: DetectionRules
    now: dt.datetime


DetectorFn = Callable[[WorkflowState, Optional[LogEntry], DetectionContext], list[Issue]]


@dataclass(frozen=True)
class RegisteredDetector:
    name: str
    kind: IssueKind
    func: DetectorFn
    on_entry: bool
    on_timer: bool


_REGISTRY: dict[str, RegisteredDetector] = {}


def detector(
    kind: IssueKind, *, on_entry: bool = True, on_timer: bool = False,
) -> Callable[[DetectorFn], DetectorFn]:
    """Register a detector for ``kind``.

    ``on_entry`` detectors run after every applied entry; ``on_timer``
    detectors run on the periodic absence check.
    """
    def decorator(func: DetectorFn) -> DetectorFn:
        _REGISTRY[func.__name__] = RegisteredDetector(
            name=func.__name__, kind=kind, func=func,
            on_entry=on_entry, on_timer=on_timer,
        )
        return func
    return decorator


def registered_detectors() -> list[RegisteredDetector]:
    return list(_REGISTRY.values())


def run_detectors(
    state: WorkflowState,
    entry: Optional[LogEntry],
    ctx: DetectionContext,
    *,
    timer: bool = False,
) -> list[Issue]:
    """Run every applicable detector and return all issues they raise."""
    issues: list[Issue] = []
    for registered in _REGISTRY.values():
        if timer and not registered.on_timer:
            continue
        if not timer and not registered.on_entry:
            continue
        issues.extend(registered.func(state, entry, ctx))
    return issues


# ── Helpers ──────────────────────────────────────────────────────────

def _issue(
    kind: IssueKind,
    confidence: float,
    description: str,
    *,
    evidence: Iterable[LogEntry] = (),
    auto_fixable: bool = False,
    context: Optional[dict] = None,
    details: Optional[dict] = None,
) -> Issue:
    return Issue(
        kind=kind,
        confidence=round(min(1.0, max(0.0, confidence)), 4),
        description=description,
        suggested_action=SUGGESTED_ACTIONS[kind],
        evidence=tuple(evidence),
        auto_fixable=auto_fixable,
        context=context or {},
        details=details or {},
    )


def _seconds(later: dt.datetime, earlier: dt.datetime) -> float:
    return (later - earlier).total_seconds()


def _recent(state: WorkflowState, command: Optional[str] = None) -> list[LogEntry]:
    entries = [e for e in state.recent_entries if command is None or e.command == command]
    return entries[-EVIDENCE_LIMIT:]


def _chain_fraction(state: WorkflowState, rules: DetectionRules) -> float:
    if not rules.command_chain:
        return 0.0
    done = sum(
        1 for cmd in rules.command_chain
        if state.chain_progress.get(cmd) == ChainStatus.COMPLETE
    )
    return done / len(rules.command_chain)


def _hard_stop_confidence(state: WorkflowState, rules: DetectionRules) -> float:
    return 0.6 + 0.3 * _chain_fraction(state, rules)


# ── Presence of a bad signal ─────────────────────────────────────────

@detector(IssueKind.LOOP)
def detect_loop(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    """Same (command, phase, event) seen N times since the last progress marker."""
    if entry is None or state.repeat_key is None:
        return []
    count = state.repeat_counts.get(state.repeat_key, 0)
    threshold = ctx.rules.loop_threshold
    if count < threshold:
        return []
    command, phase, event = state.repeat_key.split("|", 3)[:3]
    evidence = [
        e for e in state.recent_entries
        if e.command == command and e.event.value == event
    ][-count:]
    return [_issue(
        IssueKind.LOOP,
        min(0.98, 0.9 + (count - threshold) * 0.03),
        f"{event} repeated {count} times in {command}"
        f"{'/' + phase if phase else ''} without progress",
        evidence=evidence,
        auto_fixable=True,
        context={
            "command": command,
            "phase": phase or None,
            "event": event,
            "epoch": state.progress_epoch,
        },
        details={"repeat_count": count, "threshold": threshold},
    )]


@detector(IssueKind.STUCK_PHASE, on_entry=False, on_timer=True)
def detect_stuck_phase(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    if not state.phase_active or state.phase_start_time is None:
        return []
    timeout = ctx.rules.timeout_for(state.current_phase)
    elapsed = _seconds(ctx.now, state.phase_start_time)
    if elapsed <= timeout:
        return []
    overrun = min(1.0, (elapsed - timeout) / timeout) if timeout > 0 else 1.0
    return [_issue(
        IssueKind.STUCK_PHASE,
        0.7 + 0.2 * overrun,
        f"Phase {state.current_phase} of {state.current_command} has run for "
        f"{int(elapsed)}s without completing (timeout {int(timeout)}s)",
        evidence=_recent(state, state.current_command),
        auto_fixable=True,
        context={
            "command": state.current_command,
            "phase": state.current_phase,
            "since": state.phase_start_time.isoformat(),
        },
        details={"elapsed_seconds": int(elapsed), "timeout_seconds": int(timeout)},
    )]


@detector(IssueKind.REGRESSION)
def detect_regression(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    """FAILED for a scope (command or command:phase) that had already completed."""
    if entry is None or entry.event != EventKind.FAILED:
        return []
    if entry.phase_key:
        scope = f"{entry.command}:{entry.phase_key}"
        regressed = scope in state.completed_scopes
    else:
        scope = entry.command
        regressed = scope in state.completed_scopes or any(
            s.startswith(f"{scope}:") for s in state.completed_scopes
        )
    if not regressed:
        return []
    return [_issue(
        IssueKind.REGRESSION,
        0.92,
        f"{scope} failed after it had completed successfully"
        + (f": {entry.data['error']}" if entry.data.get("error") else ""),
        evidence=_recent(state, entry.command),
        auto_fixable=True,
        context={"command": entry.command, "scope": scope, "offset": entry.offset},
        details={"completed_phases": list(state.completed_phases)},
    )]


def _violates_tdd(state: WorkflowState, entry: LogEntry, rules: DetectionRules) -> bool:
    return (
        entry.phase_key == rules.implementation_phase
        and rules.test_phase in rules.phases_for(entry.command)
        and rules.test_phase not in state.seen_phases
    )


@detector(IssueKind.OUT_OF_ORDER)
def detect_out_of_order(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    if entry is None or entry.event != EventKind.PHASE_START or not entry.phase_key:
        return []
    order = ctx.rules.phases_for(entry.command)
    if entry.phase_key not in order:
        return []
    index = order.index(entry.phase_key)
    if index == 0:
        return []
    predecessor = order[index - 1]
    if predecessor in state.cycle_phases or _violates_tdd(state, entry, ctx.rules):
        return []
    return [_issue(
        IssueKind.OUT_OF_ORDER,
        0.9,
        f"Phase {entry.phase} of {entry.command} started before {predecessor} completed "
        f"(expected order: {' -> '.join(order)})",
        evidence=_recent(state, entry.command),
        context={
            "command": entry.command,
            "phase": entry.phase_key,
            "missing": predecessor,
            "offset": entry.offset,
        },
        details={"completed_in_cycle": list(state.cycle_phases)},
    )]


@detector(IssueKind.EXPLICIT_FAILURE)
def detect_explicit_failure(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    if entry is None or entry.event != EventKind.FAILED:
        return []
    error = entry.data.get("error") or "unknown error"
    return [_issue(
        IssueKind.EXPLICIT_FAILURE,
        0.95,
        f"Command {entry.command} failed: {error}",
        evidence=[entry],
        auto_fixable=True,
        context={"command": entry.command, "phase": entry.phase_key, "offset": entry.offset},
        details={"error": error},
    )]


@detector(IssueKind.AGENT_FAILURE)
def detect_agent_failure(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    if entry is None or entry.event != EventKind.AGENT_COMPLETE:
        return []
    if str(entry.data.get("status", "")).lower() != "failed":
        return []
    agent_id = entry.data.get("agent_id") or (entry.worker.id if entry.worker else None)
    agent_type = entry.data.get("agent_type") or (entry.worker.type if entry.worker else None)
    error = entry.data.get("error") or "unknown error"
    return [_issue(
        IssueKind.AGENT_FAILURE,
        0.92,
        f"Delegated worker {agent_type or agent_id} failed: {error}",
        evidence=[entry],
        auto_fixable=True,
        context={"command": entry.command, "agent_id": agent_id, "offset": entry.offset},
        details={"agent_type": agent_type, "error": error},
    )]


@detector(IssueKind.TDD_VIOLATION)
def detect_tdd_violation(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    if entry is None or entry.event != EventKind.PHASE_START or not entry.phase_key:
        return []
    if not _violates_tdd(state, entry, ctx.rules):
        return []
    return [_issue(
        IssueKind.TDD_VIOLATION,
        0.95,
        f"{ctx.rules.implementation_phase} phase started in {entry.command} "
        f"without a {ctx.rules.test_phase} phase first",
        evidence=_recent(state, entry.command),
        context={"command": entry.command, "offset": entry.offset},
        details={"seen_phases": list(state.seen_phases)},
    )]


@detector(IssueKind.CHAIN_BROKEN)
def detect_chain_broken(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    """A command started without any prerequisite complete, or completed without starting."""
    if entry is None:
        return []
    if entry.event == EventKind.START:
        prerequisites = ctx.rules.chain_prerequisites.get(entry.command)
        if not prerequisites:
            return []
        if any(state.chain_progress.get(p) == ChainStatus.COMPLETE for p in prerequisites):
            return []
        return [_issue(
            IssueKind.CHAIN_BROKEN,
            0.8,
            f"Command {entry.command} started without completing "
            f"{' or '.join(prerequisites)}",
            evidence=[entry],
            context={
                "command": entry.command,
                "reason": "missing-prerequisite",
                "offset": entry.offset,
            },
            details={"expected_prerequisites": list(prerequisites)},
        )]
    if entry.event == EventKind.COMPLETE and entry.command not in state.started_commands:
        return [_issue(
            IssueKind.CHAIN_BROKEN,
            0.75,
            f"Command {entry.command} completed but was never started",
            evidence=_recent(state),
            context={
                "command": entry.command,
                "reason": "complete-without-start",
                "offset": entry.offset,
            },
            details={"chain_position": state.chain_position},
        )]
    return []


# ── Absence of a good signal ─────────────────────────────────────────

@detector(IssueKind.SILENCE, on_entry=False, on_timer=True)
def detect_silence(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    if not state.command_active or state.last_activity_time is None:
        return []
    limit = ctx.rules.silence_seconds
    elapsed = _seconds(ctx.now, state.last_activity_time)
    if elapsed <= limit:
        return []
    return [_issue(
        IssueKind.SILENCE,
        min(0.65, 0.5 + 0.05 * (elapsed / limit - 1)),
        f"No activity for {int(elapsed)}s while {state.current_command} is active",
        evidence=_recent(state, state.current_command),
        context={
            "command": state.current_command,
            "phase": state.current_phase,
            "since": state.last_activity_time.isoformat(),
        },
        details={"silence_seconds": int(elapsed)},
    )]


@detector(IssueKind.MISSING_MILESTONE, on_entry=True, on_timer=True)
def detect_missing_milestone(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    rules = ctx.rules
    if entry is not None:
        if entry.event != EventKind.PHASE_COMPLETE:
            return []
        phase = entry.phase_key or (state.completed_phases[-1] if state.completed_phases else None)
        expected = rules.expected_milestones.get(phase or "", 0)
        actual = state.phase_milestone_counts.get(phase or "", 0)
        if expected <= 0 or actual >= expected:
            return []
        return [_issue(
            IssueKind.MISSING_MILESTONE,
            0.6,
            f"Phase {phase} of {entry.command} completed with {actual} milestones, "
            f"expected at least {expected}",
            evidence=_recent(state, entry.command),
            context={"command": entry.command, "phase": phase, "offset": entry.offset},
            details={"actual": actual, "expected": expected},
        )]

    if not state.phase_active or state.phase_start_time is None:
        return []
    phase = state.current_phase
    expected = rules.expected_milestones.get(phase or "", 0)
    if expected <= 0 or state.phase_milestone_counts.get(phase or "", 0) > 0:
        return []
    elapsed = _seconds(ctx.now, state.phase_start_time)
    if elapsed <= rules.milestone_interval_seconds:
        return []
    return [_issue(
        IssueKind.MISSING_MILESTONE,
        0.55,
        f"No milestone logged in phase {phase} of {state.current_command} for {int(elapsed)}s",
        evidence=_recent(state, state.current_command),
        context={
            "command": state.current_command,
            "phase": phase,
            "since": state.phase_start_time.isoformat(),
        },
        details={"elapsed_seconds": int(elapsed), "expected": expected},
    )]


@detector(IssueKind.VELOCITY_DECLINE, on_entry=True, on_timer=True)
def detect_velocity_decline(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    """Latest gap between milestones well above the earlier average."""
    if entry is not None and entry.event != EventKind.MILESTONE:
        return []
    if not state.command_active:
        return []
    stamps = state.milestone_timestamps
    if len(stamps) < VELOCITY_MIN_MILESTONES:
        return []
    gaps = [_seconds(b, a) for a, b in zip(stamps, stamps[1:])]
    baseline = statistics.fmean(gaps[:-1])
    if baseline <= 0:
        return []
    current = max(gaps[-1], _seconds(ctx.now, stamps[-1]))
    ratio = current / baseline
    if ratio <= ctx.rules.velocity_factor:
        return []
    return [_issue(
        IssueKind.VELOCITY_DECLINE,
        min(0.6, 0.4 + 0.1 * (ratio - ctx.rules.velocity_factor)),
        f"Milestones in {state.current_command} are slowing down: "
        f"{int(current)}s since the last one against a {int(baseline)}s average",
        evidence=_recent(state, state.current_command),
        context={"command": state.current_command, "since": stamps[-1].isoformat()},
        details={"gaps_seconds": [int(g) for g in gaps], "ratio": round(ratio, 2)},
    )]


@detector(IssueKind.INCOMPLETE_CHAIN)
def detect_incomplete_chain(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    """A command whose outputs feed the next link completed without any."""
    if entry is None or entry.event != EventKind.COMPLETE:
        return []
    if entry.command not in ctx.rules.output_commands:
        return []
    outputs = entry.data.get("outputs")
    if isinstance(outputs, list) and outputs:
        return []
    return [_issue(
        IssueKind.INCOMPLETE_CHAIN,
        0.75,
        f"Command {entry.command} completed without recording any outputs",
        evidence=[entry],
        context={"command": entry.command, "offset": entry.offset},
    )]


@detector(IssueKind.AGENT_SILENCE, on_entry=False, on_timer=True)
def detect_agent_silence(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    issues = []
    for worker in state.active_workers.values():
        if worker.started:
            continue
        elapsed = _seconds(ctx.now, worker.spawn_time)
        if elapsed <= ctx.rules.agent_silence_seconds:
            continue
        issues.append(_issue(
            IssueKind.AGENT_SILENCE,
            0.6,
            f"Delegated worker {worker.type} ({worker.id}) was spawned {int(elapsed)}s ago "
            "and has not logged anything",
            evidence=_recent(state, worker.parent),
            context={"agent_id": worker.id, "command": worker.parent},
            details={"agent_type": worker.type, "silence_seconds": int(elapsed)},
        ))
    return issues


# ── Positive signals ceased ──────────────────────────────────────────

@detector(IssueKind.ABRUPT_STOP, on_entry=False, on_timer=True)
def detect_abrupt_stop(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    if not state.command_active or state.last_activity_time is None:
        return []
    if not state.milestone_timestamps:
        return []
    elapsed = _seconds(ctx.now, state.last_activity_time)
    if elapsed <= ctx.rules.abrupt_stop_seconds:
        return []
    return [_issue(
        IssueKind.ABRUPT_STOP,
        _hard_stop_confidence(state, ctx.rules),
        f"{state.current_command} was making progress but has been idle for {int(elapsed)}s",
        evidence=_recent(state, state.current_command),
        auto_fixable=True,
        context={
            "command": state.current_command,
            "since": state.last_activity_time.isoformat(),
        },
        details={"milestones_before_stop": len(state.milestone_timestamps)},
    )]


@detector(IssueKind.PARTIAL_COMPLETION, on_entry=False, on_timer=True)
def detect_partial_completion(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    if not state.command_active or not state.completed_phases:
        return []
    if not state.phase_active or state.phase_start_time is None:
        return []
    elapsed = _seconds(ctx.now, state.phase_start_time)
    if elapsed <= ctx.rules.timeout_for(state.current_phase):
        return []
    return [_issue(
        IssueKind.PARTIAL_COMPLETION,
        _hard_stop_confidence(state, ctx.rules),
        f"{state.current_command} is partially complete "
        f"({', '.join(state.completed_phases)} done) but {state.current_phase} has stalled",
        evidence=_recent(state, state.current_command),
        auto_fixable=True,
        context={
            "command": state.current_command,
            "phase": state.current_phase,
            "since": state.phase_start_time.isoformat(),
        },
        details={"completed_phases": list(state.completed_phases)},
    )]


@detector(IssueKind.ABANDONED_AGENT, on_entry=False, on_timer=True)
def detect_abandoned_agent(state: WorkflowState, entry: Optional[LogEntry], ctx: DetectionContext) -> list[Issue]:
    issues = []
    for worker in state.active_workers.values():
        if not worker.started:
            continue
        elapsed = _seconds(ctx.now, worker.spawn_time)
        if elapsed <= ctx.rules.agent_abandon_seconds:
            continue
        issues.append(_issue(
            IssueKind.ABANDONED_AGENT,
            _hard_stop_confidence(state, ctx.rules),
            f"Delegated worker {worker.type} ({worker.id}) started but has not completed "
            f"after {int(elapsed)}s",
            evidence=_recent(state, worker.parent),
            auto_fixable=True,
            context={"agent_id": worker.id, "command": worker.parent},
            details={"agent_type": worker.type, "running_seconds": int(elapsed)},
        ))
    return issues
