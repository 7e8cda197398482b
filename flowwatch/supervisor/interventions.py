"""Intervention generator: turns detected issues into queue tasks and notifications.

Response class by confidence:
- above the auto threshold: auto-remediate (task flagged for auto execution,
  informational notification)
- between the suggest and auto thresholds: notify + suggest (task for
  review, notification carrying the suggested action)
- below the suggest threshold: notify only (no task)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Optional

from flowwatch.supervisor.models import Issue, IssueKind, drift_signature
from flowwatch.supervisor.notifier import Notification, NotificationPriority
from flowwatch.supervisor.task_queue import QueueTask, TaskPriority

if TYPE_CHECKING:
    from flowwatch.config import Settings

CRITICAL_CONFIDENCE = 0.95
EXCERPT_LIMIT = 5


class ResponseClass(StrEnum):
    AUTO_REMEDIATE = "auto_remediate"
    NOTIFY_SUGGEST = "notify_suggest"
    NOTIFY_ONLY = "notify_only"


ISSUE_TITLES: dict[IssueKind, str] = {
    IssueKind.LOOP: "Loop Detected",
    IssueKind.STUCK_PHASE: "Phase Stuck",
    IssueKind.REGRESSION: "Regression",
    IssueKind.OUT_OF_ORDER: "Out of Order",
    IssueKind.EXPLICIT_FAILURE: "Failure",
    IssueKind.AGENT_FAILURE: "Worker Failed",
    IssueKind.TDD_VIOLATION: "TDD Violation",
    IssueKind.CHAIN_BROKEN: "Chain Broken",
    IssueKind.SILENCE: "Workflow Silence",
    IssueKind.MISSING_MILESTONE: "Missing Milestone",
    IssueKind.VELOCITY_DECLINE: "Declining Velocity",
    IssueKind.INCOMPLETE_CHAIN: "Incomplete Outputs",
    IssueKind.AGENT_SILENCE: "Worker Silence",
    IssueKind.ABRUPT_STOP: "Abrupt Stop",
    IssueKind.PARTIAL_COMPLETION: "Partial Completion",
    IssueKind.ABANDONED_AGENT: "Abandoned Worker",
}

HANDLERS: dict[IssueKind, str] = {
    IssueKind.LOOP: "debugger",
    IssueKind.STUCK_PHASE: "debugger",
    IssueKind.EXPLICIT_FAILURE: "debugger",
    IssueKind.AGENT_FAILURE: "debugger",
    IssueKind.SILENCE: "debugger",
    IssueKind.AGENT_SILENCE: "debugger",
    IssueKind.ABRUPT_STOP: "debugger",
    IssueKind.PARTIAL_COMPLETION: "debugger",
    IssueKind.ABANDONED_AGENT: "debugger",
    IssueKind.REGRESSION: "test-engineer",
    IssueKind.OUT_OF_ORDER: "test-engineer",
    IssueKind.TDD_VIOLATION: "test-engineer",
    IssueKind.MISSING_MILESTONE: "test-engineer",
    IssueKind.CHAIN_BROKEN: "code-reviewer",
    IssueKind.INCOMPLETE_CHAIN: "code-reviewer",
    IssueKind.VELOCITY_DECLINE: "performance-engineer",
}

# Anomaly types shared with the other queue producers
ANOMALY_TYPES: dict[IssueKind, str] = {
    IssueKind.LOOP: "agent_loop",
    IssueKind.STUCK_PHASE: "agent_stuck",
    IssueKind.SILENCE: "agent_stuck",
    IssueKind.AGENT_SILENCE: "agent_stuck",
    IssueKind.ABRUPT_STOP: "agent_stuck",
    IssueKind.PARTIAL_COMPLETION: "agent_stuck",
    IssueKind.ABANDONED_AGENT: "agent_stuck",
    IssueKind.EXPLICIT_FAILURE: "agent_error",
    IssueKind.AGENT_FAILURE: "agent_error",
    IssueKind.REGRESSION: "agent_error",
    IssueKind.OUT_OF_ORDER: "unusual_pattern",
    IssueKind.TDD_VIOLATION: "unusual_pattern",
    IssueKind.CHAIN_BROKEN: "unusual_pattern",
    IssueKind.INCOMPLETE_CHAIN: "unusual_pattern",
    IssueKind.MISSING_MILESTONE: "unusual_pattern",
    IssueKind.VELOCITY_DECLINE: "recommended_investigation",
}

ALWAYS_CRITICAL = frozenset({IssueKind.EXPLICIT_FAILURE, IssueKind.REGRESSION})


@dataclass(frozen=True)
class Intervention:
    response: ResponseClass
    issue: Issue
    signature: str
    task: Optional[QueueTask] = None
    notification: Optional[Notification] = None


def _format_key(key: str) -> str:
    return " ".join(word.capitalize() for word in key.split("_"))


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


class InterventionGenerator:
    """Maps an Issue to a response class plus its task and notification."""

    def __init__(
        self,
        auto_threshold: float = 0.9,
        suggest_threshold: float = 0.7,
        source: str = "log-monitor",
    ) -> None:
        if suggest_threshold > auto_threshold:
            raise ValueError("suggest_threshold cannot exceed auto_threshold")
        self._auto_threshold = auto_threshold
        self._suggest_threshold = suggest_threshold
        self._source = source

    @classmethod
    def from_settings(cls, settings: "Settings") -> "InterventionGenerator":
        return cls(
            auto_threshold=settings.auto_remediate_threshold,
            suggest_threshold=settings.notify_suggest_threshold,
            source=settings.source,
        )

    @property
    def source(self) -> str:
        return self._source

    def classify(self, issue: Issue) -> ResponseClass:
        """Pick the response class from confidence alone.

        Whether the queued task may run unattended is decided separately
        from ``issue.auto_fixable`` (see ``QueueTask.auto_execute``).
        """
        if issue.confidence > self._auto_threshold:
            return ResponseClass.AUTO_REMEDIATE
        if issue.confidence >= self._suggest_threshold:
            return ResponseClass.NOTIFY_SUGGEST
        return ResponseClass.NOTIFY_ONLY

    def anomaly_type(self, issue: Issue) -> str:
        return ANOMALY_TYPES.get(issue.kind, "recommended_investigation")

    def handler_for(self, issue: Issue) -> str:
        return HANDLERS.get(issue.kind, "debugger")

    def signature_for(self, issue: Issue) -> str:
        return drift_signature(self._source, self.anomaly_type(issue), issue.salient_context)

    def generate(self, issue: Issue) -> Intervention:
        response = self.classify(issue)
        signature = self.signature_for(issue)
        task = None
        if response != ResponseClass.NOTIFY_ONLY:
            task = self._build_task(issue, response, signature)
        return Intervention(
            response=response,
            issue=issue,
            signature=signature,
            task=task,
            notification=self._build_notification(issue, response),
        )

    # ── Builders ─────────────────────────────────────────────────────

    def _task_priority(self, issue: Issue, response: ResponseClass) -> TaskPriority:
        if issue.confidence >= CRITICAL_CONFIDENCE:
            return TaskPriority.CRITICAL
        if response == ResponseClass.AUTO_REMEDIATE:
            return TaskPriority.HIGH
        return TaskPriority.MEDIUM

    def _build_task(self, issue: Issue, response: ResponseClass, signature: str) -> QueueTask:
        return QueueTask(
            prompt=self.build_prompt(issue),
            anomaly_type=self.anomaly_type(issue),
            source=self._source,
            priority=self._task_priority(issue, response),
            suggested_agent=self.handler_for(issue),
            context={
                **issue.context,
                "issue_kind": issue.kind.value,
                "confidence": round(issue.confidence, 3),
                "response": response.value,
            },
            signature=signature,
            auto_execute=response == ResponseClass.AUTO_REMEDIATE and issue.auto_fixable,
        )

    def _build_notification(self, issue: Issue, response: ResponseClass) -> Notification:
        if issue.kind in ALWAYS_CRITICAL:
            priority = NotificationPriority.CRITICAL
        elif response == ResponseClass.NOTIFY_SUGGEST:
            priority = NotificationPriority.HIGH
        else:
            priority = NotificationPriority.LOW
        title = f"Workflow: {ISSUE_TITLES.get(issue.kind, issue.kind.value)}"
        if response == ResponseClass.AUTO_REMEDIATE:
            message = f"{issue.description} (queued for automatic remediation)"
        else:
            message = issue.description
        return Notification(
            title=title,
            message=message,
            priority=priority,
            issue_kind=issue.kind.value,
            suggested_action=issue.suggested_action if response == ResponseClass.NOTIFY_SUGGEST else None,
        )

    def build_prompt(self, issue: Issue) -> str:
        """Markdown prompt for an autonomous worker: kind, evidence, action."""
        sections = [f"## Workflow Issue: {ISSUE_TITLES.get(issue.kind, issue.kind.value)}\n"]
        sections.append(f"### Issue Description\n{issue.description}\n")

        sections.append("### Evidence\n")
        sections.append(f"- **Issue Kind**: {issue.kind.value}")
        for key, value in {**issue.context, **issue.details}.items():
            if value is None:
                continue
            sections.append(f"- **{_format_key(key)}**: {_format_value(value)}")
        excerpts = issue.evidence[-EXCERPT_LIMIT:]
        if excerpts:
            sections.append("\nLog excerpts:\n```")
            sections.extend(e.to_json() for e in excerpts)
            sections.append("```")
        sections.append("")

        sections.append(f"### Suggested Action\n{issue.suggested_action}\n")
        sections.append(f"### Confidence\n{issue.confidence * 100:.0f}%\n")
        return "\n".join(sections)
