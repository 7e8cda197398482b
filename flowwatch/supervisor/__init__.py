"""Workflow supervision engine.

Components:
- LogReader: tails the event log, parses entries, answers point queries
- WorkflowAnalyzer: folds entries into WorkflowState and runs the detectors
- InterventionGenerator: maps issues to auto-remediate / suggest / notify
- TaskQueue: durable, deduplicated, expiring remediation queue
- SupervisorNotifier: verbosity-filtered notification fan-out
- SupervisionLoop: single-consumer orchestrator with crash recovery
"""

from flowwatch.supervisor.analyzer import WorkflowAnalyzer
from flowwatch.supervisor.engine import SupervisionLoop
from flowwatch.supervisor.interventions import InterventionGenerator, ResponseClass
from flowwatch.supervisor.log_reader import LogReader
from flowwatch.supervisor.notifier import SupervisorNotifier
from flowwatch.supervisor.task_queue import TaskQueue

__all__ = [
    "LogReader",
    "WorkflowAnalyzer",
    "InterventionGenerator",
    "ResponseClass",
    "TaskQueue",
    "SupervisorNotifier",
    "SupervisionLoop",
]
