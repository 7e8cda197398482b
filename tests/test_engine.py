"""Tests for the supervision loop orchestrator."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from flowwatch.supervisor.analyzer import WorkflowAnalyzer
from flowwatch.supervisor.engine import SupervisionLoop
from flowwatch.supervisor.interventions import InterventionGenerator, ResponseClass
from flowwatch.supervisor.log_reader import LogReader
from flowwatch.supervisor.models import IssueKind
from flowwatch.supervisor.notifier import SupervisorNotifier
from flowwatch.supervisor.persistence import SnapshotStore
from flowwatch.supervisor.task_queue import TaskStatus, TaskQueue


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=SupervisorNotifier)


@pytest.fixture
def make_engine(settings, notifier):
    """Factory for loops over the temp workspace with a mocked notifier."""

    def _make(replay_notify: bool = False) -> SupervisionLoop:
        settings.ensure_workspace()
        return SupervisionLoop(
            reader=LogReader(settings.log_path, settings.offset_path, poll_interval=0.01),
            analyzer=WorkflowAnalyzer(),
            generator=InterventionGenerator(),
            queue=TaskQueue(settings.queue_path, settings.archive_path),
            notifier=notifier,
            snapshots=SnapshotStore(settings.state_path),
            tick_interval=3600,
            replay_notify=replay_notify,
        )

    return _make


@pytest.fixture
def failing_build(settings, write_log, make_record) -> Path:
    """A closed build run: missing prerequisite, red loop, then FAILED."""
    write_log(
        settings.log_path,
        make_record("START", "build", seconds=0),
        make_record("PHASE_START", "build", phase="red", seconds=1),
        make_record("PHASE_START", "build", phase="red", seconds=2),
        make_record("PHASE_START", "build", phase="red", seconds=3),
        make_record("FAILED", "build", phase="red", data={"error": "tests never compile"}, seconds=4),
    )
    return settings.log_path


async def _consume_log(engine: SupervisionLoop) -> list:
    batch = engine.reader.read_batch()
    issues = await engine.process_batch(batch)
    engine.reader.commit(batch)
    return issues


# ── End-to-end scenarios ─────────────────────────────────────────────

class TestScenarios:
    @pytest.mark.asyncio
    async def test_red_loop_queues_one_loop_task(self, make_engine, settings, write_log, make_record) -> None:
        write_log(
            settings.log_path,
            make_record("START", "build", seconds=0),
            *[make_record("PHASE_START", "build", phase="red", seconds=i) for i in (1, 2, 3)],
        )
        engine = make_engine()
        issues = await _consume_log(engine)

        loops = [i for i in issues if i.kind == IssueKind.LOOP]
        assert len(loops) == 1
        assert loops[0].confidence >= 0.9
        loop_tasks = [t for t in engine.queue.get_tasks() if t.anomaly_type == "agent_loop"]
        assert len(loop_tasks) == 1
        assert loop_tasks[0].context["phase"] == "red"
        assert loop_tasks[0].context["response"] in (
            ResponseClass.AUTO_REMEDIATE.value, ResponseClass.NOTIFY_SUGGEST.value,
        )
        assert "red" in loop_tasks[0].prompt

    @pytest.mark.asyncio
    async def test_continued_loop_does_not_duplicate(self, make_engine, settings, write_log, make_record) -> None:
        write_log(
            settings.log_path,
            make_record("START", "build", seconds=0),
            *[make_record("PHASE_START", "build", phase="red", seconds=i) for i in range(1, 8)],
        )
        engine = make_engine()
        await _consume_log(engine)
        loop_tasks = [t for t in engine.queue.get_tasks() if t.anomaly_type == "agent_loop"]
        assert len(loop_tasks) == 1
        assert loop_tasks[0].occurrences == 1

    @pytest.mark.asyncio
    async def test_complete_without_start_breaks_chain(self, make_engine, settings, write_log, make_record) -> None:
        write_log(
            settings.log_path,
            make_record("COMPLETE", "plan", data={"outputs": ["plan.md"]}, seconds=0),
            make_record("COMPLETE", "build", data={"outputs": ["src/"]}, seconds=5),
        )
        engine = make_engine()
        issues = await _consume_log(engine)

        broken = [i for i in issues if i.kind == IssueKind.CHAIN_BROKEN]
        assert {i.context["command"] for i in broken} == {"plan", "build"}
        assert all(0.7 <= i.confidence <= 0.9 for i in broken)
        chain_tasks = [t for t in engine.queue.get_tasks() if t.context.get("issue_kind") == "chain-broken"]
        assert len(chain_tasks) == 2
        assert all(t.suggested_agent == "code-reviewer" for t in chain_tasks)

    @pytest.mark.asyncio
    async def test_notify_only_issues_create_no_task(self, make_engine, settings, write_log, make_record, notifier) -> None:
        write_log(
            settings.log_path,
            make_record("START", "build", seconds=0),
            make_record("PHASE_START", "build", phase="red", seconds=1),
            make_record("PHASE_COMPLETE", "build", phase="red", seconds=2),
        )
        engine = make_engine()
        issues = await _consume_log(engine)
        assert any(i.kind == IssueKind.MISSING_MILESTONE for i in issues)
        assert not [t for t in engine.queue.get_tasks() if t.context.get("issue_kind") == "missing-milestone"]
        assert engine.stats.interventions["notify_only"] == 1
        assert notifier.notify.await_count == 2


class TestTimer:
    @pytest.mark.asyncio
    async def test_tick_detects_stuck_phase(self, make_engine, settings, write_log, make_record, at) -> None:
        write_log(
            settings.log_path,
            make_record("START", "build", seconds=0),
            make_record("PHASE_START", "build", phase="red", seconds=0),
        )
        engine = make_engine()
        await _consume_log(engine)
        issues = await engine.process_tick(at(241))

        assert IssueKind.STUCK_PHASE in {i.kind for i in issues}
        stuck = [t for t in engine.queue.get_tasks() if t.anomaly_type == "agent_stuck"]
        assert len(stuck) == 1
        assert stuck[0].context["phase"] == "red"

    @pytest.mark.asyncio
    async def test_repeated_ticks_do_not_duplicate(self, make_engine, settings, write_log, make_record, at) -> None:
        write_log(
            settings.log_path,
            make_record("START", "build", seconds=0),
            make_record("PHASE_START", "build", phase="red", seconds=0),
        )
        engine = make_engine()
        await _consume_log(engine)
        await engine.process_tick(at(241))
        before = len(engine.queue.get_tasks())
        await engine.process_tick(at(300))
        await engine.process_tick(at(400))
        assert len(engine.queue.get_tasks()) == before
        assert engine.stats.ticks == 3

    @pytest.mark.asyncio
    async def test_quiet_workflow_tick(self, make_engine, at) -> None:
        engine = make_engine()
        assert await engine.process_tick(at(10_000)) == []


# ── Crash recovery ───────────────────────────────────────────────────

class TestRecovery:
    @pytest.mark.asyncio
    async def test_first_start_replays(self, make_engine, failing_build, notifier) -> None:
        engine = make_engine()
        assert await engine.recover() == "replayed"
        kinds = {t.context["issue_kind"] for t in engine.queue.get_tasks()}
        assert kinds == {"chain-broken", "loop", "explicit-failure"}
        assert engine.reader.offset == failing_build.stat().st_size
        assert engine.stats.recovery == "replayed"
        notifier.notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replay_notifies_when_enabled(self, make_engine, failing_build, notifier) -> None:
        await make_engine(replay_notify=True).recover()
        assert notifier.notify.await_count > 0

    @pytest.mark.asyncio
    async def test_replay_does_not_requeue_known_tasks(self, make_engine, settings, failing_build) -> None:
        first = make_engine()
        await first.recover()
        tasks = first.queue.get_tasks()
        failure = next(t for t in tasks if t.context["issue_kind"] == "explicit-failure")
        first.queue.mark_status(failure.id, TaskStatus.DONE, result="fixed import")

        SnapshotStore(settings.state_path).clear()
        second = make_engine()
        assert await second.recover() == "replayed"

        after = second.queue.get_tasks()
        assert len(after) == len(tasks)
        assert all(t.occurrences == 1 for t in after)
        assert second.queue.get_pending_count() == len(tasks) - 1

    @pytest.mark.asyncio
    async def test_resume_from_snapshot(self, make_engine, settings, failing_build, write_log, make_record) -> None:
        first = make_engine()
        await first.recover()

        second = make_engine()
        assert await second.recover() == "resumed"
        assert second.analyzer.state.to_dict() == first.analyzer.state.to_dict()
        assert second.reader.offset == failing_build.stat().st_size
        assert second.emitted_signatures == first.emitted_signatures

        write_log(failing_build, make_record("START", "plan", seconds=10))
        batch = second.reader.read_batch()
        assert [e.command for e in batch.entries] == ["plan"]

    @pytest.mark.asyncio
    async def test_truncated_log_forces_replay(self, make_engine, settings, failing_build, make_record) -> None:
        await make_engine().recover()
        failing_build.write_text(json.dumps(make_record("START", "ideate")) + "\n")

        engine = make_engine()
        assert await engine.recover() == "replayed"
        assert engine.analyzer.state.current_command == "ideate"

    @pytest.mark.asyncio
    async def test_checkpoint_mismatch_forces_replay(self, make_engine, settings, failing_build) -> None:
        await make_engine().recover()
        settings.offset_path.write_text(json.dumps({"offset": 3}))
        assert await make_engine().recover() == "replayed"

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_forces_replay(self, make_engine, settings, failing_build) -> None:
        await make_engine().recover()
        settings.state_path.write_text("{ truncated")
        engine = make_engine()
        assert await engine.recover() == "replayed"
        assert len(engine.queue.get_tasks()) == 3

    @pytest.mark.asyncio
    async def test_reset_batch_rebuilds_state(
        self, make_engine, settings, failing_build, make_record,
    ) -> None:
        engine = make_engine()
        await engine.recover()
        tasks_before = len(engine.queue.get_tasks())

        failing_build.write_text(json.dumps(make_record("START", "build", seconds=0)) + "\n")
        batch = engine.reader.read_batch()
        assert batch.reset
        await engine.process_batch(batch)

        assert engine.analyzer.state.entries_seen == 1
        assert engine.analyzer.state.current_command == "build"
        assert len(engine.queue.get_tasks()) == tasks_before


# ── Lifecycle ────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_tail_stop(self, make_engine, settings, write_log, make_record) -> None:
        engine = make_engine()
        seen: list = []

        async def record_signature(intervention) -> None:
            seen.append(intervention.signature)

        def broken(intervention) -> None:
            raise RuntimeError("callback bug")

        engine.on_intervention(seen.append)
        engine.on_intervention(record_signature)
        engine.on_intervention(broken)

        await engine.start()
        assert engine.running
        write_log(settings.log_path, make_record("FAILED", "ship", data={"error": "deploy"}, seconds=0))
        for _ in range(300):
            if engine.queue.get_pending_count():
                break
            await asyncio.sleep(0.01)
        await asyncio.wait_for(engine.stop(), timeout=5)

        assert not engine.running
        assert engine.queue.get_pending_count() == 1
        assert len(seen) == 2
        assert seen[0].issue.kind == IssueKind.EXPLICIT_FAILURE
        snapshot = SnapshotStore(settings.state_path).load()
        assert snapshot.log_offset == settings.log_path.stat().st_size
        assert engine.reader.load_checkpoint() == snapshot.log_offset

    @pytest.mark.asyncio
    async def test_run_returns_after_stop(self, make_engine) -> None:
        engine = make_engine()
        runner = asyncio.create_task(engine.run())
        for _ in range(100):
            if engine.running:
                break
            await asyncio.sleep(0.01)
        await engine.stop()
        await asyncio.wait_for(runner, timeout=5)
        assert engine.status()["running"] is False

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, make_engine) -> None:
        await make_engine().stop()

    @pytest.mark.asyncio
    async def test_queue_write_failure_is_not_fatal(self, make_engine, settings, write_log, make_record) -> None:
        write_log(settings.log_path, make_record("FAILED", "ship", data={"error": "x"}))
        engine = make_engine()
        with patch.object(engine.queue, "add_task", side_effect=OSError("disk full")):
            await _consume_log(engine)
        assert engine.stats.interventions["auto_remediate"] == 1

    def test_status(self, make_engine, settings, write_log, make_record) -> None:
        engine = make_engine()
        status = engine.status()
        assert status["running"] is False
        assert status["log_offset"] == 0
        assert status["workflow"]["health"] == "healthy"
        assert status["queue"]["total"] == 0
        assert set(status["stats"]) >= {"entries_processed", "ticks", "interventions"}

    @pytest.mark.asyncio
    async def test_malformed_lines_are_counted(self, make_engine, settings, write_log, make_record) -> None:
        write_log(settings.log_path, "garbage", make_record("START", "ideate"), "{half")
        engine = make_engine()
        await _consume_log(engine)
        assert engine.status()["malformed_lines"] == 2
        assert engine.stats.entries_processed == 1

    def test_from_settings(self, settings) -> None:
        engine = SupervisionLoop.from_settings(settings)
        assert settings.workspace_dir.is_dir()
        assert engine.reader.path == settings.log_path
        assert engine.queue.path == settings.queue_path
