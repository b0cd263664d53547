"""
Dispatch loop tests - assignment, WIP limits, fail-closed runtime and overlap prevention.
"""

import threading

import pytest

from src.agents.runtime import MockRuntimeAdapter, set_runtime
from src.core import config, dispatcher
from src.core.dispatcher import (
    LEASE_NAME,
    OVERLAP_MESSAGE,
    get_dispatch_status,
    reset_dispatch_state,
    run_dispatch_pass,
)


@pytest.fixture(autouse=True)
def clean_dispatch(monkeypatch):
    monkeypatch.setattr(config, "DISPATCH_WAIT_SEC", 0)
    reset_dispatch_state()
    yield
    reset_dispatch_state()


class GatedRuntime(MockRuntimeAdapter):
    """Mock runtime whose availability check waits until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def check_availability(self):
        self.entered.set()
        self.release.wait(5)
        return super().check_availability()


class FlakyRuntime(MockRuntimeAdapter):
    """Mock runtime whose first stream breaks with an unexpected error."""

    def __init__(self):
        super().__init__()
        self.broken = False

    def send_to_agent(self, agent_id, message, session_key):
        if not self.broken:
            self.broken = True
            yield "partial"
            raise ValueError("bad frame")
        yield from super().send_to_agent(agent_id, message, session_key)


class TestAssignment:

    def test_assigns_planned_work_orders(self, repo, crew):
        """Test each planned work order is started on a matching agent."""
        wo = repo.create_work_order("Feature")
        result = run_dispatch_pass(repo=repo)

        [assigned] = result.assigned
        assert assigned["work_order_id"] == wo.id
        assert assigned["agent_id"] == "agent_planner"
        assert assigned["specialty"] == "plan"
        assert assigned["status"] == "dispatched"
        assert repo.get_work_order(wo.id).state == "active"
        assert result.summary["planned_scanned"] == 1
        assert repo.list_activities(entity_id=wo.id, type="manager.dispatch.assigned")[0] \
            .payload["trigger"] == "manual"

    def test_wip_limit_respected_within_pass(self, repo):
        """Test one agent with WIP 1 takes only the oldest work order."""
        repo.create_agent("planner", id="agent_planner", station="plan", wip_limit=1)
        first = repo.create_work_order("First")
        second = repo.create_work_order("Second")

        result = run_dispatch_pass(repo=repo)

        assert [a["work_order_id"] for a in result.assigned] == [first.id]
        [skipped] = result.skipped
        assert skipped["work_order_id"] == second.id
        assert skipped["reason"] == "no_eligible_agent"
        assert skipped["specialty"] == "plan"
        assert repo.get_work_order(second.id).state == "planned"

    def test_open_operations_skipped(self, seed, repo, crew):
        """Test a planned work order that already has work is left alone."""
        wo = repo.create_work_order("Odd")
        seed.operation(wo.id, "build", "leftover", status="todo")
        result = run_dispatch_pass(repo=repo)
        assert result.skipped[0]["reason"] == "has_open_operations"

    def test_invalid_workflow_skipped(self, repo, crew):
        """Test an unknown workflow id is reported, not raised."""
        repo.create_work_order("Broken", workflow_id="nope")
        result = run_dispatch_pass(repo=repo)
        assert result.skipped[0]["reason"] == "invalid_workflow"

    def test_limit_clamped(self, repo, crew):
        """Test the scan limit bounds the pass."""
        for i in range(3):
            repo.create_work_order(f"WO {i}")
        assert run_dispatch_pass(limit=1, repo=repo).summary["planned_scanned"] == 1
        assert run_dispatch_pass(limit=0, repo=repo).summary["planned_scanned"] == 1

    def test_send_failure_reported(self, repo, crew, runtime):
        """Test a refused send lands in failures and blocks the work order."""
        runtime.fail_agents = {"agent_planner"}
        wo = repo.create_work_order("Refused")
        result = run_dispatch_pass(trigger="scheduled", repo=repo)
        assert result.assigned == []
        assert result.failures[0]["work_order_id"] == wo.id
        assert repo.get_work_order(wo.id).state == "blocked"
        assert repo.list_activities(entity_id=wo.id, type="manager.dispatch.failed")[0] \
            .payload["trigger"] == "scheduled"

    def test_unexpected_stream_error_does_not_stop_pass(self, repo, crew):
        """Test a stream that breaks unexpectedly fails its work order and the pass goes on."""
        set_runtime(FlakyRuntime())
        first = repo.create_work_order("First")
        second = repo.create_work_order("Second")

        result = run_dispatch_pass(repo=repo)

        assert [f["work_order_id"] for f in result.failures] == [first.id]
        assert "ValueError" in result.failures[0]["error"]
        assert [a["work_order_id"] for a in result.assigned] == [second.id]

        [op] = repo.list_operations(first.id)
        assert op.status == "blocked"
        assert op.claimed_by is None and op.claim_expires_at is None
        assert "bad frame" in op.blocked_reason
        assert repo.get_work_order(first.id).state == "blocked"
        assert repo.list_activities(entity_id=op.id, type="workflow.dispatch_failed")
        assert repo.list_activities(entity_id=first.id, type="manager.dispatch.failed")


class TestDryRun:

    def test_dry_run_writes_nothing(self, repo, crew, runtime):
        """Test a dry run reports assignments without touching state."""
        wo = repo.create_work_order("Preview")
        result = run_dispatch_pass(dry_run=True, repo=repo)

        assert result.dry_run
        assert result.assigned[0]["status"] == "dry_run"
        assert result.assigned[0]["operation_id"] is None
        assert repo.get_work_order(wo.id).state == "planned"
        assert repo.list_operations(wo.id) == []
        assert runtime.sent == []

    def test_dry_run_counts_wip(self, repo):
        """Test dry run assignments use up capacity like real ones."""
        repo.create_agent("planner", station="plan", wip_limit=1)
        repo.create_work_order("First")
        repo.create_work_order("Second")
        result = run_dispatch_pass(dry_run=True, repo=repo)
        assert len(result.assigned) == 1
        assert result.skipped[0]["reason"] == "no_eligible_agent"


class TestRuntimeUnavailable:

    def test_fails_closed(self, repo, crew, runtime):
        """Test nothing is assigned while the runtime is down."""
        runtime.available = False
        wo = repo.create_work_order("Waiting")
        result = run_dispatch_pass(repo=repo)

        assert not result.runtime_available
        assert result.assigned == []
        assert result.skipped[0]["reason"] == "runtime_unavailable"
        assert result.summary["runtime"]["status"] == "unavailable"
        assert repo.get_work_order(wo.id).state == "planned"
        assert repo.list_activities(entity_id=wo.id) == []


class TestOverlap:

    def test_held_lock_prevents_overlap(self, repo, crew):
        """Test a pass in this process blocks a second one."""
        wo = repo.create_work_order("Contended")
        dispatcher._pass_lock.acquire()
        try:
            result = run_dispatch_pass(repo=repo)
        finally:
            dispatcher._pass_lock.release()

        assert result.overlap_prevented
        assert result.skipped == [{"work_order_id": None, "code": None, "reason": OVERLAP_MESSAGE}]
        assert repo.get_work_order(wo.id).state == "planned"

    def test_held_lease_prevents_overlap(self, repo, crew):
        """Test another process's live lease blocks the pass."""
        repo.acquire_lease(LEASE_NAME, "scheduled:999:other", 300)
        result = run_dispatch_pass(repo=repo)
        assert result.overlap_prevented
        assert not dispatcher._pass_lock.locked()

    def test_concurrent_passes(self, repo, crew):
        """Test two simultaneous passes: one runs and one reports overlap."""
        gated = GatedRuntime()
        set_runtime(gated)
        repo.create_work_order("Race")
        results = {}

        worker = threading.Thread(target=lambda: results.setdefault(
            "scheduled", run_dispatch_pass(trigger="scheduled", repo=repo)))
        worker.start()
        assert gated.entered.wait(5)

        results["manual"] = run_dispatch_pass(trigger="manual", repo=repo)
        gated.release.set()
        worker.join(5)

        assert results["manual"].overlap_prevented
        assert not results["scheduled"].overlap_prevented
        assert len(results["scheduled"].assigned) == 1

    def test_lease_released_after_pass(self, repo, crew):
        """Test the lease does not outlive the pass."""
        run_dispatch_pass(repo=repo)
        assert repo.get_lease(LEASE_NAME) is None
        assert not run_dispatch_pass(repo=repo).overlap_prevented


class TestStatus:

    def test_status_reports_last_pass(self, repo, crew):
        """Test status carries the last result and the idle lock."""
        assert get_dispatch_status(repo)["last_result"] is None
        run_dispatch_pass(dry_run=True, repo=repo)
        status = get_dispatch_status(repo)
        assert status["running"] is False
        assert status["lease"] is None
        assert status["last_result"]["dry_run"] is True
        assert status["interval_sec"] == config.get_dispatch_interval()
