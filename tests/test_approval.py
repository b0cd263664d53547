"""
Approval lifecycle tests - requests, decisions and auto-resume after escalation.
"""

import threading

import pytest
from datetime import datetime
from unittest.mock import patch

from src.core.approval import (
    ApprovalWorkflow,
    create_approval,
    decide_approval,
    get_approval,
    list_approvals,
    list_pending_requests,
)
from src.core.errors import ErrorCode, IntegrityError, NotFoundError, ValidationFailed
from src.core.workflow_engine import CompletionSignal, advance_on_completion


@pytest.fixture
def work_order(repo):
    return repo.create_work_order("Needs sign-off")


def escalated(seed):
    """A work order blocked at the plan_review iteration cap, with its pending approval."""
    repo = seed.repository
    wo = seed.work_order("Looping", state="active", workflow_id="feature_request")
    op = seed.operation(wo.id, "review", "plan_review", status="in_progress",
                        workflow_id="feature_request", workflow_stage_index=2,
                        iteration_count=2, assignee_agent_ids=["agent_reviewer"])
    advance_on_completion(op.id, CompletionSignal("rejected", feedback="Still vague"), repo=repo)
    [approval] = repo.list_approvals(work_order_id=wo.id)
    return wo, op, approval


class TestApprovalRequests:

    def test_create_records_activities(self, repo, work_order):
        """Test a request writes both activities."""
        approval = create_approval(work_order.id, "ship_gate", "Ship it?", actor="user:alice")
        assert approval.status == "pending"
        [requested] = repo.list_activities(entity_id=approval.id, type="approval.requested")
        assert requested.actor == "user:alice"
        assert requested.actor_type == "user"
        assert repo.list_activities(entity_id=work_order.id, type="work_order.approval_requested")

    def test_create_is_idempotent_while_pending(self, repo, work_order):
        """Test asking the same thing twice returns the pending approval."""
        first = create_approval(work_order.id, "ship_gate", "Ship it?")
        second = create_approval(work_order.id, "ship_gate", "Ship it, really?")
        assert first.id == second.id
        assert len(list_approvals(work_order_id=work_order.id)) == 1

    def test_operation_must_belong_to_work_order(self, seed, repo, work_order):
        """Test an operation from another work order is an integrity error."""
        other = repo.create_work_order("Other")
        op = seed.operation(other.id, "build", "b")
        with pytest.raises(IntegrityError) as exc:
            create_approval(work_order.id, "risky_action", "Proceed?", operation_id=op.id)
        assert exc.value.code == ErrorCode.APPROVAL_OPERATION_WORKORDER_MISMATCH
        assert exc.value.status_code == 400
        assert exc.value.details["operation_work_order_id"] == other.id
        assert list_approvals() == []

    def test_invalid_type(self, work_order):
        """Test approval types are a closed set."""
        with pytest.raises(ValidationFailed):
            create_approval(work_order.id, "vibes", "?")

    def test_missing_work_order(self):
        """Test an unknown work order is 404."""
        with pytest.raises(NotFoundError):
            create_approval("wo_missing", "ship_gate", "?")

    def test_get_missing(self):
        """Test an unknown approval is 404."""
        with pytest.raises(NotFoundError):
            get_approval("ap_missing")


class TestDecisions:

    def test_approve(self, repo, work_order):
        """Test a decision records who and when."""
        approval = create_approval(work_order.id, "ship_gate", "Ship it?")
        outcome = decide_approval(approval.id, "approved", actor="user:bob")
        assert outcome.approval.status == "approved"
        assert outcome.approval.resolved_by == "user:bob"
        assert isinstance(outcome.approval.resolved_at, datetime)
        assert not outcome.resumed
        assert repo.list_activities(entity_id=approval.id, type="approval.approved")
        assert repo.list_activities(entity_id=work_order.id, type="work_order.approval_approved")
        assert list_pending_requests() == []

    def test_invalid_decision(self, work_order):
        """Test only approved and rejected are decisions."""
        approval = create_approval(work_order.id, "ship_gate", "Ship it?")
        with pytest.raises(ValidationFailed):
            decide_approval(approval.id, "pending")

    def test_resolved_is_returned_unchanged(self, repo, work_order):
        """Test a second decision does not overwrite the first."""
        approval = create_approval(work_order.id, "ship_gate", "Ship it?")
        decide_approval(approval.id, "rejected")
        outcome = decide_approval(approval.id, "approved")
        assert outcome.approval.status == "rejected"
        assert repo.list_activities(type="approval.approved") == []

    def test_concurrent_decisions_resolve_once(self, repo, work_order):
        """Test two deciders who both saw a pending approval produce one decision."""
        approval = create_approval(work_order.id, "ship_gate", "Ship it?")
        original_read = ApprovalWorkflow.get_request
        both_read = threading.Barrier(2, timeout=5)

        def read_then_wait(self, approval_id):
            found = original_read(self, approval_id)
            both_read.wait()
            return found

        outcomes = {}

        def decide(decision):
            outcomes[decision] = decide_approval(approval.id, decision, actor=f"user:{decision}")

        with patch.object(ApprovalWorkflow, "get_request", read_then_wait):
            threads = [threading.Thread(target=decide, args=(d,)) for d in ("approved", "rejected")]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        stored = repo.get_approval(approval.id)
        decisions = (repo.list_activities(entity_id=approval.id, type="approval.approved")
                     + repo.list_activities(entity_id=approval.id, type="approval.rejected"))
        assert len(decisions) == 1
        assert decisions[0].type == f"approval.{stored.status}"
        assert outcomes["approved"].approval.status == stored.status
        assert outcomes["rejected"].approval.status == stored.status
        assert stored.resolved_by == f"user:{stored.status}"

    def test_risky_rejection_needs_note(self, work_order):
        """Test rejecting a risky_action requires a note."""
        approval = create_approval(work_order.id, "risky_action", "Wipe staging?")
        with pytest.raises(ValidationFailed):
            decide_approval(approval.id, "rejected")
        outcome = decide_approval(approval.id, "rejected", note="Not during release week")
        assert outcome.approval.note == "Not during release week"

    def test_list_filters(self, work_order):
        """Test listing by status and type."""
        ship = create_approval(work_order.id, "ship_gate", "Ship?")
        create_approval(work_order.id, "scope_change", "Bigger?")
        decide_approval(ship.id, "approved")
        assert [a.type for a in list_approvals(status="pending")] == ["scope_change"]
        assert [a.id for a in list_approvals(type="ship_gate")] == [ship.id]

    def test_instance_bound_to_repository(self, repo, work_order):
        """Test a workflow built with a repository uses it."""
        workflow = ApprovalWorkflow(repo)
        approval = workflow.create_request(work_order.id, "cron_change", "Move the job?")
        assert workflow.get_request(approval.id).type == "cron_change"


class TestAutoResume:

    def test_approval_resumes_escalated_operation(self, seed, repo, crew, runtime):
        """Test approving an escalation redispatches the blocked operation."""
        wo, op, approval = escalated(seed)
        assert repo.get_work_order(wo.id).state == "blocked"

        outcome = decide_approval(approval.id, "approved")

        assert outcome.resumed
        assert repo.get_work_order(wo.id).state == "active"
        assert repo.get_operation(op.id).status == "in_progress"
        [resumed] = repo.list_activities(entity_id=wo.id, type="workflow.auto_resumed")
        assert resumed.payload["resumed_operation_id"] == op.id
        assert repo.list_activities(entity_id=wo.id, type="workflow.resumed")[0].payload["reason"] == \
            f"approval:{approval.id}"

    def test_rejection_does_not_resume(self, seed, repo, crew):
        """Test a rejected escalation stays blocked."""
        wo, op, approval = escalated(seed)
        outcome = decide_approval(approval.id, "rejected", note="Cancel it")
        assert not outcome.resumed
        assert repo.get_work_order(wo.id).state == "blocked"

    def test_resume_failure_reported(self, seed, repo, crew, runtime):
        """Test a failed resume is recorded and the approval still stands."""
        wo, op, approval = escalated(seed)
        runtime.available = False
        outcome = decide_approval(approval.id, "approved")
        assert outcome.approval.status == "approved"
        assert not outcome.resumed
        assert outcome.resume_error
        [failed] = repo.list_activities(entity_id=wo.id, type="workflow.auto_resume_failed")
        assert failed.payload["code"] == ErrorCode.RUNTIME_UNAVAILABLE.value

    def test_security_veto_never_resumed(self, seed, repo, crew):
        """Test approving on a vetoed operation records the approval but never resumes."""
        wo = seed.work_order("Vetoed", state="blocked", workflow_id="feature_request",
                             blocked_reason="security_veto: leaked token")
        op = seed.operation(wo.id, "security", "security", status="blocked",
                            workflow_id="feature_request", workflow_stage_index=5,
                            escalation_reason="security_veto", escalated_at=datetime.now(),
                            blocked_reason="security_veto: leaked token")
        approval = create_approval(wo.id, "risky_action", "Override the veto?", operation_id=op.id)

        with patch("src.core.workflow_engine.resume_work_order") as resume:
            outcome = decide_approval(approval.id, "approved")

        resume.assert_not_called()
        assert outcome.approval.status == "approved"
        assert outcome.resume_suppressed
        assert repo.get_work_order(wo.id).state == "blocked"
        [suppressed] = repo.list_activities(entity_id=wo.id, type="workflow.auto_resume_suppressed")
        assert suppressed.payload["skipped_for_security_veto"] is True

    def test_ship_gate_never_resumes(self, seed, repo, crew):
        """Test approval types outside the auto-resume set do nothing to the workflow."""
        wo, op, _ = escalated(seed)
        approval = create_approval(wo.id, "ship_gate", "Ship?", operation_id=op.id)
        with patch("src.core.workflow_engine.resume_work_order") as resume:
            decide_approval(approval.id, "approved")
        resume.assert_not_called()
