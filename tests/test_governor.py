"""
Governor enforcement tests - typed confirmation, approval gate and the pending-action lifecycle.
"""

import pytest
from datetime import datetime, timedelta

from src.core.errors import ErrorCode, InvalidTransitionError
from src.core.governor import (
    GovernorDenied,
    PendingAction,
    check_approval_gate,
    enforce,
    enforce_governor,
    governed_action,
)
from src.core.policies import ACTION_POLICIES, ActionKind, ConfirmMode, get_policy
from src.core.schema import Approval

CONFIRM_KINDS = [k for k, p in ACTION_POLICIES.items() if p.confirm_mode == ConfirmMode.CONFIRM]
NONE_KINDS = [k for k, p in ACTION_POLICIES.items() if p.confirm_mode == ConfirmMode.NONE]


def approval(type, status, minutes_ago=0, operation_id=None):
    return Approval(id=f"ap_{type}_{status}_{minutes_ago}", work_order_id="wo_1", type=type,
                    question_md="?", operation_id=operation_id, status=status,
                    created_at=datetime.now() - timedelta(minutes=minutes_ago))


def granted(policy):
    return [approval(policy.approval_type, "approved")] if policy.requires_approval else []


class TestTypedConfirm:
    """Typed confirmation is exact and case-sensitive."""

    @pytest.mark.parametrize("kind", CONFIRM_KINDS)
    def test_confirm_text_allows(self, kind):
        """Test the declared confirm text passes (with any required approval granted)."""
        policy = get_policy(kind)
        result = enforce(kind, policy.confirm_text, approvals=granted(policy))
        assert result.allowed

    @pytest.mark.parametrize("kind", CONFIRM_KINDS)
    @pytest.mark.parametrize("typed", ["confirm", "", None, "CONFIRM "])
    def test_wrong_text_denies(self, kind, typed):
        """Test anything but the exact text is TYPED_CONFIRM_REQUIRED with 428."""
        policy = get_policy(kind)
        result = enforce(kind, typed, approvals=granted(policy))
        assert not result.allowed
        assert result.error_type == ErrorCode.TYPED_CONFIRM_REQUIRED
        assert result.status == 428
        assert result.details["required"] == policy.confirm_text

    @pytest.mark.parametrize("kind", NONE_KINDS)
    @pytest.mark.parametrize("typed", [None, "", "CONFIRM", "anything"])
    def test_none_mode_ignores_text(self, kind, typed):
        """Test NONE-mode kinds never ask for confirmation."""
        policy = get_policy(kind)
        result = enforce(kind, typed, approvals=granted(policy))
        assert result.allowed

    def test_expected_text_overrides_policy_text(self):
        """Test a caller-supplied expected text replaces CONFIRM."""
        denied = enforce(ActionKind.PACKAGE_DEPLOY, "CONFIRM", expected_confirm_text="OVERRIDE_SCAN_BLOCK")
        assert denied.error_type == ErrorCode.TYPED_CONFIRM_REQUIRED
        allowed = enforce(ActionKind.PACKAGE_DEPLOY, "OVERRIDE_SCAN_BLOCK",
                          expected_confirm_text="OVERRIDE_SCAN_BLOCK")
        assert allowed.allowed

    def test_typed_code_requires_expected(self):
        """Test TYPED_CODE denies when no code is known."""
        ship_gate = [approval("ship_gate", "approved")]
        assert not enforce(ActionKind.WORK_ORDER_SHIP, "WO-0001", approvals=ship_gate).allowed
        assert enforce(ActionKind.WORK_ORDER_SHIP, "WO-0001", expected_confirm_text="WO-0001",
                       approvals=ship_gate).allowed
        assert not enforce(ActionKind.WORK_ORDER_SHIP, "wo-0001", expected_confirm_text="WO-0001",
                           approvals=ship_gate).allowed


class TestApprovalGate:
    """Approval phase outcomes."""

    def test_missing_approval(self):
        """Test no approval gives APPROVAL_REQUIRED 403."""
        result = enforce(ActionKind.DATA_RESET, "CONFIRM")
        assert result.error_type == ErrorCode.APPROVAL_REQUIRED
        assert result.status == 403
        assert result.details["approval_type"] == "risky_action"

    def test_pending_approval(self):
        """Test a pending approval is reported as pending."""
        result = enforce(ActionKind.DATA_RESET, "CONFIRM", approvals=[approval("risky_action", "pending")])
        assert result.error_type == ErrorCode.APPROVAL_REQUIRED
        assert result.details["code"] == ErrorCode.APPROVAL_PENDING.value

    def test_rejected_approval(self):
        """Test a rejected approval is a policy denial."""
        result = enforce(ActionKind.DATA_RESET, "CONFIRM", approvals=[approval("risky_action", "rejected")])
        assert result.error_type == ErrorCode.POLICY_DENIED
        assert result.details["code"] == ErrorCode.APPROVAL_REJECTED.value

    def test_latest_approval_wins(self):
        """Test a newer approval supersedes an older rejection."""
        approvals = [approval("risky_action", "rejected", minutes_ago=10),
                     approval("risky_action", "approved", minutes_ago=1)]
        assert enforce(ActionKind.DATA_RESET, "CONFIRM", approvals=approvals).allowed

    def test_other_type_ignored(self):
        """Test approvals of another type do not satisfy the gate."""
        gate = check_approval_gate(get_policy(ActionKind.DATA_RESET), [approval("ship_gate", "approved")])
        assert not gate.allowed
        assert gate.reason == "missing"

    def test_other_operation_ignored(self):
        """Test approvals scoped to another operation are ignored."""
        gate = check_approval_gate(get_policy(ActionKind.DATA_RESET),
                                   [approval("risky_action", "approved", operation_id="op_2")],
                                   operation_id="op_1")
        assert not gate.allowed

    def test_confirm_checked_before_approval(self):
        """Test a wrong confirmation is reported even when approval is missing."""
        result = enforce(ActionKind.DATA_RESET, "nope")
        assert result.error_type == ErrorCode.TYPED_CONFIRM_REQUIRED


class TestPendingAction:
    """The requested -> confirmed -> approved -> executed lifecycle."""

    def test_allowed_path(self):
        """Test an allowed action walks every state."""
        pending = PendingAction(ActionKind.AGENT_RESTART)
        pending.evaluate("CONFIRM")
        pending.mark_executed()
        assert pending.history == ["requested", "confirmed", "approved", "executed"]

    def test_denied_at_confirmation(self):
        """Test a confirmation failure never reaches confirmed."""
        pending = PendingAction(ActionKind.AGENT_RESTART)
        pending.evaluate("confirm")
        assert pending.history == ["requested", "denied"]

    def test_denied_at_approval(self):
        """Test an approval failure passes through confirmed."""
        pending = PendingAction(ActionKind.DATA_RESET)
        pending.evaluate("CONFIRM")
        assert pending.history == ["requested", "confirmed", "denied"]

    def test_cannot_execute_denied(self):
        """Test a denied action cannot be executed."""
        pending = PendingAction(ActionKind.AGENT_RESTART)
        pending.evaluate(None)
        with pytest.raises(InvalidTransitionError):
            pending.mark_executed()


class TestGovernedAction:
    """Repository-backed enforcement with audit and receipts."""

    def test_denial_recorded(self, repo):
        """Test a denial writes a governor.denied activity."""
        pending = enforce_governor(repo, ActionKind.AGENT_RESTART, "user:operator", typed_confirm_text="no")
        assert pending.state == "denied"
        denied = repo.list_activities(type="governor.denied")
        assert len(denied) == 1
        assert denied[0].payload["action_kind"] == "agent.restart"

    def test_typed_code_uses_work_order_code(self, seed, repo):
        """Test TYPED_CODE resolves the expected text from the work order."""
        wo = seed.work_order("Ship me", state="active")
        repo.create_approval(wo.id, "ship_gate", "ok?")
        repo.update_approval(repo.list_approvals(wo.id)[0].id, status="approved")
        pending = enforce_governor(repo, ActionKind.WORK_ORDER_SHIP, "user:operator",
                                   work_order_id=wo.id, typed_confirm_text=wo.code)
        assert pending.state == "approved"

    def test_governed_action_success_finalizes_receipt(self, repo):
        """Test a successful block executes and finalizes its receipt with exit 0."""
        with governed_action(repo, ActionKind.AGENT_RESTART, "user:operator",
                             typed_confirm_text="CONFIRM") as pending:
            pass
        assert pending.state == "executed"
        receipt = repo.get_receipt(pending.receipt_id)
        assert receipt.finalized and receipt.exit_code == 0
        assert repo.list_activities(type="governor.executed")

    def test_governed_action_failure_finalizes_receipt(self, repo):
        """Test an exception inside the block still closes the receipt, with failure."""
        with pytest.raises(RuntimeError):
            with governed_action(repo, ActionKind.AGENT_RESTART, "user:operator",
                                 typed_confirm_text="CONFIRM") as pending:
                raise RuntimeError("boom")
        receipt = repo.get_receipt(pending.receipt_id)
        assert receipt.finalized and receipt.exit_code == 1

    def test_governed_action_denied_raises(self, repo):
        """Test a denial raises GovernorDenied carrying the policy."""
        with pytest.raises(GovernorDenied) as exc:
            with governed_action(repo, ActionKind.AGENT_RESTART, "user:operator"):
                pass
        body = exc.value.to_dict()
        assert exc.value.status_code == 428
        assert body["code"] == "TYPED_CONFIRM_REQUIRED"
        assert body["policy"]["action_kind"] == "agent.restart"
