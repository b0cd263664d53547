"""
Governor - enforces the action policy before any governed mutation.

`enforce()` is pure: it looks up the policy, checks the typed confirmation and
then the approval gate, and returns an EnforcementResult. It never writes.
`enforce_governor()` and `governed_action()` wrap it with repository lookups,
audit activities and receipts.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .dao import Repository, get_repository
from .errors import ClawControlError, ErrorCode, InvalidTransitionError
from .policies import ActionPolicy, ConfirmMode, get_policy
from .receipts import create_receipt, finalize_receipt
from .schema import Approval
from util.logging import logger


@dataclass
class EnforcementResult:
    """Outcome of one enforcement check. Never persisted."""
    allowed: bool
    policy: ActionPolicy
    error_type: Optional[ErrorCode] = None
    status: Optional[int] = None  # HTTP status hint on deny
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "policy": self.policy.to_dict(),
            "error_type": self.error_type.value if self.error_type else None,
            "status": self.status,
            "details": self.details,
        }


@dataclass
class ApprovalGateResult:
    allowed: bool
    reason: str  # no_approval_required, approved, pending, rejected, missing
    approval: Optional[Approval] = None


class GovernorDenied(ClawControlError):
    """Raised by the governed wrappers when enforce() denies."""

    def __init__(self, result: EnforcementResult):
        message = result.details.get("message") or f"Action {result.policy.action_kind} denied"
        super().__init__(result.error_type, message, result.status, result.details)
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["policy"] = self.result.policy.to_dict()
        return body


def check_approval_gate(policy: ActionPolicy, approvals: Optional[Iterable[Approval]] = None,
                        operation_id: Optional[str] = None) -> ApprovalGateResult:
    """Decide the approval phase from the approvals on the target work order.

    The most recent approval of the policy's type wins. When `operation_id` is
    given, approvals scoped to another operation are ignored.
    """
    if not policy.requires_approval:
        return ApprovalGateResult(True, "no_approval_required")

    matching = [
        a for a in (approvals or [])
        if a.type == policy.approval_type
        and (operation_id is None or a.operation_id in (None, operation_id))
    ]
    if not matching:
        return ApprovalGateResult(False, "missing")

    latest = max(matching, key=lambda a: a.created_at)
    if latest.status == "approved":
        return ApprovalGateResult(True, "approved", latest)
    return ApprovalGateResult(False, latest.status, latest)


def _deny(policy: ActionPolicy, error_type: ErrorCode, status: int,
          details: Dict[str, Any]) -> EnforcementResult:
    details = dict(details)
    details.setdefault("action_kind", policy.action_kind)
    return EnforcementResult(False, policy, error_type, status, details)


def enforce(action_kind, typed_confirm_text: Optional[str] = None,
            expected_confirm_text: Optional[str] = None,
            approvals: Optional[Iterable[Approval]] = None,
            operation_id: Optional[str] = None) -> EnforcementResult:
    """Check one action against its policy. Unknown kinds raise."""
    policy = get_policy(action_kind)

    if policy.confirm_mode == ConfirmMode.CONFIRM:
        required = expected_confirm_text if expected_confirm_text is not None else policy.confirm_text
        if typed_confirm_text != required:
            return _deny(policy, ErrorCode.TYPED_CONFIRM_REQUIRED, 428, {
                "confirm_mode": policy.confirm_mode.value,
                "required": required,
                "message": f"Type {required} to confirm {policy.description.lower()}",
            })

    elif policy.confirm_mode == ConfirmMode.TYPED_CODE:
        if not expected_confirm_text or typed_confirm_text != expected_confirm_text:
            return _deny(policy, ErrorCode.TYPED_CONFIRM_REQUIRED, 428, {
                "confirm_mode": policy.confirm_mode.value,
                "required": expected_confirm_text,
                "message": f"Type {expected_confirm_text or 'the confirmation code'} to confirm",
            })

    gate = check_approval_gate(policy, approvals, operation_id)
    if gate.allowed:
        return EnforcementResult(True, policy)

    details = {
        "approval_type": policy.approval_type,
        "reason": gate.reason,
    }
    if gate.approval:
        details["approval_id"] = gate.approval.id

    if gate.reason == "rejected":
        details["code"] = ErrorCode.APPROVAL_REJECTED.value
        details["message"] = f"{policy.approval_type} approval was rejected"
        return _deny(policy, ErrorCode.POLICY_DENIED, 403, details)

    if gate.reason == "pending":
        details["code"] = ErrorCode.APPROVAL_PENDING.value
        details["message"] = f"{policy.approval_type} approval is pending"
    else:
        details["message"] = f"{policy.approval_type} approval required"
    return _deny(policy, ErrorCode.APPROVAL_REQUIRED, 403, details)


class PendingAction:
    """Lifecycle of one governed action: requested -> confirmed -> approved -> executed.

    `denied` is terminal and reachable from requested and confirmed.
    """

    TRANSITIONS = {
        "requested": ("confirmed", "denied"),
        "confirmed": ("approved", "denied"),
        "approved": ("executed",),
        "executed": (),
        "denied": (),
    }

    def __init__(self, action_kind, actor: str = "user"):
        self.policy = get_policy(action_kind)
        self.actor = actor
        self.state = "requested"
        self.result: Optional[EnforcementResult] = None
        self.receipt_id: Optional[str] = None
        self.history: List[str] = ["requested"]

    def _move(self, target: str):
        if target not in self.TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Pending action cannot move from {self.state} to {target}",
                details={"from": self.state, "to": target},
            )
        self.state = target
        self.history.append(target)

    def evaluate(self, typed_confirm_text=None, expected_confirm_text=None,
                 approvals=None, operation_id=None) -> EnforcementResult:
        """Run both phases, leaving the action `approved` or `denied`."""
        result = enforce(self.policy.action_kind, typed_confirm_text, expected_confirm_text,
                         approvals, operation_id)
        self.result = result
        if result.allowed:
            self._move("confirmed")
            self._move("approved")
        else:
            if result.error_type != ErrorCode.TYPED_CONFIRM_REQUIRED:
                self._move("confirmed")
            self._move("denied")
        return result

    def mark_executed(self):
        self._move("executed")


def _expected_text(repo: Repository, policy: ActionPolicy, work_order_id: Optional[str],
                   expected_confirm_text: Optional[str]) -> Optional[str]:
    if expected_confirm_text is not None:
        return expected_confirm_text
    if policy.confirm_mode == ConfirmMode.TYPED_CODE and work_order_id:
        work_order = repo.get_work_order(work_order_id)
        return work_order.code if work_order else None
    return None


def _record_denial(repo: Repository, pending: PendingAction, actor: str,
                   work_order_id: Optional[str], operation_id: Optional[str]):
    result = pending.result
    repo.add_activity(
        type="governor.denied",
        actor=actor,
        actor_type="user" if actor.startswith("user") else "system",
        entity_type="work_order" if work_order_id else "action",
        entity_id=work_order_id or result.policy.action_kind,
        summary=f"{result.policy.action_kind} denied: {result.error_type.value}",
        payload={
            "action_kind": result.policy.action_kind,
            "error_type": result.error_type.value,
            "operation_id": operation_id,
            "details": result.details,
        },
        category="governor",
        risk_level=result.policy.risk_level,
    )


def enforce_governor(repo: Optional[Repository], action_kind, actor: str,
                     work_order_id: Optional[str] = None, operation_id: Optional[str] = None,
                     typed_confirm_text: Optional[str] = None,
                     expected_confirm_text: Optional[str] = None) -> PendingAction:
    """Evaluate an action against live data. Denials are logged and recorded."""
    repo = repo or get_repository()
    pending = PendingAction(action_kind, actor)
    policy = pending.policy

    expected = _expected_text(repo, policy, work_order_id, expected_confirm_text)
    approvals = repo.list_approvals(work_order_id=work_order_id) if work_order_id else []

    result = pending.evaluate(typed_confirm_text, expected, approvals, operation_id)
    logger.log_governor_decision(
        policy.action_kind, result.allowed, actor,
        result.error_type.value if result.error_type else None,
        {"work_order_id": work_order_id, "operation_id": operation_id},
    )
    if not result.allowed:
        _record_denial(repo, pending, actor, work_order_id, operation_id)
    return pending


@contextmanager
def governed_action(repo: Optional[Repository], action_kind, actor: str,
                    work_order_id: Optional[str] = None, operation_id: Optional[str] = None,
                    typed_confirm_text: Optional[str] = None,
                    expected_confirm_text: Optional[str] = None):
    """Run a block only if the governor allows it, with a receipt around it.

    Raises GovernorDenied on deny. The receipt is finalized with exit 0 when
    the block completes and exit 1 when it raises.
    """
    repo = repo or get_repository()
    pending = enforce_governor(repo, action_kind, actor, work_order_id, operation_id,
                               typed_confirm_text, expected_confirm_text)
    if pending.state == "denied":
        raise GovernorDenied(pending.result)

    receipt = create_receipt("governed_action", pending.policy.action_kind,
                             work_order_id=work_order_id, operation_id=operation_id, repo=repo)
    pending.receipt_id = receipt.id
    try:
        yield pending
    except Exception as e:
        finalize_receipt(receipt.id, 1, parsed_json={"error": str(e)}, repo=repo)
        raise

    pending.mark_executed()
    repo.add_activity(
        type="governor.executed",
        actor=actor,
        actor_type="user" if actor.startswith("user") else "system",
        entity_type="work_order" if work_order_id else "action",
        entity_id=work_order_id or pending.policy.action_kind,
        summary=f"{pending.policy.action_kind} executed",
        payload={"action_kind": pending.policy.action_kind, "receipt_id": receipt.id,
                 "operation_id": operation_id},
        category="governor",
        risk_level=pending.policy.risk_level,
    )
    finalize_receipt(receipt.id, 0, repo=repo)
