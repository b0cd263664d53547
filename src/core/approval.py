"""
Approval lifecycle - operator decisions that gate governed actions and escalations.

Approvals are created by callers asking for a decision and by the workflow
engine when it escalates an operation. Deciding an approval may resume the
escalated operation; a security veto is never resumed this way.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .dao import Repository, get_repository
from .errors import ClawControlError, ErrorCode, IntegrityError, NotFoundError, ValidationFailed
from .schema import APPROVAL_TYPES, Approval
from util.logging import logger, audit_event

AUTO_RESUME_TYPES = ("risky_action", "scope_change")
DECISIONS = ("approved", "rejected")


@dataclass
class DecisionOutcome:
    approval: Approval
    resumed: bool = False
    resume_suppressed: bool = False
    resume_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approval": self.approval.to_dict(),
            "resumed": self.resumed,
            "resume_suppressed": self.resume_suppressed,
            "resume_error": self.resume_error,
        }


def _actor_type(actor: str) -> str:
    return actor.split(":", 1)[0] if ":" in actor else "user"


class ApprovalWorkflow:
    """Approval requests backed by the repository."""

    def __init__(self, repo: Optional[Repository] = None):
        self._repo = repo

    @property
    def repo(self) -> Repository:
        return self._repo or get_repository()

    def create_request(self, work_order_id: str, type: str, question_md: str,
                       operation_id: Optional[str] = None, actor: str = "user:operator") -> Approval:
        """Create a pending approval, or return the pending one already asking the same thing."""
        if not work_order_id or not type or not question_md:
            raise ValidationFailed("work_order_id, type and question_md are required")
        if type not in APPROVAL_TYPES:
            raise ValidationFailed(f"Invalid approval type: {type}", details={"valid": list(APPROVAL_TYPES)})

        repo = self.repo
        work_order = repo.require_work_order(work_order_id)
        if operation_id:
            operation = repo.require_operation(operation_id)
            if operation.work_order_id != work_order_id:
                raise IntegrityError(
                    ErrorCode.APPROVAL_OPERATION_WORKORDER_MISMATCH,
                    "Operation does not belong to the supplied work order",
                    details={"work_order_id": work_order_id, "operation_id": operation_id,
                             "operation_work_order_id": operation.work_order_id},
                )

        with repo.transaction():
            for existing in repo.list_approvals(work_order_id=work_order_id, type=type, status="pending"):
                if existing.operation_id == operation_id:
                    return existing

            approval = repo.create_approval(work_order_id, type, question_md, operation_id=operation_id)
            summary = question_md if len(question_md) <= 50 else question_md[:50] + "..."
            repo.add_activity(
                type="approval.requested", actor=actor, actor_type=_actor_type(actor),
                entity_type="approval", entity_id=approval.id,
                summary=f"Approval requested: {summary}",
                payload={"work_order_id": work_order_id, "operation_id": operation_id,
                         "approval_type": type},
                category="approval",
            )
            repo.add_activity(
                type="work_order.approval_requested", actor=actor, actor_type=_actor_type(actor),
                entity_type="work_order", entity_id=work_order_id,
                summary=f"Approval requested for {type.replace('_', ' ')} on {work_order.code}",
                payload={"approval_id": approval.id, "approval_type": type},
                category="approval",
            )

        logger.log_approval_request(approval.id, type, work_order_id, actor)
        return approval

    def get_request(self, approval_id: str) -> Approval:
        approval = self.repo.get_approval(approval_id)
        if approval is None:
            raise NotFoundError("Approval", approval_id)
        return approval

    def decide(self, approval_id: str, decision: str, actor: str = "user:operator",
               note: Optional[str] = None) -> DecisionOutcome:
        """Record a decision. An already-resolved approval is returned unchanged."""
        if decision not in DECISIONS:
            raise ValidationFailed('Invalid status. Must be "approved" or "rejected"')

        repo = self.repo
        current = self.get_request(approval_id)
        if decision == "rejected" and current.type == "risky_action" and not note:
            raise ValidationFailed("A note is required when rejecting danger-level actions")

        with repo.transaction():
            # Re-read under the transaction; a concurrent decision may have landed.
            current = repo.get_approval(approval_id)
            if current.status != "pending":
                return DecisionOutcome(current)
            approval = repo.update_approval(approval_id, status=decision, resolved_by=actor,
                                            resolved_at=datetime.now(), note=note)
            repo.add_activity(
                type=f"approval.{decision}", actor=actor, actor_type=_actor_type(actor),
                entity_type="approval", entity_id=approval_id,
                summary=f"Approval {decision}: \"{current.question_md[:50]}\"",
                payload={"work_order_id": approval.work_order_id, "operation_id": approval.operation_id,
                         "approval_type": approval.type, "status": decision, "note": note},
                category="approval",
            )
            repo.add_activity(
                type=f"work_order.approval_{decision}", actor=actor, actor_type=_actor_type(actor),
                entity_type="work_order", entity_id=approval.work_order_id,
                summary=f"Approval {decision} for {approval.type.replace('_', ' ')}"
                        + (f": {note}" if note else ""),
                payload={"approval_id": approval_id, "approval_type": approval.type,
                         "status": decision, "note": note},
                category="approval",
            )

        logger.log_approval_decision(approval_id, decision, actor, note or "")
        outcome = DecisionOutcome(approval)
        if decision == "approved" and approval.operation_id and approval.type in AUTO_RESUME_TYPES:
            self._auto_resume(approval, outcome)
        return outcome

    def _auto_resume(self, approval: Approval, outcome: DecisionOutcome):
        # Imported here: the engine imports the governor, which reads approvals.
        from .workflow_engine import MANAGER, resume_work_order

        repo = self.repo
        operation = repo.get_operation(approval.operation_id)
        if operation is None or not operation.workflow_id or not operation.escalated_at:
            return

        if operation.is_security_veto():
            outcome.resume_suppressed = True
            repo.add_activity(
                type="workflow.auto_resume_suppressed", actor=MANAGER, actor_type="system",
                entity_type="work_order", entity_id=approval.work_order_id,
                summary=f"Approval {approval.id} recorded; security veto stays blocked",
                payload={"approval_id": approval.id, "operation_id": operation.id,
                         "skipped_for_security_veto": True},
                risk_level="danger",
            )
            audit_event("workflow.auto_resume_suppressed",
                        {"approval_id": approval.id, "operation_id": operation.id})
            return

        try:
            resumed = resume_work_order(approval.work_order_id, reason=f"approval:{approval.id}",
                                        actor=MANAGER, repo=repo)
        except ClawControlError as e:
            outcome.resume_error = e.message
            repo.add_activity(
                type="workflow.auto_resume_failed", actor=MANAGER, actor_type="system",
                entity_type="work_order", entity_id=approval.work_order_id,
                summary=f"Failed to auto-resume workflow after approval {approval.id}",
                payload={"approval_id": approval.id, "operation_id": operation.id,
                         "code": e.code.value, "error": e.message},
                risk_level="caution",
            )
            return

        outcome.resumed = True
        repo.add_activity(
            type="workflow.auto_resumed", actor=MANAGER, actor_type="system",
            entity_type="work_order", entity_id=approval.work_order_id,
            summary=f"Auto-resumed workflow from approval {approval.id}",
            payload={"approval_id": approval.id, "operation_id": operation.id,
                     "resumed_operation_id": resumed.operation_id},
        )

    def list_requests(self, status: Optional[str] = None, work_order_id: Optional[str] = None,
                      type: Optional[str] = None) -> List[Approval]:
        return self.repo.list_approvals(work_order_id=work_order_id, type=type, status=status)

    def list_pending_requests(self) -> List[Approval]:
        return self.list_requests(status="pending")


# Global approval workflow instance
approval_workflow = ApprovalWorkflow()


def create_approval(work_order_id: str, type: str, question_md: str,
                    operation_id: Optional[str] = None, actor: str = "user:operator") -> Approval:
    """Create an approval request."""
    return approval_workflow.create_request(work_order_id, type, question_md, operation_id, actor)


def decide_approval(approval_id: str, decision: str, actor: str = "user:operator",
                    note: Optional[str] = None) -> DecisionOutcome:
    """Approve or reject an approval request."""
    return approval_workflow.decide(approval_id, decision, actor, note)


def get_approval(approval_id: str) -> Approval:
    return approval_workflow.get_request(approval_id)


def list_approvals(status: Optional[str] = None, work_order_id: Optional[str] = None,
                   type: Optional[str] = None) -> List[Approval]:
    """List approvals, oldest first."""
    return approval_workflow.list_requests(status, work_order_id, type)


def list_pending_requests() -> List[Approval]:
    return approval_workflow.list_pending_requests()
