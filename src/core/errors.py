"""
Closed set of machine-readable error codes and the exceptions that carry them.
Route handlers translate these to structured 4xx responses; nothing inspects messages.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    # Policy denial
    TYPED_CONFIRM_REQUIRED = "TYPED_CONFIRM_REQUIRED"
    POLICY_DENIED = "POLICY_DENIED"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    APPROVAL_PENDING = "APPROVAL_PENDING"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"

    # Single-writer violations
    MANAGER_CONTROLLED_STATE = "MANAGER_CONTROLLED_STATE"
    MANAGER_CONTROLLED_OPERATION_STATUS = "MANAGER_CONTROLLED_OPERATION_STATUS"
    MANAGER_CONTROLLED_OPERATION_GRAPH = "MANAGER_CONTROLLED_OPERATION_GRAPH"

    # Integrity
    APPROVAL_OPERATION_WORKORDER_MISMATCH = "APPROVAL_OPERATION_WORKORDER_MISMATCH"

    # Stale/duplicate signals (no-op outcomes, never raised)
    COMPLETION_INVALID_STATE = "COMPLETION_INVALID_STATE"
    COMPLETION_STALE_IGNORED = "COMPLETION_STALE_IGNORED"

    PACKAGE_BLOCKED_BY_SCAN = "PACKAGE_BLOCKED_BY_SCAN"
    INVALID_STATE = "INVALID_STATE"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RUNTIME_UNAVAILABLE = "RUNTIME_UNAVAILABLE"
    SECURITY_VETO_FINAL = "SECURITY_VETO_FINAL"
    WORKFLOW_START_REJECTED = "WORKFLOW_START_REJECTED"
    RECEIPT_ALREADY_FINALIZED = "RECEIPT_ALREADY_FINALIZED"
    UNKNOWN_ACTION_KIND = "UNKNOWN_ACTION_KIND"


class ClawControlError(Exception):
    """Base error with a machine-readable code and an HTTP status hint."""

    status_code = 400

    def __init__(self, code: ErrorCode, message: str, status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code.value}
        if self.details:
            body["details"] = self.details
        return body


class ManagerControlledError(ClawControlError):
    """A caller tried to write a field owned by the workflow engine."""

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        status = {
            ErrorCode.MANAGER_CONTROLLED_STATE: 400,
            ErrorCode.MANAGER_CONTROLLED_OPERATION_STATUS: 403,
            ErrorCode.MANAGER_CONTROLLED_OPERATION_GRAPH: 410,
        }.get(code, 403)
        super().__init__(code, message, status, details)


class IntegrityError(ClawControlError):
    status_code = 400


class InvalidTransitionError(ClawControlError):
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.INVALID_TRANSITION, message, details=details)


class NotFoundError(ClawControlError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(ErrorCode.NOT_FOUND, f"{entity} not found: {entity_id}",
                         details={"entity": entity, "id": entity_id})


class ValidationFailed(ClawControlError):
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, details=details)


class WorkflowError(ClawControlError):
    status_code = 400


class RuntimeUnavailableError(ClawControlError):
    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.RUNTIME_UNAVAILABLE, message, details=details)


class ReceiptFinalizedError(ClawControlError):
    status_code = 409

    def __init__(self, receipt_id: str):
        super().__init__(ErrorCode.RECEIPT_ALREADY_FINALIZED,
                         f"Receipt {receipt_id} is already finalized",
                         details={"receipt_id": receipt_id})


class UnknownActionKindError(ClawControlError):
    """Looking up an undeclared action kind is a programming error."""

    status_code = 500

    def __init__(self, action_kind: Any):
        super().__init__(ErrorCode.UNKNOWN_ACTION_KIND, f"Unknown action kind: {action_kind}",
                         details={"action_kind": str(action_kind)})
