"""
Structured logging for governor decisions, state transitions, dispatch and approvals.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for governor, workflow engine and dispatch operations."""

    def __init__(self, name: str = "clawcontrol"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.info(message)

    def log_governor_decision(self, action_kind: str, allowed: bool, actor: str = None,
                              error_type: str = None, details: Dict[str, Any] = None):
        """Log an allow/deny decision."""
        log_details = {"action_kind": action_kind}
        if actor:
            log_details["actor"] = actor
        if error_type:
            log_details["error_type"] = error_type
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation("governor.enforce", "allowed" if allowed else "denied", log_details)

    def log_transition(self, entity_type: str, entity_id: str, from_state: str, to_state: str,
                       reason: str = None):
        """Log a state/status transition applied by the workflow engine."""
        log_details = {
            "entity_id": entity_id,
            "from": from_state,
            "to": to_state,
        }
        if reason:
            log_details["reason"] = reason[:100]

        self.log_operation(f"{entity_type}.transition", "applied", log_details)

    def log_completion_signal(self, operation_id: str, signal_status: str, outcome_code: str,
                              noop: bool = False):
        """Log a completion signal and what the engine did with it."""
        log_details = {
            "operation_id": operation_id,
            "signal": signal_status,
            "code": outcome_code,
        }
        self.log_operation("workflow.completion", "noop" if noop else "applied", log_details)

    def log_dispatch_pass(self, trigger: str, assigned: int, skipped: int, failed: int,
                          start_time: float, end_time: float, status: str = "success"):
        """Log a dispatch pass summary."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {
            "trigger": trigger,
            "assigned": assigned,
            "skipped": skipped,
            "failed": failed,
            "duration_ms": duration_ms,
        }
        self.log_operation("dispatch.pass", status, log_details)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float,
                           status: str = "success", details: Dict[str, Any] = None):
        """Log periodic task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"heartbeat.{task_name}", status, log_details)

    # Approval audit logging
    def log_approval_request(self, approval_id: str, approval_type: str, work_order_id: str,
                             requester: str):
        """Log approval request creation."""
        log_details = {
            "approval_id": approval_id,
            "approval_type": approval_type,
            "work_order_id": work_order_id,
            "requester": requester
        }
        self.log_operation("approval.request_created", "pending", log_details)

    def log_approval_decision(self, approval_id: str, decision: str, approver: str, reason: str = ""):
        """Log approval decision."""
        log_details = {
            "approval_id": approval_id,
            "decision": decision,
            "approver": approver,
            "reason": reason[:100] if reason else ""  # Limit reason length
        }
        status = "approved" if decision == "approved" else "rejected"
        self.log_operation("approval.decision", status, log_details)

    def log_receipt(self, receipt_id: str, event: str, exit_code: int = None):
        """Log receipt lifecycle events."""
        log_details = {"receipt_id": receipt_id}
        if exit_code is not None:
            log_details["exit_code"] = exit_code
        self.log_operation(f"receipt.{event}", "success", log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def log_governor_decision(action_kind: str, allowed: bool, actor: str = None,
                          error_type: str = None, details: Dict[str, Any] = None):
    """Log an allow/deny decision."""
    logger.log_governor_decision(action_kind, allowed, actor, error_type, details)


def log_approval_request(approval_id: str, approval_type: str, work_order_id: str, requester: str):
    """Log approval request creation."""
    logger.log_approval_request(approval_id, approval_type, work_order_id, requester)


def log_approval_decision(approval_id: str, decision: str, approver: str, reason: str = ""):
    """Log approval decision."""
    logger.log_approval_decision(approval_id, decision, approver, reason)


SENSITIVE_FIELDS = ['secret', 'password', 'token', 'api_key', 'typed_confirm_text']


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    if event_type.startswith("approval"):
        operation = "approval"
    elif event_type.startswith("governor"):
        operation = "governor"
    elif event_type.startswith("workflow") or event_type.startswith("escalation"):
        operation = "workflow"
    else:
        operation = event_type.replace(".", "_")

    logger.log_operation(operation, "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
