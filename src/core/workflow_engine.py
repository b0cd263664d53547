"""
Workflow engine - the only writer of work order state and operation status.

The engine claims the process StateWriter at import. Routes, the dispatcher and
the approval lifecycle call the functions here; none of them can write `state`
or `status` themselves.

Lifecycle of a work order:
  start_work_order      planned -> active, first stage operation created and dispatched
  advance_on_completion completion signal from the runtime moves the stage forward,
                        loops back for rework, escalates, or ships the work order
  resume_work_order     blocked -> active after an approval or an operator action
  recover_stale_operations
                        retries or escalates in_progress operations with no progress
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from . import config
from .dao import Repository, claim_state_writer, get_repository
from .errors import (
    ClawControlError,
    ErrorCode,
    ManagerControlledError,
    RuntimeUnavailableError,
    ValidationFailed,
    WorkflowError,
)
from .governor import governed_action
from .policies import ActionKind
from .receipts import create_receipt, finalize_receipt
from .schema import (
    OPEN_OPERATION_STATUSES,
    SECURITY_VETO_REASON,
    AgentSession,
    Operation,
    OperationStory,
    WorkOrder,
)
from .state_machine import validate_transition
from .workflows import (
    Workflow,
    WorkflowStage,
    get_workflow,
    next_runnable_stage,
    parse_stories_from_output,
    resolve_loop_max_stories,
    select_workflow,
)
from src.agents.registry import AgentRoster
from src.agents.runtime import get_runtime, stream_to_receipt
from util.logging import logger

_WRITER = claim_state_writer("workflow_engine")

MANAGER = config.MANAGER_ACTOR
COMPLETION_STATUSES = ("approved", "rejected", "vetoed", "completed", "failed")
CLAIMABLE_STATUSES = ("todo", "rework")
RECOVERY_LEASE = "workflow_engine.recovery"


@dataclass
class CompletionSignal:
    status: str  # approved, rejected, vetoed, completed, failed
    output: Any = None
    feedback: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    completion_token: Optional[str] = None

    def __post_init__(self):
        if self.status not in COMPLETION_STATUSES:
            raise ValidationFailed(f"Invalid completion status: {self.status}",
                                   details={"valid": list(COMPLETION_STATUSES)})

    @property
    def succeeded(self) -> bool:
        return self.status in ("approved", "completed")


@dataclass
class CompletionOutcome:
    applied: bool
    noop: bool
    code: Optional[str]
    work_order_id: str
    operation_id: str
    next_operation_id: Optional[str] = None
    work_order_state: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DispatchOutcome:
    dispatched: bool
    operation_id: str
    work_order_id: str
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    receipt_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StartResult:
    work_order_id: str
    workflow_id: str
    operation_id: str
    stage_index: int
    agent_id: Optional[str]
    session_key: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StaleRecoveryResult:
    scanned: int = 0
    recovered: int = 0
    escalated: int = 0
    failures: int = 0
    lock_acquired: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# --- internal writes -----------------------------------------------------

def _activity(repo: Repository, type: str, entity_type: str, entity_id: str, summary: str,
              payload: Optional[Dict[str, Any]] = None, risk_level: str = "safe",
              category: str = "workflow"):
    return repo.add_activity(type=type, actor=MANAGER, entity_type=entity_type, entity_id=entity_id,
                             summary=summary, payload=payload, actor_type="system",
                             category=category, risk_level=risk_level)


def _set_state(repo: Repository, work_order: WorkOrder, target: str,
               blocked_reason: Optional[str] = None, **values) -> WorkOrder:
    """Move a work order. blocked_reason is set on block and cleared on any other move."""
    if work_order.state != target:
        validate_transition("work_order", work_order.state, target)
        logger.log_transition("work_order", work_order.id, work_order.state, target, blocked_reason)
    values["state"] = target
    values["blocked_reason"] = blocked_reason if target == "blocked" else None
    return repo.write_work_order(_WRITER, work_order.id, **values)


def _set_status(repo: Repository, operation: Operation, target: str, **values) -> Operation:
    if operation.status != target:
        validate_transition("operation", operation.status, target)
        logger.log_transition("operation", operation.id, operation.status, target,
                              values.get("blocked_reason"))
    values["status"] = target
    return repo.write_operation(_WRITER, operation.id, **values)


def _release_claim() -> Dict[str, Any]:
    return {"claimed_by": None, "claim_expires_at": None}


def _load_initial_context(repo: Repository, work_order_id: str) -> Dict[str, Any]:
    started = repo.list_activities(entity_id=work_order_id, type="workflow.started")
    if not started:
        return {}
    context = started[-1].payload.get("initialContext")
    return context if isinstance(context, dict) else {}


def _resolve_stage_agent(repo: Repository, stage: WorkflowStage,
                         preferred_agent_id: Optional[str] = None) -> Optional[str]:
    roster = AgentRoster(repo)
    if preferred_agent_id and preferred_agent_id in roster.entries:
        return preferred_agent_id
    agent = roster.pick_agent(stage.specialty) or roster.pick_agent(stage.specialty, respect_wip=False)
    return agent.id if agent else None


def _create_stage_operation(repo: Repository, work_order: WorkOrder, workflow: Workflow,
                            stage_index: int, iteration_count: int, agent_id: Optional[str],
                            notes: str = "", loop_target_op_id: Optional[str] = None,
                            rework: bool = False, verify_story: Optional[OperationStory] = None,
                            parent_operation_id: Optional[str] = None) -> Operation:
    stage = workflow.stages[stage_index]
    total = len(workflow.stages)
    loop_values: Dict[str, Any] = {"max_retries": config.MAX_STORY_RETRIES}
    if verify_story is not None:
        loop_values.update(
            current_story_id=verify_story.id,
            max_retries=verify_story.max_retries,
            loop_config={"kind": "story_verify", "parent_operation_id": parent_operation_id,
                         "story_id": verify_story.id, "loop_stage_index": stage_index},
        )
    elif stage.loop:
        loop_values.update(execution_type="loop", loop_config=stage.loop.to_dict())

    if verify_story is not None:
        title = f"{stage.ref} - Verify story {verify_story.story_index + 1}: {verify_story.title}"
    elif rework:
        title = f"[Rework] {stage.ref} (iteration {iteration_count})"
    else:
        title = f"{stage.ref} - Stage {stage_index + 1}/{total}"
    return repo.create_operation(
        _WRITER, work_order.id, station=stage.specialty, title=title,
        notes=notes or "",
        workflow_id=workflow.id,
        workflow_stage_index=stage_index,
        iteration_count=iteration_count,
        loop_target_op_id=loop_target_op_id,
        assignee_agent_ids=[agent_id] if agent_id else [],
        **loop_values,
    )


def build_escalation_message(work_order: WorkOrder, workflow_id: str, stage_ref: str,
                             stage_index: int, total_stages: int, iteration_count: int,
                             max_iterations: Optional[int], reason: str,
                             feedback: Optional[str]) -> str:
    if reason == SECURITY_VETO_REASON:
        what_happened = "Security stage vetoed the current change."
    elif reason == "iteration_cap_exceeded":
        what_happened = f"Review loop exceeded the iteration cap ({max_iterations})."
    elif reason == "story_retry_exhausted":
        what_happened = "Story retries were exhausted during loop execution."
    else:
        what_happened = "Operation stalled and retry budget was exhausted."

    return "\n".join([
        f"## Escalation: {reason}",
        "",
        f"**Work Order:** {work_order.code} ({work_order.id})",
        f"**Workflow:** {workflow_id} - Stage {stage_index + 1}/{total_stages or '?'}",
        f"**Stage:** {stage_ref}",
        f"**Iterations:** {iteration_count}/{max_iterations if max_iterations is not None else 'N/A'}",
        "",
        "### Feedback",
        feedback or "No feedback provided.",
        "",
        "### Manager Summary",
        what_happened,
        "",
        "Decision required: approve retry/resume, override gate, or cancel.",
    ])


def _escalate(repo: Repository, operation: Operation, work_order: WorkOrder, reason: str,
              feedback: Optional[str], approval_type: str,
              max_iterations: Optional[int] = None) -> None:
    """Block the operation and its work order and ask an operator to decide."""
    workflow_id = operation.workflow_id or work_order.workflow_id or "unknown"
    workflow = get_workflow(workflow_id) if workflow_id != "unknown" else None
    if workflow and operation.workflow_stage_index < len(workflow.stages):
        stage_ref = workflow.stages[operation.workflow_stage_index].ref
    else:
        stage_ref = f"stage_{operation.workflow_stage_index}"

    message = build_escalation_message(
        work_order, workflow_id, stage_ref, operation.workflow_stage_index,
        len(workflow.stages) if workflow else 0, operation.iteration_count,
        max_iterations, reason, feedback,
    )
    blocked_reason = feedback or reason
    _set_status(repo, operation, "blocked", blocked_reason=blocked_reason,
                escalation_reason=reason, escalated_at=datetime.now(), **_release_claim())
    _set_state(repo, work_order, "blocked", blocked_reason=blocked_reason)
    repo.create_approval(work_order.id, approval_type, message, operation_id=operation.id)
    _activity(repo, f"escalation.{reason}", "operation", operation.id,
              f"Escalated to operator: {reason}",
              {"workflow_id": workflow_id, "stage_index": operation.workflow_stage_index,
               "stage_ref": stage_ref, "feedback": feedback, "approval_type": approval_type},
              risk_level="caution")


# --- claims and dispatch -------------------------------------------------

def claim_operation(operation_id: str, claimed_by: str = MANAGER,
                    repo: Optional[Repository] = None, now: Optional[datetime] = None) -> bool:
    """Move todo|rework -> in_progress under a claim. A live claim held by someone else wins."""
    repo = repo or get_repository()
    now = now or datetime.now()
    with repo.transaction():
        operation = repo.require_operation(operation_id)
        if operation.status not in CLAIMABLE_STATUSES:
            return False
        if (operation.claim_expires_at and operation.claim_expires_at > now
                and operation.claimed_by != claimed_by):
            return False
        _set_status(repo, operation, "in_progress", blocked_reason=None, claimed_by=claimed_by,
                    claim_expires_at=now + timedelta(seconds=config.CLAIM_TTL_SEC),
                    last_claimed_at=now)
    return True


def session_key_for(agent_id: str, work_order_id: str, operation_id: str) -> str:
    return f"agent:{agent_id}:wo:{work_order_id}:op:{operation_id}"


def _open_session(repo: Repository, agent_id: str, work_order_id: str, operation_id: str) -> str:
    key = session_key_for(agent_id, work_order_id, operation_id)
    existing = repo.get_session(key)
    now = datetime.now()
    repo.save_session(AgentSession(
        session_key=key,
        agent_id=agent_id,
        work_order_id=work_order_id,
        operation_id=operation_id,
        created_at=existing.created_at if existing else now,
        last_used_at=now,
    ))
    repo.update_agent(agent_id, status="active", session_key=key,
                      current_work_order_id=work_order_id)
    return key


def _story_summary(story: OperationStory) -> Dict[str, Any]:
    return {
        "id": story.id,
        "story_index": story.story_index,
        "story_key": story.story_key,
        "title": story.title,
        "description": story.description,
        "acceptance_criteria": list(story.acceptance_criteria),
        "retry_count": story.retry_count,
    }


def build_loop_dispatch_context(repo: Repository, operation: Operation) -> Dict[str, Any]:
    """What an agent working one story of a loop stage is told about the loop."""
    stories = repo.list_stories(operation.id)
    current = next((s for s in stories if s.id == operation.current_story_id), None)
    output = (current.output or {}) if current else {}
    return {
        "current_story": _story_summary(current) if current else None,
        "current_story_id": operation.current_story_id,
        "completed_stories": [{"story_key": s.story_key, "title": s.title}
                              for s in stories if s.status == "done"],
        "stories_remaining": sum(1 for s in stories if s.status == "pending" and s is not current),
        "verify_feedback": output.get("verify_feedback"),
    }


def _build_task(repo: Repository, work_order: WorkOrder, operation: Operation,
                stage: WorkflowStage) -> str:
    lines = [
        f"Work Order: {work_order.code}",
        f"Title: {work_order.title}",
        f"Stage: {stage.ref}",
        "",
        work_order.goal_md or "",
    ]
    if operation.notes:
        lines += ["", "---", "Context:", operation.notes]

    target = operation.verify_target()
    if target:
        story = repo.get_story(target["story_id"])
        if story:
            lines += ["", "---", f"Verify story {story.story_index + 1}: {story.title}",
                      json.dumps(_story_summary(story), indent=2)]
    elif operation.execution_type == "loop":
        if operation.current_story_id:
            lines += ["", "---", "Loop context:",
                      json.dumps(build_loop_dispatch_context(repo, operation), indent=2, default=str)]
        else:
            lines += ["", "---",
                      "Break this stage into stories. Return STORIES_JSON: a JSON list of objects "
                      "with storyKey, title, description and acceptanceCriteria."]
    return "\n".join(lines)


def _fail_dispatch(repo: Repository, operation_id: str, error: str, payload: Dict[str, Any]):
    with repo.transaction():
        operation = repo.require_operation(operation_id)
        _set_status(repo, operation, "blocked", blocked_reason=error, **_release_claim())
        _activity(repo, "workflow.dispatch_failed", "operation", operation.id,
                  f"Dispatch failed for {payload['agent_id']}", {**payload, "error": error},
                  risk_level="caution")


def dispatch_operation(operation_id: str, agent_id: Optional[str] = None,
                       repo: Optional[Repository] = None) -> DispatchOutcome:
    """Claim an operation and send it to its agent. Failure blocks the operation."""
    repo = repo or get_repository()
    operation = repo.require_operation(operation_id)
    work_order = repo.require_work_order(operation.work_order_id)
    workflow = get_workflow(operation.workflow_id or work_order.workflow_id)
    if operation.workflow_stage_index >= len(workflow.stages):
        return DispatchOutcome(False, operation.id, work_order.id,
                               error=f"Workflow stage out of range: {operation.workflow_stage_index}")
    stage = workflow.stages[operation.workflow_stage_index]

    if not claim_operation(operation.id, repo=repo):
        return DispatchOutcome(False, operation.id, work_order.id, error="Operation claim failed")

    preferred = agent_id or (operation.assignee_agent_ids[0] if operation.assignee_agent_ids else None)
    resolved = _resolve_stage_agent(repo, stage, preferred)
    if resolved is None:
        error = f"No available agent for workflow stage: {stage.ref}"
        with repo.transaction():
            operation = repo.require_operation(operation_id)
            _set_status(repo, operation, "blocked", blocked_reason=error, **_release_claim())
        return DispatchOutcome(False, operation.id, work_order.id, error=error)

    with repo.transaction():
        operation = repo.write_operation(_WRITER, operation.id, assignee_agent_ids=[resolved],
                                         blocked_reason=None)
        session_key = _open_session(repo, resolved, work_order.id, operation.id)
        if operation.execution_type == "loop" and operation.current_story_id:
            repo.write_story(_WRITER, operation.current_story_id, status="running")

    operation = repo.require_operation(operation_id)
    payload = {
        "operation_id": operation.id,
        "workflow_id": workflow.id,
        "stage_index": operation.workflow_stage_index,
        "stage_ref": stage.ref,
        "agent_id": resolved,
        "session_key": session_key,
    }
    if operation.current_story_id:
        payload["story_id"] = operation.current_story_id
    try:
        receipt = stream_to_receipt(resolved, _build_task(repo, work_order, operation, stage), session_key,
                                    work_order_id=work_order.id, operation_id=operation.id, repo=repo)
    except Exception as e:
        # The receipt is already finalized; the claim must not outlive the failure.
        error = f"Dispatch failed unexpectedly: {type(e).__name__}: {e}"
        logger.error(f"{error} (operation {operation.id})")
        _fail_dispatch(repo, operation_id, error, payload)
        return DispatchOutcome(False, operation.id, work_order.id, resolved, session_key, error=error)

    payload["receipt_id"] = receipt.id
    if receipt.exit_code != 0:
        error = (receipt.stderr or "").strip() or f"Runtime send failed with exit {receipt.exit_code}"
        _fail_dispatch(repo, operation_id, error, payload)
        return DispatchOutcome(False, operation.id, work_order.id, resolved, session_key,
                               receipt.id, error)

    _activity(repo, "workflow.dispatched", "operation", operation.id,
              f"Dispatched {resolved} for stage {operation.workflow_stage_index + 1}", payload)
    return DispatchOutcome(True, operation.id, work_order.id, resolved, session_key, receipt.id)


def _dispatch_or_block(repo: Repository, operation_id: str,
                       agent_id: Optional[str] = None) -> DispatchOutcome:
    outcome = dispatch_operation(operation_id, agent_id, repo=repo)
    if not outcome.dispatched:
        with repo.transaction():
            work_order = repo.require_work_order(outcome.work_order_id)
            if work_order.state in ("active", "review"):
                _set_state(repo, work_order, "blocked", blocked_reason=outcome.error)
    return outcome


def _require_runtime():
    availability = get_runtime().check_availability()
    if not availability.available:
        raise RuntimeUnavailableError("Agent runtime unavailable",
                                      details=availability.to_dict())


# --- start / resume ------------------------------------------------------

def start_work_order(work_order_id: str, context: Optional[Dict[str, Any]] = None,
                     force: bool = False, workflow_id: Optional[str] = None,
                     agent_id: Optional[str] = None, actor: str = MANAGER,
                     repo: Optional[Repository] = None) -> StartResult:
    """The only planned -> active path. Raises WorkflowError when the start is rejected."""
    repo = repo or get_repository()
    work_order = repo.require_work_order(work_order_id)

    if work_order.state == "blocked":
        raise WorkflowError(ErrorCode.WORKFLOW_START_REJECTED,
                            f"Work order {work_order.code} is blocked; use resume flow instead of start",
                            details={"state": work_order.state})
    if work_order.blocked_reason and SECURITY_VETO_REASON in work_order.blocked_reason:
        raise WorkflowError(ErrorCode.SECURITY_VETO_FINAL,
                            f"Work order {work_order.code} is permanently blocked by security veto")
    if not force and work_order.state != "planned":
        raise WorkflowError(ErrorCode.WORKFLOW_START_REJECTED,
                            f"Work order {work_order.code} is not startable from state {work_order.state}",
                            details={"state": work_order.state})

    open_ops = repo.list_operations(work_order_id, statuses=OPEN_OPERATION_STATUSES)
    if open_ops and not force:
        raise WorkflowError(ErrorCode.WORKFLOW_START_REJECTED,
                            f"Work order {work_order.code} already has active operations",
                            details={"open_operation_ids": [op.id for op in open_ops]})

    initial_context = dict(context or {})
    selected_id, selected_by = select_workflow(work_order.tags, work_order.priority,
                                               requested=workflow_id, existing=work_order.workflow_id)
    workflow = get_workflow(selected_id)
    stage_index, _ = next_runnable_stage(workflow, 0, initial_context)
    if stage_index is None:
        raise WorkflowError(ErrorCode.WORKFLOW_START_REJECTED,
                            f"Workflow {workflow.id} has no runnable stages")

    stage = workflow.stages[stage_index]
    stage_agent = _resolve_stage_agent(repo, stage, agent_id)
    if stage_agent is None:
        raise WorkflowError(ErrorCode.WORKFLOW_START_REJECTED,
                            f"No available agent for workflow stage: {stage.ref}",
                            details={"stage_ref": stage.ref})

    _require_runtime()

    with repo.transaction():
        work_order = repo.require_work_order(work_order_id)
        if force:
            for op in repo.list_operations(work_order_id, statuses=OPEN_OPERATION_STATUSES):
                _set_status(repo, op, "blocked", blocked_reason="Superseded by workflow restart",
                            **_release_claim())
        work_order = _set_state(repo, work_order, "active", workflow_id=workflow.id,
                                current_stage=stage_index)
        _activity(repo, "workflow.started", "work_order", work_order_id,
                  f"Started workflow: {workflow.id}",
                  {"workflowId": workflow.id, "startIndex": stage_index, "stageRef": stage.ref,
                   "selectedBy": selected_by, "initialContext": initial_context, "actor": actor})
        operation = _create_stage_operation(repo, work_order, workflow, stage_index, 0, stage_agent)

    outcome = _dispatch_or_block(repo, operation.id, stage_agent)
    if not outcome.dispatched:
        raise WorkflowError(ErrorCode.WORKFLOW_START_REJECTED,
                            outcome.error or "Failed to dispatch workflow start operation",
                            details={"operation_id": operation.id})

    return StartResult(work_order_id, workflow.id, operation.id, stage_index,
                       outcome.agent_id, outcome.session_key)


def dispatch_work_order(work_order_id: str, agent_id: Optional[str] = None,
                        trigger: str = "manual", repo: Optional[Repository] = None) -> DispatchOutcome:
    """Dispatcher entry point: start a planned work order on a chosen agent.

    Never raises for a rejected or failed start; the failure is recorded and returned.
    """
    repo = repo or get_repository()
    try:
        result = start_work_order(work_order_id, agent_id=agent_id, actor=MANAGER, repo=repo)
    except ClawControlError as e:
        _activity(repo, "manager.dispatch.failed", "work_order", work_order_id,
                  f"Dispatch failed: {e.message}",
                  {"agent_id": agent_id, "trigger": trigger, "code": e.code.value, "error": e.message},
                  risk_level="caution", category="dispatch")
        return DispatchOutcome(False, "", work_order_id, agent_id, error=e.message)
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        logger.error(f"Unexpected dispatch failure for {work_order_id}: {error}")
        _activity(repo, "manager.dispatch.failed", "work_order", work_order_id,
                  f"Dispatch failed: {error}",
                  {"agent_id": agent_id, "trigger": trigger, "code": "UNEXPECTED_ERROR", "error": error},
                  risk_level="caution", category="dispatch")
        return DispatchOutcome(False, "", work_order_id, agent_id, error=error)

    _activity(repo, "manager.dispatch.assigned", "work_order", work_order_id,
              f"Dispatched to {result.agent_id}",
              {"operation_id": result.operation_id, "agent_id": result.agent_id,
               "session_key": result.session_key, "workflow_id": result.workflow_id,
               "trigger": trigger},
              category="dispatch")
    return DispatchOutcome(True, result.operation_id, work_order_id, result.agent_id,
                           result.session_key)


def resume_work_order(work_order_id: str, reason: str = "manual", actor: str = MANAGER,
                      repo: Optional[Repository] = None) -> StartResult:
    """Unblock a work order and redispatch its most recent stalled operation."""
    repo = repo or get_repository()
    work_order = repo.require_work_order(work_order_id)
    if work_order.blocked_reason and SECURITY_VETO_REASON in work_order.blocked_reason:
        raise WorkflowError(ErrorCode.SECURITY_VETO_FINAL,
                            f"Work order {work_order.code} is permanently blocked by security veto")
    resume_context = {"resumed": True, "reason": reason}

    if work_order.state == "planned":
        return start_work_order(work_order_id, context=resume_context, actor=actor, repo=repo)

    candidates = repo.list_operations(work_order_id, statuses=("blocked", "todo", "rework"))
    if not candidates:
        if work_order.state == "blocked":
            with repo.transaction():
                _set_state(repo, repo.require_work_order(work_order_id), "active")
        return start_work_order(work_order_id, context=resume_context, force=True,
                                actor=actor, repo=repo)

    candidate = max(candidates, key=lambda op: (op.updated_at, op.created_at))
    if candidate.is_security_veto():
        raise WorkflowError(ErrorCode.SECURITY_VETO_FINAL,
                            f"Operation {candidate.id} is permanently blocked by security veto")

    _require_runtime()

    with repo.transaction():
        work_order = repo.require_work_order(work_order_id)
        _set_state(repo, work_order, "active")
        _set_status(repo, candidate, "todo", blocked_reason=None, **_release_claim())
        _activity(repo, "workflow.resumed", "work_order", work_order_id, "Resumed workflow execution",
                  {"operation_id": candidate.id, "reason": reason, "actor": actor})

    outcome = _dispatch_or_block(repo, candidate.id)
    if not outcome.dispatched:
        raise WorkflowError(ErrorCode.WORKFLOW_START_REJECTED,
                            outcome.error or "Failed to dispatch resumed operation",
                            details={"operation_id": candidate.id})

    operation = repo.require_operation(candidate.id)
    return StartResult(work_order_id, operation.workflow_id, operation.id,
                       operation.workflow_stage_index, outcome.agent_id, outcome.session_key)


# --- completion ----------------------------------------------------------

def _write_completion_receipt(repo: Repository, operation: Operation, stage: WorkflowStage,
                              signal: CompletionSignal) -> str:
    receipt = create_receipt("agent_completion", f"workflow:{stage.ref}",
                             work_order_id=operation.work_order_id, operation_id=operation.id,
                             repo=repo)
    output = signal.output
    if output is not None and not isinstance(output, str):
        output = json.dumps(output, default=str)
    if output:
        repo.update_receipt(receipt.id, stdout=output[-32 * 1024:])
    finalize_receipt(
        receipt.id, 0 if signal.succeeded else 1,
        parsed_json={"status": signal.status, "feedback": signal.feedback,
                     "artifacts": list(signal.artifacts)},
        repo=repo,
    )
    return receipt.id


def _story_output(signal: CompletionSignal, feedback: Optional[str]) -> Dict[str, Any]:
    return {"output": signal.output, "feedback": feedback}


def _redispatch_story(repo: Repository, parent: Operation, work_order: WorkOrder,
                      story: OperationStory, outcome: CompletionOutcome) -> CompletionOutcome:
    _set_status(repo, parent, "todo", current_story_id=story.id, blocked_reason=None,
                **_release_claim())
    _set_state(repo, work_order, "active", current_stage=parent.workflow_stage_index)
    outcome.next_operation_id = parent.id
    outcome.work_order_state = "active"
    return outcome


def _next_story_or_stage(repo: Repository, workflow: Workflow, parent: Operation,
                         work_order: WorkOrder, outcome: CompletionOutcome) -> CompletionOutcome:
    pending = repo.list_stories(parent.id, status="pending")
    if pending:
        return _redispatch_story(repo, parent, work_order, pending[0], outcome)

    parent = _set_status(repo, parent, "done", current_story_id=None, blocked_reason=None,
                         **_release_claim())
    _activity(repo, "workflow.loop_completed", "operation", parent.id,
              f"All stories done for stage {parent.workflow_stage_index + 1}",
              {"workflow_id": workflow.id, "story_count": len(repo.list_stories(parent.id))})
    return _advance_to_next_stage(repo, workflow, parent, work_order, outcome)


def _story_failure(repo: Repository, workflow: Workflow, parent: Operation, work_order: WorkOrder,
                   story: OperationStory, feedback: Optional[str], reason: str,
                   outcome: CompletionOutcome) -> CompletionOutcome:
    """Retry a rejected story on its loop operation, or escalate once its retries are spent."""
    next_retry = story.retry_count + 1
    if next_retry > story.max_retries:
        repo.write_story(_WRITER, story.id, status="failed",
                         output={"verify_feedback": feedback, "reason": reason})
        _escalate(repo, parent, work_order, "story_retry_exhausted",
                  feedback or f"Story {story.story_index + 1} was rejected: {story.title}",
                  "scope_change", max_iterations=story.max_retries)
        outcome.work_order_state = "blocked"
        return outcome

    story = repo.write_story(_WRITER, story.id, status="pending", retry_count=next_retry,
                             output={"verify_feedback": feedback, "reason": reason})
    _activity(repo, "workflow.story_retry", "operation", parent.id,
              f"Retrying story {story.story_index + 1}: {story.title}",
              {"workflow_id": workflow.id, "story_id": story.id, "retry_count": next_retry,
               "max_retries": story.max_retries, "reason": reason})
    return _redispatch_story(repo, parent, work_order, story, outcome)


def _advance_loop_stage(repo: Repository, workflow: Workflow, stage: WorkflowStage,
                        operation: Operation, work_order: WorkOrder, signal: CompletionSignal,
                        feedback: Optional[str], outcome: CompletionOutcome) -> CompletionOutcome:
    """A loop operation's first completion plans its stories; each later one finishes a story."""
    if not operation.current_story_id:
        context = _load_initial_context(repo, work_order.id)
        max_stories = resolve_loop_max_stories(stage.ref, stage.loop.max_stories, context)
        planned = parse_stories_from_output(signal.output, max_stories)
        if not planned:
            _escalate(repo, operation, work_order, "story_retry_exhausted",
                      feedback or "Loop stage did not return STORIES_JSON.", "scope_change",
                      max_iterations=operation.max_retries)
            outcome.work_order_state = "blocked"
            return outcome

        stories = [repo.create_story(_WRITER, operation, index, story.story_key, story.title,
                                     story.description, story.acceptance_criteria)
                   for index, story in enumerate(planned)]
        _activity(repo, "workflow.loop_initialized", "operation", operation.id,
                  f"Planned {len(stories)} stories for {stage.ref}",
                  {"workflow_id": workflow.id, "storyCount": len(stories),
                   "maxStoriesConfigured": stage.loop.max_stories, "maxStoriesUsed": max_stories})
        return _redispatch_story(repo, operation, work_order, stories[0], outcome)

    story = repo.require_story(operation.current_story_id)
    if not signal.succeeded:
        return _story_failure(repo, workflow, operation, work_order, story, feedback,
                              "story_rejected", outcome)

    verify_ref = stage.loop.verify_stage_ref
    if not (stage.loop.verify_each and verify_ref):
        repo.write_story(_WRITER, story.id, status="done", output=_story_output(signal, feedback))
        return _next_story_or_stage(repo, workflow, operation, work_order, outcome)

    verify_index = workflow.stage_index(verify_ref)
    if verify_index == -1:
        raise WorkflowError(ErrorCode.INVALID_TRANSITION, f"Verify stage not found: {verify_ref}")
    verify_stage = workflow.stages[verify_index]
    story = repo.write_story(_WRITER, story.id, output=_story_output(signal, feedback))
    verify_op = _create_stage_operation(repo, work_order, workflow, verify_index,
                                        operation.iteration_count,
                                        _resolve_stage_agent(repo, verify_stage),
                                        verify_story=story, parent_operation_id=operation.id)
    _set_status(repo, operation, "review", blocked_reason=None, **_release_claim())
    _set_state(repo, work_order, "active", current_stage=verify_index)
    _activity(repo, "workflow.story_verify_requested", "operation", verify_op.id,
              f"Verifying story {story.story_index + 1}: {story.title}",
              {"workflow_id": workflow.id, "parent_operation_id": operation.id,
               "story_id": story.id, "verify_stage_ref": verify_ref})
    outcome.next_operation_id = verify_op.id
    outcome.work_order_state = "active"
    return outcome


def _advance_story_verify(repo: Repository, workflow: Workflow, operation: Operation,
                          work_order: WorkOrder, signal: CompletionSignal, feedback: Optional[str],
                          outcome: CompletionOutcome) -> CompletionOutcome:
    target = operation.verify_target()
    parent = repo.require_operation(target["parent_operation_id"])
    story = repo.require_story(target["story_id"])

    if signal.succeeded:
        _set_status(repo, operation, "done", notes=feedback or operation.notes, blocked_reason=None,
                    **_release_claim())
        built = (story.output or {}).get("output")
        repo.write_story(_WRITER, story.id, status="done",
                         output={"output": built, "verify_feedback": feedback})
        return _next_story_or_stage(repo, workflow, parent, work_order, outcome)

    _set_status(repo, operation, "blocked", notes=feedback or "",
                blocked_reason=feedback or signal.status, **_release_claim())
    return _story_failure(repo, workflow, parent, work_order, story, feedback, "verify_rejected",
                          outcome)


def _advance(repo: Repository, operation: Operation, work_order: WorkOrder,
             signal: CompletionSignal) -> CompletionOutcome:
    """Apply a completion inside the caller's transaction. Returns the op to dispatch, if any."""
    workflow = get_workflow(operation.workflow_id or work_order.workflow_id)
    if operation.workflow_stage_index >= len(workflow.stages):
        raise WorkflowError(ErrorCode.INVALID_TRANSITION,
                            f"Workflow stage out of range: {operation.workflow_stage_index}")
    stage = workflow.stages[operation.workflow_stage_index]
    feedback = (signal.feedback or "").strip() or None
    outcome = CompletionOutcome(True, False, None, work_order.id, operation.id)

    _write_completion_receipt(repo, operation, stage, signal)

    if signal.status == "vetoed" and stage.can_veto:
        reason = f"{SECURITY_VETO_REASON}: {feedback}" if feedback else SECURITY_VETO_REASON
        _set_status(repo, operation, "blocked", notes=feedback or "", blocked_reason=reason,
                    escalation_reason=SECURITY_VETO_REASON, escalated_at=datetime.now(),
                    **_release_claim())
        _set_state(repo, work_order, "blocked", blocked_reason=reason)
        _activity(repo, "workflow.security_veto", "work_order", work_order.id,
                  f"Security veto at stage {stage.ref} permanently blocked the run",
                  {"workflow_id": workflow.id, "stage_index": operation.workflow_stage_index,
                   "stage_ref": stage.ref, "operation_id": operation.id,
                   "feedback": feedback, "final": True},
                  risk_level="danger")
        outcome.work_order_state = "blocked"
        return outcome

    if operation.verify_target():
        return _advance_story_verify(repo, workflow, operation, work_order, signal, feedback, outcome)
    if stage.loop and operation.execution_type == "loop":
        return _advance_loop_stage(repo, workflow, stage, operation, work_order, signal, feedback,
                                   outcome)

    if signal.status in ("rejected", "vetoed") and stage.loop_target:
        cap = stage.iteration_cap
        if operation.iteration_count >= cap:
            _escalate(repo, operation, work_order, "iteration_cap_exceeded", feedback,
                      "scope_change", max_iterations=cap)
            outcome.work_order_state = "blocked"
            return outcome

        target_index = workflow.stage_index(stage.loop_target)
        if target_index == -1:
            raise WorkflowError(ErrorCode.INVALID_TRANSITION,
                                f"Loop target not found: {stage.loop_target}")
        target_stage = workflow.stages[target_index]
        _set_status(repo, operation, "rework", notes=feedback or "", blocked_reason=None,
                    **_release_claim())
        loop_op = _create_stage_operation(
            repo, work_order, workflow, target_index, operation.iteration_count + 1,
            _resolve_stage_agent(repo, target_stage), notes=feedback or "",
            loop_target_op_id=operation.id, rework=True,
        )
        _set_state(repo, work_order, "active", current_stage=target_index)
        _activity(repo, "workflow.loop", "operation", loop_op.id,
                  f"Looped back to {target_stage.ref} (iteration {loop_op.iteration_count})",
                  {"workflow_id": workflow.id, "from_stage_index": operation.workflow_stage_index,
                   "to_stage_index": target_index, "stage_ref": target_stage.ref,
                   "previous_op_id": operation.id})
        outcome.next_operation_id = loop_op.id
        outcome.work_order_state = "active"
        return outcome

    if not signal.succeeded:
        reason = feedback or signal.status
        _set_status(repo, operation, "blocked", notes=feedback or "", blocked_reason=reason,
                    **_release_claim())
        _set_state(repo, work_order, "blocked", blocked_reason=reason)
        outcome.work_order_state = "blocked"
        return outcome

    _set_status(repo, operation, "done", notes=feedback or operation.notes, blocked_reason=None,
                **_release_claim())
    return _advance_to_next_stage(repo, workflow, operation, work_order, outcome)


def _advance_to_next_stage(repo: Repository, workflow: Workflow, operation: Operation,
                           work_order: WorkOrder, outcome: CompletionOutcome) -> CompletionOutcome:
    context = _load_initial_context(repo, work_order.id)
    next_index, skipped = next_runnable_stage(workflow, operation.workflow_stage_index + 1, context)
    for skipped_stage in skipped:
        _activity(repo, "workflow.stage_skipped", "work_order", work_order.id,
                  f"Skipped optional stage: {skipped_stage.ref} ({skipped_stage.condition})",
                  {"workflow_id": workflow.id, "stage_ref": skipped_stage.ref,
                   "condition": skipped_stage.condition})

    if next_index is None:
        _set_state(repo, work_order, "shipped", shipped_at=datetime.now())
        _activity(repo, "work_order.shipped", "work_order", work_order.id,
                  "Work order completed all workflow stages", {"workflow_id": workflow.id})
        outcome.work_order_state = "shipped"
        return outcome

    next_stage = workflow.stages[next_index]
    next_op = _create_stage_operation(repo, work_order, workflow, next_index,
                                      operation.iteration_count,
                                      _resolve_stage_agent(repo, next_stage))
    _set_state(repo, work_order, "active", current_stage=next_index)
    _activity(repo, "workflow.advanced", "operation", next_op.id,
              f"Advanced to stage {next_index + 1}/{len(workflow.stages)} ({next_stage.ref})",
              {"workflow_id": workflow.id, "from_stage_index": operation.workflow_stage_index,
               "to_stage_index": next_index, "stage_ref": next_stage.ref})
    outcome.next_operation_id = next_op.id
    outcome.work_order_state = "active"
    return outcome


def advance_on_completion(operation_id: str, signal: CompletionSignal,
                          repo: Optional[Repository] = None) -> CompletionOutcome:
    """Apply a runtime completion signal.

    Out-of-order, stale and duplicate signals are no-ops with a code, never errors.
    """
    repo = repo or get_repository()
    token = (signal.completion_token or "").strip()
    with repo.transaction():
        operation = repo.require_operation(operation_id)
        work_order = repo.require_work_order(operation.work_order_id)

        if operation.status != "in_progress":
            _activity(repo, "workflow.completion_ignored", "operation", operation_id,
                      f"Ignored completion: operation not in_progress ({operation.status})",
                      {"status": operation.status, "result_status": signal.status})
            outcome = CompletionOutcome(False, True, ErrorCode.COMPLETION_INVALID_STATE.value,
                                        work_order.id, operation_id, work_order_state=work_order.state,
                                        reason=f"Operation is {operation.status}, expected in_progress")
        elif work_order.state != "active":
            _activity(repo, "workflow.completion_stale", "operation", operation_id,
                      f"Ignored stale completion for non-active work order ({work_order.state})",
                      {"work_order_id": work_order.id, "work_order_state": work_order.state,
                       "result_status": signal.status})
            outcome = CompletionOutcome(False, True, ErrorCode.COMPLETION_STALE_IGNORED.value,
                                        work_order.id, operation_id, work_order_state=work_order.state,
                                        reason=f"Work order is {work_order.state}, expected active")
        elif token and not repo.record_completion_token(token, operation_id):
            outcome = CompletionOutcome(False, True, ErrorCode.COMPLETION_STALE_IGNORED.value,
                                        work_order.id, operation_id, work_order_state=work_order.state,
                                        reason="Duplicate completion token for operation")
        else:
            outcome = _advance(repo, operation, work_order, signal)

    logger.log_completion_signal(operation_id, signal.status, outcome.code or "APPLIED", outcome.noop)

    if outcome.next_operation_id:
        dispatched = _dispatch_or_block(repo, outcome.next_operation_id)
        if not dispatched.dispatched:
            outcome.work_order_state = repo.require_work_order(work_order.id).state
    return outcome


# --- stale recovery ------------------------------------------------------

def recover_stale_operations(now: Optional[datetime] = None, limit: Optional[int] = None,
                             auto_dispatch: bool = True,
                             repo: Optional[Repository] = None) -> StaleRecoveryResult:
    """Retry or escalate in_progress operations whose claim expired or that stopped moving."""
    repo = repo or get_repository()
    now = now or datetime.now()
    if not repo.acquire_lease(RECOVERY_LEASE, "workflow_engine", 60, now=now.timestamp()):
        return StaleRecoveryResult(lock_acquired=False)

    result = StaleRecoveryResult()
    try:
        cutoff = now - timedelta(seconds=config.STALE_OPERATION_SEC)
        candidates = [
            op for op in repo.list_operations(statuses=("in_progress",))
            if (op.claim_expires_at and op.claim_expires_at < now) or op.updated_at < cutoff
        ]
        candidates.sort(key=lambda op: op.updated_at)
        if limit is not None:
            candidates = candidates[:config.clamp_dispatch_limit(limit)]
        result.scanned = len(candidates)

        for operation in candidates:
            try:
                if operation.retry_count < config.MAX_STALE_RETRIES:
                    with repo.transaction():
                        _set_status(repo, operation, "todo", retry_count=operation.retry_count + 1,
                                    blocked_reason=None, **_release_claim())
                        _activity(repo, "workflow.stale_recovered", "operation", operation.id,
                                  "Recovered stale operation and queued retry",
                                  {"retry_count": operation.retry_count + 1,
                                   "max_retries": config.MAX_STALE_RETRIES})
                    result.recovered += 1
                    if auto_dispatch:
                        _dispatch_or_block(repo, operation.id)
                    continue

                with repo.transaction():
                    work_order = repo.require_work_order(operation.work_order_id)
                    _escalate(repo, operation, work_order, "stale_timeout_exceeded",
                              "Operation timed out with no progress and exceeded retry budget.",
                              "risky_action", max_iterations=config.MAX_STALE_RETRIES)
                result.escalated += 1
            except ClawControlError as e:
                result.failures += 1
                logger.warning(f"Stale recovery failed for {operation.id}: {e.message}")
                _activity(repo, "workflow.stale_recovery_failed", "operation", operation.id,
                          "Failed stale recovery attempt", {"error": e.message},
                          risk_level="caution")
    finally:
        repo.release_lease(RECOVERY_LEASE, "workflow_engine")

    logger.log_operation("workflow.stale_recovery", "success", result.to_dict())
    return result


# --- operator requests ---------------------------------------------------

OPERATOR_TRANSITIONS = {
    "shipped": ActionKind.WORK_ORDER_SHIP,
    "cancelled": ActionKind.WORK_ORDER_CANCEL,
}


def request_work_order_transition(work_order_id: str, target: str, actor: str,
                                  typed_confirm_text: Optional[str] = None,
                                  repo: Optional[Repository] = None) -> WorkOrder:
    """Operator-requested terminal move (ship or cancel), checked by the governor."""
    repo = repo or get_repository()
    action_kind = OPERATOR_TRANSITIONS.get(target)
    if action_kind is None:
        raise ManagerControlledError(ErrorCode.MANAGER_CONTROLLED_STATE,
                                     f"Work order state '{target}' is manager-controlled",
                                     details={"requested": target,
                                              "operator_targets": sorted(OPERATOR_TRANSITIONS)})

    work_order = repo.require_work_order(work_order_id)
    validate_transition("work_order", work_order.state, target)

    with governed_action(repo, action_kind, actor, work_order_id=work_order_id,
                         typed_confirm_text=typed_confirm_text):
        with repo.transaction():
            work_order = repo.require_work_order(work_order_id)
            if target == "cancelled":
                for op in repo.list_operations(work_order_id, statuses=OPEN_OPERATION_STATUSES):
                    _set_status(repo, op, "blocked", blocked_reason="Work order cancelled",
                                **_release_claim())
                work_order = _set_state(repo, work_order, "cancelled")
            else:
                work_order = _set_state(repo, work_order, "shipped", shipped_at=datetime.now())
            repo.add_activity(type=f"work_order.{target}", actor=actor,
                              actor_type="user" if actor.startswith("user") else "system",
                              entity_type="work_order", entity_id=work_order_id,
                              summary=f"{work_order.code} {target} by {actor}",
                              payload={"action_kind": action_kind.value},
                              category="work_order", risk_level="caution")
    return work_order


def reject_manual_operation_graph():
    """Operations are expanded from workflows by this engine; generic creation is gone."""
    raise ManagerControlledError(
        ErrorCode.MANAGER_CONTROLLED_OPERATION_GRAPH,
        "Operation graph is manager-controlled; operations are created by the workflow engine",
    )
