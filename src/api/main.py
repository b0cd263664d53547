"""
ClawControl HTTP API.

Every mutating route goes through the governor or the workflow engine.
ClawControlError subclasses become structured 4xx bodies `{error, code, details}`;
governor denials also carry the policy.
"""

from fastapi import FastAPI, Header, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
from datetime import datetime

from .schemas import (
    HealthResponse,
    ErrorResponse,
    EnforceRequest,
    WorkOrderCreateRequest,
    WorkOrderUpdateRequest,
    WorkOrderStartRequest,
    WorkOrderResumeRequest,
    OperationUpdateRequest,
    CompletionRequest,
    AgentCreateRequest,
    AgentUpdateRequest,
    ApprovalCreateRequest,
    ApprovalDecisionRequest,
    DispatchRunRequest,
    SessionAbortRequest,
    PackageCreateRequest,
    PackageDeployRequest,
    ReceiptCreateRequest,
    ReceiptAppendRequest,
    ReceiptFinalizeRequest,
    ToolCheckRequest,
)
from ..core import approval as approvals
from ..core.config import VERSION, debug_enabled
from ..core.dao import SQLiteRepository, get_repository, new_id
from ..core.db import health_check
from ..core.dispatcher import get_dispatch_status, run_dispatch_pass
from ..core.errors import ClawControlError, ErrorCode, NotFoundError, UnknownActionKindError
from ..core.governor import enforce_governor, governed_action
from ..core.policies import ACTION_POLICIES, ActionKind, get_policy
from ..core.receipts import append_receipt, create_receipt, finalize_receipt
from ..core.schema import StagedPackage
from ..core.state_machine import get_valid_transitions
from ..core.tool_policy import check_tool_policy
from ..core.workflow_engine import (
    CompletionSignal,
    advance_on_completion,
    reject_manual_operation_graph,
    request_work_order_transition,
    resume_work_order,
    start_work_order,
)
from src.agents.runtime import abort_session_runs, get_runtime, list_inflight_runs
from util.logging import logger

# Initialize the FastAPI application
app = FastAPI(
    title="ClawControl Governor API",
    version=VERSION,
    description="Action policy enforcement and workflow control for agent work orders",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

# Add CORS middleware to allow frontend connections
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

AGENT_EDIT_FIELDS = ("name", "role", "station", "wip_limit", "capabilities")


def resolve_actor(x_actor: Optional[str], x_actor_type: Optional[str]) -> str:
    """Actor string such as `user:operator` from the X-Actor / X-Actor-Type headers."""
    actor = (x_actor or "").strip() or "operator"
    if ":" in actor:
        return actor
    return f"{(x_actor_type or 'user').strip() or 'user'}:{actor}"


def _actor_type(actor: str) -> str:
    return actor.split(":", 1)[0]


@app.exception_handler(ClawControlError)
async def clawcontrol_error_handler(request, exc: ClawControlError):
    """Structured error body with a machine-readable code."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code.value}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    repo = get_repository()
    if isinstance(repo, SQLiteRepository) and repo.db_path != ":memory:":
        db_health = health_check(repo.db_path)
    else:
        db_health = True
    runtime = get_runtime().check_availability()

    return HealthResponse(
        status="healthy" if db_health and runtime.available else "degraded",
        version=VERSION,
        db_health=db_health,
        repository=type(repo).__name__,
        runtime=runtime.to_dict(),
    )


# --- governor ------------------------------------------------------------

@app.get("/policies")
def list_policies_endpoint():
    return {"policies": [policy.to_dict() for policy in ACTION_POLICIES.values()]}


@app.get("/policies/{action_kind}")
def get_policy_endpoint(action_kind: str):
    try:
        policy = get_policy(action_kind)
    except UnknownActionKindError:
        raise NotFoundError("Policy", action_kind)
    return policy.to_dict()


@app.post("/governor/enforce")
def enforce_endpoint(req: EnforceRequest, x_actor: Optional[str] = Header(None),
                     x_actor_type: Optional[str] = Header(None)):
    """Dry check of an action against its policy. Denials are recorded."""
    actor = resolve_actor(x_actor, x_actor_type)
    pending = enforce_governor(None, req.action_kind, actor,
                               work_order_id=req.work_order_id, operation_id=req.operation_id,
                               typed_confirm_text=req.typed_confirm_text)
    return {**pending.result.to_dict(), "state": pending.state}


# --- work orders ---------------------------------------------------------

@app.get("/work-orders")
def list_work_orders_endpoint(state: Optional[str] = None, limit: Optional[int] = Query(None, ge=1)):
    items = get_repository().list_work_orders(state=state, limit=limit)
    return {"work_orders": [wo.to_dict() for wo in items]}


@app.post("/work-orders")
def create_work_order_endpoint(req: WorkOrderCreateRequest, x_actor: Optional[str] = Header(None),
                               x_actor_type: Optional[str] = Header(None)):
    """Intake a planned work order."""
    actor = resolve_actor(x_actor, x_actor_type)
    repo = get_repository()
    with repo.transaction():
        work_order = repo.create_work_order(
            req.title, goal_md=req.goal_md, priority=req.priority, workflow_id=req.workflow_id,
            routing_template=req.routing_template, tags=req.tags, owner=req.owner,
        )
        repo.add_activity(type="work_order.created", actor=actor, actor_type=_actor_type(actor),
                          entity_type="work_order", entity_id=work_order.id,
                          summary=f"Created {work_order.code}: {work_order.title}",
                          payload={"priority": work_order.priority, "tags": work_order.tags},
                          category="work_order")
    return work_order.to_dict()


@app.get("/work-orders/{work_order_id}")
def get_work_order_endpoint(work_order_id: str):
    repo = get_repository()
    work_order = repo.require_work_order(work_order_id)
    return {
        **work_order.to_dict(),
        "operations": [op.to_dict() for op in repo.list_operations(work_order_id)],
        "approvals": [a.to_dict() for a in repo.list_approvals(work_order_id=work_order_id)],
    }


@app.patch("/work-orders/{work_order_id}")
def update_work_order_endpoint(work_order_id: str, req: WorkOrderUpdateRequest,
                               x_actor: Optional[str] = Header(None),
                               x_actor_type: Optional[str] = Header(None)):
    """Plain edits, or a governed ship/cancel. Other state changes belong to the engine."""
    actor = resolve_actor(x_actor, x_actor_type)
    repo = get_repository()
    values = req.model_dump(exclude_unset=True)
    target = values.pop("state", None)
    typed_confirm_text = values.pop("typed_confirm_text", None)

    work_order = repo.require_work_order(work_order_id)
    if target is not None:
        work_order = request_work_order_transition(work_order_id, target, actor,
                                                   typed_confirm_text=typed_confirm_text, repo=repo)
    if values:
        work_order = repo.update_work_order(work_order_id, **values)
    return work_order.to_dict()


@app.post("/work-orders/{work_order_id}/start")
def start_work_order_endpoint(work_order_id: str, req: Optional[WorkOrderStartRequest] = None,
                              x_actor: Optional[str] = Header(None),
                              x_actor_type: Optional[str] = Header(None)):
    req = req or WorkOrderStartRequest()
    actor = resolve_actor(x_actor, x_actor_type)
    result = start_work_order(work_order_id, context=req.context, force=req.force,
                              workflow_id=req.workflow_id, agent_id=req.agent_id, actor=actor)
    return result.to_dict()


@app.post("/work-orders/{work_order_id}/resume")
def resume_work_order_endpoint(work_order_id: str, req: Optional[WorkOrderResumeRequest] = None,
                               x_actor: Optional[str] = Header(None),
                               x_actor_type: Optional[str] = Header(None)):
    req = req or WorkOrderResumeRequest()
    actor = resolve_actor(x_actor, x_actor_type)
    return resume_work_order(work_order_id, reason=req.reason, actor=actor).to_dict()


@app.get("/transitions/{entity_type}/{state}")
def transitions_endpoint(entity_type: str, state: str):
    return {"entity_type": entity_type, "state": state,
            "valid_transitions": get_valid_transitions(entity_type, state)}


# --- operations ----------------------------------------------------------

@app.get("/operations")
def list_operations_endpoint(work_order_id: Optional[str] = None, status: Optional[str] = None):
    statuses = [status] if status else None
    items = get_repository().list_operations(work_order_id, statuses=statuses)
    return {"operations": [op.to_dict() for op in items]}


@app.post("/operations")
def create_operation_endpoint():
    reject_manual_operation_graph()


@app.get("/operations/{operation_id}")
def get_operation_endpoint(operation_id: str):
    return get_repository().require_operation(operation_id).to_dict()


@app.get("/operations/{operation_id}/stories")
def list_stories_endpoint(operation_id: str, status: Optional[str] = None):
    repo = get_repository()
    repo.require_operation(operation_id)
    return {"stories": [story.to_dict() for story in repo.list_stories(operation_id, status=status)]}


@app.patch("/operations/{operation_id}")
def update_operation_endpoint(operation_id: str, req: OperationUpdateRequest):
    """Notes and blocked reason only; status is rejected by the repository."""
    values = req.model_dump(exclude_unset=True)
    return get_repository().update_operation(operation_id, **values).to_dict()


# --- agents --------------------------------------------------------------

@app.post("/agents/completion")
def completion_endpoint(req: CompletionRequest):
    """Completion signal from the runtime. Stale and duplicate signals are 200 no-ops."""
    signal = CompletionSignal(status=req.status, output=req.output, feedback=req.feedback,
                              artifacts=req.artifacts, completion_token=req.completion_token)
    return advance_on_completion(req.operation_id, signal).to_dict()


@app.get("/agents")
def list_agents_endpoint(status: Optional[str] = None):
    return {"agents": [agent.to_dict() for agent in get_repository().list_agents(status=status)]}


@app.post("/agents")
def create_agent_endpoint(req: AgentCreateRequest, x_actor: Optional[str] = Header(None),
                          x_actor_type: Optional[str] = Header(None)):
    actor = resolve_actor(x_actor, x_actor_type)
    repo = get_repository()
    with governed_action(repo, ActionKind.AGENT_CREATE, actor,
                         typed_confirm_text=req.typed_confirm_text):
        agent = repo.create_agent(req.name, role=req.role, station=req.station, kind=req.kind,
                                  wip_limit=req.wip_limit, capabilities=req.capabilities)
        repo.add_activity(type="agent.created", actor=actor, actor_type=_actor_type(actor),
                          entity_type="agent", entity_id=agent.id,
                          summary=f"Created agent {agent.name}",
                          payload={"station": agent.station, "kind": agent.kind},
                          category="agent")
    return agent.to_dict()


def agent_action_kind(current_status: str, values: dict) -> Optional[ActionKind]:
    """Which governed action a PATCH amounts to, or None for no protected change."""
    action_kind = None
    status = values.get("status")
    if status and status != current_status:
        if status == "active" and current_status in ("error", "idle"):
            action_kind = ActionKind.AGENT_RESTART
        elif status == "idle" and current_status == "active":
            action_kind = ActionKind.AGENT_STOP
    if any(field in values for field in AGENT_EDIT_FIELDS):
        action_kind = action_kind or ActionKind.AGENT_EDIT
    return action_kind


@app.patch("/agents/{agent_id}")
def update_agent_endpoint(agent_id: str, req: AgentUpdateRequest, x_actor: Optional[str] = Header(None),
                          x_actor_type: Optional[str] = Header(None)):
    actor = resolve_actor(x_actor, x_actor_type)
    repo = get_repository()
    current = repo.get_agent(agent_id)
    if current is None:
        raise NotFoundError("Agent", agent_id)

    values = req.model_dump(exclude_unset=True)
    typed_confirm_text = values.pop("typed_confirm_text", None)
    action_kind = agent_action_kind(current.status, values)

    if action_kind is None:
        return repo.update_agent(agent_id, **values).to_dict() if values else current.to_dict()

    with governed_action(repo, action_kind, actor, typed_confirm_text=typed_confirm_text):
        agent = repo.update_agent(agent_id, **values)
        repo.add_activity(type="agent.action", actor=actor, actor_type=_actor_type(actor),
                          entity_type="agent", entity_id=agent_id,
                          summary=f"Agent {current.name} updated ({action_kind.value})",
                          payload={"action_kind": action_kind.value, "previous": current.to_dict(),
                                   "next": values},
                          category="agent", risk_level=get_policy(action_kind).risk_level)
    return agent.to_dict()


# --- approvals -----------------------------------------------------------

@app.get("/approvals")
def list_approvals_endpoint(status: Optional[str] = None, work_order_id: Optional[str] = None,
                            type: Optional[str] = None):
    items = approvals.list_approvals(status=status, work_order_id=work_order_id, type=type)
    return {"approvals": [a.to_dict() for a in items]}


@app.post("/approvals")
def create_approval_endpoint(req: ApprovalCreateRequest, x_actor: Optional[str] = Header(None),
                             x_actor_type: Optional[str] = Header(None)):
    actor = resolve_actor(x_actor, x_actor_type)
    approval = approvals.create_approval(req.work_order_id, req.type, req.question_md,
                                         operation_id=req.operation_id, actor=actor)
    return approval.to_dict()


@app.get("/approvals/{approval_id}")
def get_approval_endpoint(approval_id: str):
    return approvals.get_approval(approval_id).to_dict()


@app.patch("/approvals/{approval_id}")
def decide_approval_endpoint(approval_id: str, req: ApprovalDecisionRequest,
                             x_actor: Optional[str] = Header(None),
                             x_actor_type: Optional[str] = Header(None)):
    actor = resolve_actor(x_actor, x_actor_type)
    return approvals.decide_approval(approval_id, req.status, actor, note=req.note).to_dict()


# --- sessions ------------------------------------------------------------

@app.get("/sessions/{session_key}/runs")
def list_session_runs_endpoint(session_key: str):
    return {"runs": [run.to_dict() for run in list_inflight_runs(session_key)]}


@app.post("/sessions/{session_key}/abort")
def abort_session_endpoint(session_key: str, req: Optional[SessionAbortRequest] = None,
                           x_actor: Optional[str] = Header(None),
                           x_actor_type: Optional[str] = Header(None)):
    """Stop the session's in-flight streams. Each one finalizes its receipt with exit 130."""
    req = req or SessionAbortRequest()
    actor = resolve_actor(x_actor, x_actor_type)
    repo = get_repository()
    session = repo.get_session(session_key)
    if session is None:
        raise NotFoundError("Session", session_key)
    with governed_action(repo, ActionKind.CONSOLE_SESSION_ABORT, actor,
                         work_order_id=session.work_order_id, operation_id=session.operation_id,
                         typed_confirm_text=req.typed_confirm_text):
        receipt_ids = abort_session_runs(session_key)
        repo.add_activity(type="session.abort", actor=actor, actor_type=_actor_type(actor),
                          entity_type="session", entity_id=session_key,
                          summary=f"Abort requested for {session.agent_id}",
                          payload={"agent_id": session.agent_id, "receipt_ids": receipt_ids},
                          category="console", risk_level="caution")
    return {"session_key": session_key, "aborted": bool(receipt_ids), "receipt_ids": receipt_ids}


# --- dispatch ------------------------------------------------------------

@app.post("/dispatch/run")
def run_dispatch_endpoint(req: Optional[DispatchRunRequest] = None):
    """On-demand dispatch pass; shares the lock with the scheduled loop."""
    req = req or DispatchRunRequest()
    return run_dispatch_pass(limit=req.limit, dry_run=req.dry_run, trigger="manual").to_dict()


@app.get("/dispatch/status")
def dispatch_status_endpoint():
    return get_dispatch_status()


# --- packages ------------------------------------------------------------

@app.post("/packages")
def stage_package_endpoint(req: PackageCreateRequest):
    """Stage an analyzed package with its scan verdict."""
    package = StagedPackage(id=new_id("pkg"), name=req.name, sha256=req.sha256,
                            blocked_by_scan=req.blocked_by_scan, scan=req.scan,
                            alert_work_order_id=req.alert_work_order_id)
    return get_repository().save_package(package).to_dict()


@app.post("/packages/deploy")
def deploy_package_endpoint(req: PackageDeployRequest, x_actor: Optional[str] = Header(None),
                            x_actor_type: Optional[str] = Header(None)):
    """Deploy a staged package. A scan-blocked package needs the override text and two checks."""
    actor = resolve_actor(x_actor, x_actor_type)
    repo = get_repository()
    package = repo.get_package(req.package_id)
    if package is None:
        raise NotFoundError("Package", req.package_id)

    overriding = package.blocked_by_scan and req.override_scan_block
    if package.blocked_by_scan and not req.override_scan_block:
        raise ClawControlError(
            ErrorCode.PACKAGE_BLOCKED_BY_SCAN, "Package blocked by security scan", 409,
            details={"package_id": package.id, "sha256": package.sha256, "scan": package.scan,
                     "alert_work_order_id": package.alert_work_order_id},
        )

    override_text = get_policy(ActionKind.PACKAGE_DEPLOY_OVERRIDE_SCAN_BLOCK).confirm_text
    with governed_action(repo, ActionKind.PACKAGE_DEPLOY, actor,
                         typed_confirm_text=req.typed_confirm_text,
                         expected_confirm_text=override_text if overriding else None):
        if overriding:
            with governed_action(repo, ActionKind.PACKAGE_DEPLOY_OVERRIDE_SCAN_BLOCK, actor,
                                 typed_confirm_text=req.typed_confirm_text):
                package = repo.update_package(package.id, deployed_at=datetime.now())
                repo.add_activity(
                    type="security.scan_override", actor=actor, actor_type=_actor_type(actor),
                    entity_type="package", entity_id=package.sha256 or package.id,
                    summary=f"Security scan override used to deploy package ({package.id})",
                    payload={"package_id": package.id, "sha256": package.sha256,
                             "scan": package.scan,
                             "alert_work_order_id": package.alert_work_order_id},
                    category="security", risk_level="danger",
                )
        else:
            package = repo.update_package(package.id, deployed_at=datetime.now())
    return {"data": package.to_dict()}


# --- receipts ------------------------------------------------------------

@app.post("/receipts")
def create_receipt_endpoint(req: ReceiptCreateRequest):
    return create_receipt(req.kind, req.command_name, work_order_id=req.work_order_id,
                          operation_id=req.operation_id).to_dict()


@app.post("/receipts/{receipt_id}/append")
def append_receipt_endpoint(receipt_id: str, req: ReceiptAppendRequest):
    return append_receipt(receipt_id, req.stream, req.chunk).to_dict()


@app.patch("/receipts/{receipt_id}/finalize")
def finalize_receipt_endpoint(receipt_id: str, req: ReceiptFinalizeRequest):
    return finalize_receipt(receipt_id, req.exit_code, duration_ms=req.duration_ms,
                            parsed_json=req.parsed_json).to_dict()


@app.get("/receipts/{receipt_id}")
def get_receipt_endpoint(receipt_id: str):
    receipt = get_repository().get_receipt(receipt_id)
    if receipt is None:
        raise NotFoundError("Receipt", receipt_id)
    return receipt.to_dict()


# --- tools and activity --------------------------------------------------

@app.post("/tools/check")
def tool_check_endpoint(req: ToolCheckRequest):
    result = check_tool_policy(None, req.agent_id, req.tool, req.args, req.operation_id)
    if not result.allowed:
        return JSONResponse(status_code=403, content={
            "error": result.reason, "code": ErrorCode.POLICY_DENIED.value, "details": result.to_dict(),
        })
    return result.to_dict()


@app.get("/activities")
def list_activities_endpoint(entity_id: Optional[str] = None, type: Optional[str] = None,
                             limit: int = Query(100, ge=1, le=1000)):
    """Most recent activities, newest last."""
    items = get_repository().list_activities(entity_id=entity_id, type=type)
    return {"activities": [a.to_dict() for a in items[-limit:]]}


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    details = {"debug": str(exc)} if debug_enabled() else None
    content = ErrorResponse(error_type="INTERNAL_ERROR", message="Internal server error",
                            details=details)
    return JSONResponse(
        status_code=500,
        content=content.model_dump(mode="json"),
    )
