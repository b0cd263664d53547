"""
Manager dispatch loop - assigns planned work orders to available agents.

One pass runs at a time. The scheduled trigger and the manual trigger share an
in-process lock and a persisted `dispatch` lease, so two processes pointed at
the same database cannot overlap either. The runtime is checked before any
assignment and an unavailable runtime means nothing is written.
"""

import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from . import config
from .dao import Repository, get_repository
from .errors import WorkflowError
from .schema import OPEN_OPERATION_STATUSES, WorkOrder
from .workflow_engine import dispatch_work_order
from .workflows import get_workflow, next_runnable_stage, select_workflow
from src.agents.registry import AgentRoster
from src.agents.runtime import get_runtime
from util.logging import logger

LEASE_NAME = "dispatch"
OVERLAP_MESSAGE = "Dispatch loop already running; overlap prevented"

_pass_lock = threading.Lock()
_last_result: Optional["DispatchResult"] = None


@dataclass
class DispatchResult:
    dry_run: bool = False
    trigger: str = "manual"
    assigned: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    overlap_prevented: bool = False
    runtime_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "trigger": self.trigger,
            "assigned": self.assigned,
            "skipped": self.skipped,
            "failures": self.failures,
            "summary": self.summary,
            "overlap_prevented": self.overlap_prevented,
            "runtime_available": self.runtime_available,
        }


def _acquire_pass_lock(wait_sec: float) -> bool:
    if wait_sec > 0:
        return _pass_lock.acquire(timeout=wait_sec)
    return _pass_lock.acquire(blocking=False)


def _acquire_lease(repo: Repository, owner: str, wait_sec: float) -> bool:
    deadline = time.monotonic() + max(wait_sec, 0)
    while True:
        if repo.acquire_lease(LEASE_NAME, owner, config.DISPATCH_LEASE_TTL_SEC):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(0.05)


def _stage_specialty(work_order: WorkOrder) -> Optional[str]:
    """Specialty of the first stage the work order would start on."""
    workflow_id, _ = select_workflow(work_order.tags, work_order.priority,
                                     existing=work_order.workflow_id)
    workflow = get_workflow(workflow_id)
    index, _ = next_runnable_stage(workflow, 0, {})
    if index is None:
        return None
    return workflow.stages[index].specialty


def _overlap_result(dry_run: bool, trigger: str) -> DispatchResult:
    logger.log_operation("dispatch.pass", "overlap_prevented", {"trigger": trigger})
    return DispatchResult(
        dry_run=dry_run,
        trigger=trigger,
        skipped=[{"work_order_id": None, "code": None, "reason": OVERLAP_MESSAGE}],
        summary={"message": OVERLAP_MESSAGE, "timestamp": datetime.now().isoformat()},
        overlap_prevented=True,
    )


def run_dispatch_pass(limit: Optional[int] = None, dry_run: bool = False,
                      trigger: str = "manual", repo: Optional[Repository] = None) -> DispatchResult:
    """Run one serialized dispatch pass.

    Args:
        limit: Maximum planned work orders to scan (clamped to [1, DISPATCH_MAX_LIMIT])
        dry_run: Report what would be assigned without writing anything
        trigger: "manual" or "scheduled", recorded on every assignment

    Returns:
        DispatchResult; `overlap_prevented` is True when another pass held the lock
    """
    global _last_result

    repo = repo or get_repository()
    wait_sec = config.DISPATCH_WAIT_SEC
    if not _acquire_pass_lock(wait_sec):
        return _overlap_result(dry_run, trigger)

    owner = f"{trigger}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
    try:
        if not _acquire_lease(repo, owner, wait_sec):
            return _overlap_result(dry_run, trigger)
        try:
            result = _run_pass(repo, config.clamp_dispatch_limit(limit), dry_run, trigger)
        finally:
            repo.release_lease(LEASE_NAME, owner)
    finally:
        _pass_lock.release()

    _last_result = result
    return result


def _run_pass(repo: Repository, limit: int, dry_run: bool, trigger: str) -> DispatchResult:
    start_time = time.monotonic()
    result = DispatchResult(dry_run=dry_run, trigger=trigger)

    availability = get_runtime().check_availability()
    result.runtime_available = availability.available

    planned = repo.list_work_orders(state="planned", limit=limit)
    roster = AgentRoster(repo)
    eligible_before = len(roster.eligible())

    for work_order in planned:
        entry = {"work_order_id": work_order.id, "code": work_order.code}

        if not availability.available and not dry_run:
            result.skipped.append({**entry, "reason": "runtime_unavailable"})
            continue

        if repo.list_operations(work_order.id, statuses=OPEN_OPERATION_STATUSES):
            result.skipped.append({**entry, "reason": "has_open_operations"})
            continue

        try:
            specialty = _stage_specialty(work_order)
        except WorkflowError as e:
            result.skipped.append({**entry, "reason": "invalid_workflow", "error": e.message})
            continue
        if specialty is None:
            result.skipped.append({**entry, "reason": "no_runnable_stage"})
            continue

        agent = roster.pick_agent(specialty)
        if agent is None:
            result.skipped.append({**entry, "reason": "no_eligible_agent", "specialty": specialty})
            continue

        if dry_run:
            roster.record_assignment(agent.id)
            result.assigned.append({**entry, "agent_id": agent.id, "agent_name": agent.name,
                                    "specialty": specialty, "operation_id": None,
                                    "status": "dry_run"})
            continue

        outcome = dispatch_work_order(work_order.id, agent_id=agent.id, trigger=trigger, repo=repo)
        if outcome.dispatched:
            roster.record_assignment(outcome.agent_id or agent.id)
            result.assigned.append({**entry, "agent_id": outcome.agent_id, "agent_name": agent.name,
                                    "specialty": specialty, "operation_id": outcome.operation_id,
                                    "session_key": outcome.session_key, "status": "dispatched"})
        else:
            result.failures.append({**entry, "agent_id": agent.id, "specialty": specialty,
                                    "error": outcome.error})

    result.summary = {
        "planned_scanned": len(planned),
        "eligible_agents": eligible_before,
        "busy_agents": len(roster.entries) - eligible_before,
        "runtime": availability.to_dict(),
        "timestamp": datetime.now().isoformat(),
    }

    status = "success" if availability.available else "runtime_unavailable"
    if result.failures:
        status = "partial"
    logger.log_dispatch_pass(trigger, len(result.assigned), len(result.skipped),
                             len(result.failures), start_time, time.monotonic(), status)
    return result


def get_dispatch_status(repo: Optional[Repository] = None) -> Dict[str, Any]:
    """Lock, lease and last pass, for the status endpoint."""
    repo = repo or get_repository()
    return {
        "enabled": config.is_dispatch_enabled(),
        "interval_sec": config.get_dispatch_interval(),
        "running": _pass_lock.locked(),
        "lease": repo.get_lease(LEASE_NAME),
        "last_result": _last_result.to_dict() if _last_result else None,
    }


def reset_dispatch_state():
    """Forget the last pass result."""
    global _last_result
    _last_result = None
