"""
Record types shared by the repository, the workflow engine and the API layer.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


WORK_ORDER_STATES = ("planned", "active", "blocked", "review", "done", "shipped", "cancelled")
OPERATION_STATUSES = ("todo", "in_progress", "blocked", "review", "done", "rework")
OPEN_OPERATION_STATUSES = ("todo", "in_progress", "review", "rework")
APPROVAL_TYPES = ("ship_gate", "risky_action", "scope_change", "cron_change", "external_side_effect")
APPROVAL_STATUSES = ("pending", "approved", "rejected")
AGENT_STATUSES = ("idle", "active", "blocked", "error")
STORY_STATUSES = ("pending", "running", "done", "failed")

SECURITY_VETO_REASON = "security_veto"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize(record) -> Dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = _iso(value)
    return data


@dataclass
class WorkOrder:
    id: str
    code: str  # WO-0001
    title: str
    state: str = "planned"
    goal_md: str = ""
    priority: str = "P2"
    workflow_id: Optional[str] = None
    current_stage: int = 0
    blocked_reason: Optional[str] = None
    owner: str = "user"
    routing_template: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    shipped_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(self)


@dataclass
class Operation:
    id: str
    work_order_id: str
    station: str
    title: str
    status: str = "todo"
    notes: str = ""
    workflow_id: Optional[str] = None
    workflow_stage_index: int = 0
    iteration_count: int = 0
    loop_target_op_id: Optional[str] = None
    assignee_agent_ids: List[str] = field(default_factory=list)
    depends_on_operation_ids: List[str] = field(default_factory=list)
    blocked_reason: Optional[str] = None
    escalation_reason: Optional[str] = None
    escalated_at: Optional[datetime] = None
    retry_count: int = 0
    claimed_by: Optional[str] = None
    claim_expires_at: Optional[datetime] = None
    last_claimed_at: Optional[datetime] = None
    execution_type: str = "single"  # single, loop
    loop_config: Optional[Dict[str, Any]] = None
    current_story_id: Optional[str] = None
    max_retries: int = 2
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def verify_target(self) -> Optional[Dict[str, Any]]:
        """The loop story this operation verifies, if it is a story verification step."""
        config = self.loop_config or {}
        if config.get("kind") != "story_verify":
            return None
        if not isinstance(config.get("parent_operation_id"), str) or not isinstance(config.get("story_id"), str):
            return None
        return config

    def is_security_veto(self) -> bool:
        """A security veto is final: no approval may auto-resume it."""
        if self.escalation_reason == SECURITY_VETO_REASON:
            return True
        return bool(self.blocked_reason and SECURITY_VETO_REASON in self.blocked_reason)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(self)


@dataclass
class OperationStory:
    """One unit of work inside a loop stage operation."""
    id: str
    operation_id: str
    work_order_id: str
    story_index: int
    story_key: str
    title: str
    description: str = ""
    acceptance_criteria: List[str] = field(default_factory=list)
    status: str = "pending"
    output: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    max_retries: int = 2
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(self)


@dataclass
class Approval:
    id: str
    work_order_id: str
    type: str  # ship_gate, risky_action, scope_change, cron_change, external_side_effect
    question_md: str
    operation_id: Optional[str] = None
    status: str = "pending"
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    note: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(self)


@dataclass
class Agent:
    id: str
    name: str
    role: str = ""
    station: str = ""
    kind: str = "worker"  # worker, manager, ceo, guard
    status: str = "idle"
    wip_limit: int = 1
    capabilities: Dict[str, Any] = field(default_factory=dict)
    session_key: Optional[str] = None
    current_work_order_id: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(self)


@dataclass
class Activity:
    id: str
    type: str
    actor: str
    entity_type: str
    entity_id: str
    summary: str = ""
    actor_type: str = "system"
    category: str = "workflow"
    risk_level: str = "safe"
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(self)


@dataclass
class Receipt:
    id: str
    kind: str
    command_name: str
    work_order_id: Optional[str] = None
    operation_id: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: Optional[int] = None
    parsed_json: Optional[Dict[str, Any]] = None
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None

    @property
    def finalized(self) -> bool:
        return self.ended_at is not None

    def to_dict(self) -> Dict[str, Any]:
        data = _serialize(self)
        data["finalized"] = self.finalized
        return data


@dataclass
class AgentSession:
    session_key: str
    agent_id: str
    work_order_id: str
    operation_id: str
    created_at: datetime = field(default_factory=datetime.now)
    last_used_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(self)


@dataclass
class StagedPackage:
    id: str
    name: str
    sha256: str
    blocked_by_scan: bool = False
    scan: Dict[str, Any] = field(default_factory=dict)
    alert_work_order_id: Optional[str] = None
    deployed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(self)
