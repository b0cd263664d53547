"""
Request and response models for the ClawControl API.
"""

from pydantic import BaseModel, field_validator, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..core.schema import AGENT_STATUSES

PRIORITIES = ["P0", "P1", "P2", "P3"]


def _not_blank(value: str, name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f'{name} cannot be empty')
    return value.strip()


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    repository: str
    runtime: Dict[str, Any]


class ErrorResponse(BaseModel):
    error_type: str
    message: str
    timestamp: datetime = None
    details: Optional[Dict[str, Any]] = None

    def __init__(self, **data):
        super().__init__(timestamp=datetime.now(), **data)


# Governor
class EnforceRequest(BaseModel):
    action_kind: str
    typed_confirm_text: Optional[str] = None
    work_order_id: Optional[str] = None
    operation_id: Optional[str] = None


# Work orders
class WorkOrderCreateRequest(BaseModel):
    title: str
    goal_md: str = ""
    priority: str = "P2"
    tags: List[str] = []
    workflow_id: Optional[str] = None
    routing_template: Optional[str] = None
    owner: str = "user"

    @field_validator('title')
    @classmethod
    def title_must_not_be_empty(cls, v):
        return _not_blank(v, 'title')

    @field_validator('priority')
    @classmethod
    def priority_must_be_valid(cls, v):
        if v not in PRIORITIES:
            raise ValueError(f'priority must be one of: {PRIORITIES}')
        return v


class WorkOrderUpdateRequest(BaseModel):
    model_config = ConfigDict(extra='forbid')

    title: Optional[str] = None
    goal_md: Optional[str] = None
    priority: Optional[str] = None
    owner: Optional[str] = None
    tags: Optional[List[str]] = None
    routing_template: Optional[str] = None
    state: Optional[str] = None
    typed_confirm_text: Optional[str] = None

    @field_validator('priority')
    @classmethod
    def priority_must_be_valid(cls, v):
        if v is not None and v not in PRIORITIES:
            raise ValueError(f'priority must be one of: {PRIORITIES}')
        return v


class WorkOrderStartRequest(BaseModel):
    context: Dict[str, Any] = {}
    force: bool = False
    workflow_id: Optional[str] = None
    agent_id: Optional[str] = None


class WorkOrderResumeRequest(BaseModel):
    reason: str = "manual"


# Operations
class OperationUpdateRequest(BaseModel):
    model_config = ConfigDict(extra='forbid')

    notes: Optional[str] = None
    blocked_reason: Optional[str] = None
    status: Optional[str] = None


class CompletionRequest(BaseModel):
    operation_id: str
    status: str
    output: Any = None
    feedback: Optional[str] = None
    artifacts: List[str] = []
    completion_token: Optional[str] = None


# Agents
class AgentCreateRequest(BaseModel):
    name: str
    role: str = ""
    station: str = ""
    kind: str = "worker"
    wip_limit: int = 1
    capabilities: Dict[str, Any] = {}
    typed_confirm_text: Optional[str] = None

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        return _not_blank(v, 'name')

    @field_validator('wip_limit')
    @classmethod
    def wip_limit_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('wip_limit must be >= 1')
        return v


class AgentUpdateRequest(BaseModel):
    model_config = ConfigDict(extra='forbid')

    status: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    station: Optional[str] = None
    wip_limit: Optional[int] = None
    capabilities: Optional[Dict[str, Any]] = None
    typed_confirm_text: Optional[str] = None

    @field_validator('status')
    @classmethod
    def status_must_be_valid(cls, v):
        if v is not None and v not in AGENT_STATUSES:
            raise ValueError(f'status must be one of: {list(AGENT_STATUSES)}')
        return v


# Approvals
class ApprovalCreateRequest(BaseModel):
    work_order_id: str
    type: str
    question_md: str
    operation_id: Optional[str] = None


class ApprovalDecisionRequest(BaseModel):
    status: str  # approved, rejected
    note: Optional[str] = None


# Dispatch
class DispatchRunRequest(BaseModel):
    limit: Optional[int] = None
    dry_run: bool = False


# Sessions
class SessionAbortRequest(BaseModel):
    typed_confirm_text: Optional[str] = None


# Packages
class PackageCreateRequest(BaseModel):
    name: str
    sha256: str
    blocked_by_scan: bool = False
    scan: Dict[str, Any] = {}
    alert_work_order_id: Optional[str] = None

    @field_validator('name', 'sha256')
    @classmethod
    def must_not_be_empty(cls, v, info):
        return _not_blank(v, info.field_name)


class PackageDeployRequest(BaseModel):
    package_id: str
    typed_confirm_text: Optional[str] = None
    override_scan_block: bool = False

    @field_validator('package_id')
    @classmethod
    def package_id_must_not_be_empty(cls, v):
        return _not_blank(v, 'package_id')


# Receipts
class ReceiptCreateRequest(BaseModel):
    kind: str
    command_name: str
    work_order_id: Optional[str] = None
    operation_id: Optional[str] = None


class ReceiptAppendRequest(BaseModel):
    stream: str
    chunk: str


class ReceiptFinalizeRequest(BaseModel):
    exit_code: int
    duration_ms: Optional[int] = None
    parsed_json: Optional[Dict[str, Any]] = None


# Tool policy
class ToolCheckRequest(BaseModel):
    agent_id: str
    tool: str
    args: Dict[str, Any] = {}
    operation_id: Optional[str] = None
