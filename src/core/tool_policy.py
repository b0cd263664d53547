"""
Tool policy - which runtime tools an agent may call, from its capabilities.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .dao import Repository, get_repository
from .schema import Agent
from util.logging import logger

TOOL_REQUIREMENTS = {
    "exec": ["can_execute_code"],
    "browser": ["can_execute_code"],
    "write": ["can_modify_files"],
    "edit": ["can_modify_files"],
    "message": ["can_send_messages"],
    "sessions_spawn": ["can_delegate"],
    "sessions_send": ["can_delegate"],
    "web_search": ["can_web_search"],
    "web_fetch": ["can_web_search"],
}


@dataclass
class ToolPolicyResult:
    allowed: bool
    reason: Optional[str] = None
    agent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_review_like(agent: Agent) -> bool:
    role = (agent.role or "").lower()
    return (
        agent.kind == "guard"
        or (agent.station or "").lower() == "qa"
        or any(token in role for token in ("review", "qa", "audit"))
    )


def _evaluate(agent: Agent, tool: str, args: Dict[str, Any]) -> ToolPolicyResult:
    capabilities = agent.capabilities if isinstance(agent.capabilities, dict) else {}

    for capability in TOOL_REQUIREMENTS.get(tool, []):
        if not capabilities.get(capability):
            return ToolPolicyResult(False, f"Agent {agent.id} lacks capability: {capability}", agent.id)

    if tool != "exec":
        return ToolPolicyResult(True, agent_id=agent.id)

    allowlist = [p for p in capabilities.get("exec_allowlist") or [] if isinstance(p, str)]
    if not is_review_like(agent) and not allowlist:
        return ToolPolicyResult(True, agent_id=agent.id)

    command = str(args.get("command") or args.get("cmd") or "").strip()
    if not command:
        return ToolPolicyResult(False, "Missing command for exec policy evaluation", agent.id)
    if not allowlist:
        return ToolPolicyResult(False, f"Review agent {agent.id} has no exec allowlist configured", agent.id)
    if not any(command.startswith(prefix) for prefix in allowlist):
        return ToolPolicyResult(False, f"Command not in review exec allowlist: {command}", agent.id)
    return ToolPolicyResult(True, agent_id=agent.id)


def check_tool_policy(repo: Optional[Repository], agent_id: str, tool: str,
                      args: Optional[Dict[str, Any]] = None,
                      operation_id: Optional[str] = None) -> ToolPolicyResult:
    """Evaluate one tool call. Denials are recorded as policy.tool_denied activities."""
    repo = repo or get_repository()
    args = args or {}
    agent = repo.get_agent(agent_id)
    if agent is None:
        result = ToolPolicyResult(False, f"Unknown agent: {agent_id}")
    else:
        result = _evaluate(agent, tool, args)

    if not result.allowed:
        logger.log_operation("policy.tool", "denied", {"agent_id": agent_id, "tool": tool,
                                                       "reason": result.reason})
        repo.add_activity(
            type="policy.tool_denied",
            actor=f"agent:{agent_id}",
            actor_type="agent",
            entity_type="operation" if operation_id else "agent",
            entity_id=operation_id or agent_id,
            summary=f"Tool policy denied: {tool}",
            payload={"agent_id": agent_id, "tool": tool, "args": args, "reason": result.reason},
            category="system",
            risk_level="danger",
        )
    return result
