"""
Action policy registry - the single source of truth for what is dangerous.

Every governed mutating action has an ActionKind and exactly one ActionPolicy.
The table is built once at import and is read-only afterwards.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .errors import UnknownActionKindError


RISK_LEVELS = ("safe", "caution", "danger")


class ConfirmMode(str, Enum):
    NONE = "NONE"
    CONFIRM = "CONFIRM"
    TYPED_CODE = "TYPED_CODE"  # caller-supplied unique code, e.g. the work order code


class ActionKind(str, Enum):
    # Work orders
    WORK_ORDER_SHIP = "work_order.ship"
    WORK_ORDER_CANCEL = "work_order.cancel"
    WORK_ORDER_DELETE = "work_order.delete"
    # Operations
    OPERATION_COMPLETE = "operation.complete"
    OPERATION_REWORK = "operation.rework"
    # Plugins
    PLUGIN_INSTALL = "plugin.install"
    PLUGIN_ENABLE = "plugin.enable"
    PLUGIN_DISABLE = "plugin.disable"
    PLUGIN_UNINSTALL = "plugin.uninstall"
    PLUGIN_DOCTOR = "plugin.doctor"
    PLUGIN_EDIT_CONFIG = "plugin.edit_config"
    PLUGIN_RESTART = "plugin.restart"
    # Skills
    SKILL_INSTALL = "skill.install"
    SKILL_UNINSTALL = "skill.uninstall"
    SKILL_ENABLE = "skill.enable"
    SKILL_DISABLE = "skill.disable"
    SKILL_EDIT = "skill.edit"
    SKILL_DUPLICATE_TO_AGENT = "skill.duplicate_to_agent"
    SKILL_DUPLICATE_TO_GLOBAL = "skill.duplicate_to_global"
    SKILL_ENABLE_INVALID = "skill.enable_invalid"
    # Gateway
    GATEWAY_RESTART = "gateway.restart"
    GATEWAY_SHUTDOWN = "gateway.shutdown"
    GATEWAY_DISCOVER = "gateway.discover"
    # Security
    SECURITY_AUDIT = "security.audit"
    SECURITY_AUDIT_FIX = "security.audit.fix"
    # Cron
    CRON_ENABLE = "cron.enable"
    CRON_DISABLE = "cron.disable"
    CRON_RUN_NOW = "cron.run_now"
    # Config
    CONFIG_AGENTS_MD_EDIT = "config.agents_md.edit"
    CONFIG_SOUL_OVERLAY_EDIT = "config.soul_overlay.edit"
    CONFIG_ROUTING_TEMPLATE_EDIT = "config.routing_template.edit"
    # Doctor
    DOCTOR_RUN = "doctor.run"
    DOCTOR_FIX = "doctor.fix"
    # Maintenance
    MAINTENANCE_HEALTH_CHECK = "maintenance.health_check"
    MAINTENANCE_CACHE_CLEAR = "maintenance.cache_clear"
    MAINTENANCE_SESSIONS_RESET = "maintenance.sessions_reset"
    MAINTENANCE_RECOVER_GATEWAY = "maintenance.recover_gateway"
    # Agents
    AGENT_CREATE = "agent.create"
    AGENT_CREATE_FROM_TEMPLATE = "agent.create_from_template"
    AGENT_PROVISION = "agent.provision"
    AGENT_TEST = "agent.test"
    AGENT_RESTART = "agent.restart"
    AGENT_STOP = "agent.stop"
    AGENT_EDIT = "agent.edit"
    # Stations
    STATION_CREATE = "station.create"
    STATION_UPDATE = "station.update"
    STATION_DELETE = "station.delete"
    # Templates and workflows
    TEMPLATE_CREATE = "template.create"
    TEMPLATE_EDIT = "template.edit"
    TEMPLATE_DELETE = "template.delete"
    TEMPLATE_IMPORT = "template.import"
    TEMPLATE_EXPORT = "template.export"
    TEMPLATE_USE = "template.use"
    TEMPLATE_USE_INVALID = "template.use_invalid"
    WORKFLOW_IMPORT = "workflow.import"
    # Packages
    PACKAGE_DEPLOY = "package.deploy"
    PACKAGE_DEPLOY_OVERRIDE_SCAN_BLOCK = "package.deploy.override_scan_block"
    # Data
    DATA_EXPORT = "data.export"
    DATA_IMPORT = "data.import"
    DATA_RESET = "data.reset"
    # Console (operator -> agent/session messaging)
    CONSOLE_AGENT_CHAT = "console.agent.chat"
    CONSOLE_AGENT_TURN = "console.agent.turn"
    CONSOLE_SESSION_CHAT = "console.session.chat"
    CONSOLE_SESSION_ABORT = "console.session.abort"
    # Generic fallbacks
    ACTION_SAFE = "action.safe"
    ACTION_CAUTION = "action.caution"
    ACTION_DANGER = "action.danger"


@dataclass(frozen=True)
class ActionPolicy:
    action_kind: str
    risk_level: str  # safe, caution, danger
    confirm_mode: ConfirmMode
    requires_approval: bool
    description: str
    approval_type: Optional[str] = None
    confirm_text: str = "CONFIRM"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["confirm_mode"] = self.confirm_mode.value
        return data


def _policy(kind: ActionKind, risk: str, mode: ConfirmMode, description: str,
            approval_type: Optional[str] = None, confirm_text: str = "CONFIRM") -> ActionPolicy:
    return ActionPolicy(
        action_kind=kind.value,
        risk_level=risk,
        confirm_mode=mode,
        requires_approval=approval_type is not None,
        approval_type=approval_type,
        description=description,
        confirm_text=confirm_text,
    )


_N, _C, _T = ConfirmMode.NONE, ConfirmMode.CONFIRM, ConfirmMode.TYPED_CODE
K = ActionKind

_POLICY_LIST = [
    _policy(K.WORK_ORDER_SHIP, "caution", _T, "Mark work order as shipped", "ship_gate"),
    _policy(K.WORK_ORDER_CANCEL, "caution", _T, "Cancel work order", "scope_change"),
    _policy(K.WORK_ORDER_DELETE, "danger", _T, "Permanently delete work order", "risky_action"),

    _policy(K.OPERATION_COMPLETE, "safe", _N, "Mark operation as complete"),
    _policy(K.OPERATION_REWORK, "safe", _N, "Send operation back to rework"),

    _policy(K.PLUGIN_INSTALL, "danger", _C, "Install a new plugin", "external_side_effect"),
    _policy(K.PLUGIN_ENABLE, "caution", _C, "Enable a disabled plugin", "scope_change"),
    _policy(K.PLUGIN_DISABLE, "caution", _C, "Disable an active plugin", "scope_change"),
    _policy(K.PLUGIN_UNINSTALL, "danger", _C, "Uninstall a plugin", "risky_action"),
    _policy(K.PLUGIN_DOCTOR, "caution", _C, "Run plugin diagnostics"),
    _policy(K.PLUGIN_EDIT_CONFIG, "danger", _C, "Edit plugin configuration", "scope_change"),
    _policy(K.PLUGIN_RESTART, "danger", _C, "Restart plugins to apply configuration changes", "risky_action"),

    _policy(K.SKILL_INSTALL, "danger", _C, "Install a new skill", "external_side_effect"),
    _policy(K.SKILL_UNINSTALL, "danger", _C, "Uninstall a skill", "risky_action"),
    _policy(K.SKILL_ENABLE, "caution", _C, "Enable a disabled skill"),
    _policy(K.SKILL_DISABLE, "caution", _C, "Disable an active skill"),
    _policy(K.SKILL_EDIT, "caution", _C, "Edit skill configuration"),
    _policy(K.SKILL_DUPLICATE_TO_AGENT, "caution", _C, "Copy skill to agent scope"),
    _policy(K.SKILL_DUPLICATE_TO_GLOBAL, "danger", _C, "Copy skill to global scope (affects all agents)", "scope_change"),
    _policy(K.SKILL_ENABLE_INVALID, "danger", _C, "Enable a skill with validation errors", "risky_action"),

    _policy(K.GATEWAY_RESTART, "caution", _C, "Restart the gateway service", "risky_action"),
    _policy(K.GATEWAY_SHUTDOWN, "danger", _C, "Shutdown the gateway service", "risky_action"),
    _policy(K.GATEWAY_DISCOVER, "safe", _N, "Discover gateways on the network"),

    _policy(K.SECURITY_AUDIT, "safe", _N, "Run security audit"),
    _policy(K.SECURITY_AUDIT_FIX, "caution", _C, "Run security audit and apply safe guardrails", "risky_action"),

    _policy(K.CRON_ENABLE, "caution", _C, "Enable a cron job", "cron_change"),
    _policy(K.CRON_DISABLE, "caution", _C, "Disable a cron job", "cron_change"),
    _policy(K.CRON_RUN_NOW, "caution", _C, "Run a cron job immediately"),

    _policy(K.CONFIG_AGENTS_MD_EDIT, "caution", _C, "Edit global AGENTS.md configuration", "scope_change"),
    _policy(K.CONFIG_SOUL_OVERLAY_EDIT, "caution", _C, "Edit agent soul overlay", "scope_change"),
    _policy(K.CONFIG_ROUTING_TEMPLATE_EDIT, "caution", _C, "Edit routing template", "scope_change"),

    _policy(K.DOCTOR_RUN, "safe", _N, "Run system diagnostics"),
    _policy(K.DOCTOR_FIX, "danger", _C, "Apply automatic fixes", "risky_action"),

    _policy(K.MAINTENANCE_HEALTH_CHECK, "safe", _N, "Run health check"),
    _policy(K.MAINTENANCE_CACHE_CLEAR, "danger", _C, "Clear all caches", "risky_action"),
    _policy(K.MAINTENANCE_SESSIONS_RESET, "danger", _C, "Reset all agent sessions", "risky_action"),
    _policy(K.MAINTENANCE_RECOVER_GATEWAY, "danger", _C, "Run gateway recovery playbook", "risky_action"),

    _policy(K.AGENT_CREATE, "caution", _C, "Create a new agent"),
    _policy(K.AGENT_CREATE_FROM_TEMPLATE, "caution", _C, "Create an agent from a template"),
    _policy(K.AGENT_PROVISION, "caution", _C, "Provision agent in the runtime"),
    _policy(K.AGENT_TEST, "safe", _N, "Send test message to agent"),
    _policy(K.AGENT_RESTART, "danger", _C, "Restart an agent"),
    _policy(K.AGENT_STOP, "caution", _C, "Stop an agent"),
    _policy(K.AGENT_EDIT, "caution", _C, "Edit agent configuration"),

    _policy(K.STATION_CREATE, "caution", _C, "Create a station"),
    _policy(K.STATION_UPDATE, "caution", _C, "Update a station"),
    _policy(K.STATION_DELETE, "danger", _C, "Delete a station"),

    _policy(K.TEMPLATE_CREATE, "caution", _C, "Create a new agent template"),
    _policy(K.TEMPLATE_EDIT, "caution", _C, "Edit an agent template"),
    _policy(K.TEMPLATE_DELETE, "danger", _C, "Delete an agent template", "risky_action"),
    _policy(K.TEMPLATE_IMPORT, "danger", _C, "Import an agent template", "external_side_effect"),
    _policy(K.TEMPLATE_EXPORT, "safe", _N, "Export an agent template"),
    _policy(K.TEMPLATE_USE, "caution", _C, "Use a template to create an agent"),
    _policy(K.TEMPLATE_USE_INVALID, "danger", _C, "Use an invalid template (override validation)", "risky_action"),
    _policy(K.WORKFLOW_IMPORT, "caution", _C, "Import a workflow definition"),

    _policy(K.PACKAGE_DEPLOY, "danger", _C, "Deploy a staged package"),
    _policy(K.PACKAGE_DEPLOY_OVERRIDE_SCAN_BLOCK, "danger", _C,
            "Deploy a package that the security scan blocked",
            confirm_text="OVERRIDE_SCAN_BLOCK"),

    _policy(K.DATA_EXPORT, "safe", _N, "Export data"),
    _policy(K.DATA_IMPORT, "danger", _C, "Import data", "risky_action"),
    _policy(K.DATA_RESET, "danger", _C, "Reset all data", "risky_action"),

    _policy(K.CONSOLE_AGENT_CHAT, "caution", _C, "Message agent (routes by agent id, not session-scoped)"),
    _policy(K.CONSOLE_AGENT_TURN, "caution", _C, "Spawn agent turn with task"),
    _policy(K.CONSOLE_SESSION_CHAT, "caution", _C, "Message session (routes by session key)"),
    _policy(K.CONSOLE_SESSION_ABORT, "caution", _N, "Abort a streaming session turn"),

    _policy(K.ACTION_SAFE, "safe", _N, "Safe action"),
    _policy(K.ACTION_CAUTION, "caution", _C, "Action requiring caution", "risky_action"),
    _policy(K.ACTION_DANGER, "danger", _C, "Dangerous action", "risky_action"),
]

ACTION_POLICIES: Mapping[ActionKind, ActionPolicy] = MappingProxyType(
    {ActionKind(p.action_kind): p for p in _POLICY_LIST}
)

del _N, _C, _T, K, _POLICY_LIST

# Import-time totality check: every declared kind has a policy.
_missing = [kind.value for kind in ActionKind if kind not in ACTION_POLICIES]
if _missing:
    raise RuntimeError(f"Action kinds without a policy: {_missing}")


def parse_action_kind(value) -> ActionKind:
    """Convert a string to an ActionKind; unknown values fail fast."""
    if isinstance(value, ActionKind):
        return value
    try:
        return ActionKind(value)
    except ValueError:
        raise UnknownActionKindError(value)


def get_policy(action_kind) -> ActionPolicy:
    """Get the policy for an action kind. Total over ActionKind."""
    return ACTION_POLICIES[parse_action_kind(action_kind)]


def action_requires_approval(action_kind) -> bool:
    return get_policy(action_kind).requires_approval


def requires_typed_confirm(action_kind) -> bool:
    return get_policy(action_kind).confirm_mode != ConfirmMode.NONE


def get_approval_type(action_kind) -> Optional[str]:
    return get_policy(action_kind).approval_type


def is_safe_action(action_kind) -> bool:
    """Safe means: no approval, no confirmation, safe risk level."""
    policy = get_policy(action_kind)
    return (policy.risk_level == "safe"
            and not policy.requires_approval
            and policy.confirm_mode == ConfirmMode.NONE)
