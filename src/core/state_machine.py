"""
Transition tables for work orders and operations.
The UI asks these for legal next states; the workflow engine validates against them.
"""

from typing import Dict, List, Tuple

from .errors import ErrorCode, InvalidTransitionError, ValidationFailed
from .schema import OPERATION_STATUSES, WORK_ORDER_STATES

WORK_ORDER_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "planned": ("active", "cancelled"),
    "active": ("blocked", "review", "done", "shipped", "cancelled"),
    "blocked": ("active", "cancelled"),
    "review": ("active", "blocked", "done", "shipped", "cancelled"),
    "done": ("shipped",),
    "shipped": (),
    "cancelled": (),
}

OPERATION_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "todo": ("in_progress", "blocked"),
    "in_progress": ("review", "done", "blocked", "rework", "todo"),
    "review": ("done", "rework", "blocked", "todo"),
    "rework": ("todo", "in_progress", "blocked"),
    "blocked": ("todo", "in_progress"),
    "done": (),
}

_TABLES = {
    "work_order": (WORK_ORDER_TRANSITIONS, WORK_ORDER_STATES, ErrorCode.INVALID_STATE),
    "operation": (OPERATION_TRANSITIONS, OPERATION_STATUSES, ErrorCode.INVALID_STATUS),
}


def _table(entity_type: str):
    try:
        return _TABLES[entity_type.replace("-", "_")]
    except KeyError:
        raise ValidationFailed(f"Unknown entity type: {entity_type}",
                               details={"valid": sorted(_TABLES)})


def get_valid_transitions(entity_type: str, current: str) -> List[str]:
    """Legal next states for `current`. Raises on an unknown entity type or state."""
    transitions, states, code = _table(entity_type)
    if current not in states:
        raise ValidationFailed(f"Invalid {entity_type} state: {current}",
                               details={"code": code.value})
    return list(transitions[current])


def can_transition(entity_type: str, current: str, target: str) -> bool:
    transitions, states, _ = _table(entity_type)
    return current in states and target in transitions.get(current, ())


def validate_transition(entity_type: str, current: str, target: str) -> None:
    """Raise InvalidTransitionError unless current -> target is legal."""
    if not can_transition(entity_type, current, target):
        valid = get_valid_transitions(entity_type, current) if current in _table(entity_type)[1] else []
        valid_str = ", ".join(valid) if valid else "none (terminal state)"
        raise InvalidTransitionError(
            f"Cannot move {entity_type} from {current} to {target}. Valid transitions: {valid_str}",
            details={"from": current, "to": target, "valid": valid},
        )


def is_terminal(entity_type: str, current: str) -> bool:
    transitions, _, _ = _table(entity_type)
    return not transitions.get(current)
