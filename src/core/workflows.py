"""
Workflow definitions - how a work order expands into stage operations.
"""

import json
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .errors import ErrorCode, WorkflowError


DEFAULT_MAX_STORIES = 25
MAX_STORIES_LIMIT = 50


@dataclass(frozen=True)
class LoopConfig:
    """A stage that runs once per story: the first run plans the stories, later runs build them."""
    over: str = "stories"
    completion: str = "all_done"
    verify_each: bool = False
    verify_stage_ref: Optional[str] = None
    max_stories: int = DEFAULT_MAX_STORIES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class WorkflowStage:
    ref: str  # plan, plan_review, build, ...
    condition: Optional[str] = None
    optional: bool = False
    loop_target: Optional[str] = None
    max_iterations: Optional[int] = None
    can_veto: bool = False
    loop: Optional[LoopConfig] = None

    @property
    def specialty(self) -> str:
        """Agent specialty needed by this stage (plan_review -> review)."""
        if self.ref.endswith("_review"):
            return "review"
        return self.ref

    @property
    def iteration_cap(self) -> int:
        return self.max_iterations if self.max_iterations is not None else config.DEFAULT_MAX_ITERATIONS


@dataclass(frozen=True)
class Workflow:
    id: str
    description: str
    stages: Tuple[WorkflowStage, ...] = field(default_factory=tuple)

    def stage_index(self, ref: str) -> int:
        for index, stage in enumerate(self.stages):
            if stage.ref == ref:
                return index
        return -1


S = WorkflowStage

WORKFLOWS: Dict[str, Workflow] = {
    "feature_request": Workflow("feature_request", "Standard feature implementation", (
        S("research", condition="unknowns_exist", optional=True),
        S("plan"),
        S("plan_review", loop_target="plan", max_iterations=2),
        S("build"),
        S("build_review", loop_target="build", max_iterations=2),
        S("security", loop_target="build", max_iterations=1, can_veto=True),
        S("ops", condition="deployment_needed", optional=True),
    )),
    "greenfield_project": Workflow("greenfield_project", "New project built story by story", (
        S("research", condition="unknowns_exist", optional=True),
        S("plan"),
        S("plan_review", loop_target="plan", max_iterations=2),
        S("build", loop=LoopConfig(verify_each=True, verify_stage_ref="build_review")),
        S("build_review", loop_target="build", max_iterations=2),
        S("security", loop_target="build", max_iterations=1, can_veto=True),
        S("ops", condition="deployment_needed", optional=True),
    )),
    "ui_feature": Workflow("ui_feature", "UI/frontend feature", (
        S("research", condition="unknowns_exist", optional=True),
        S("plan"),
        S("plan_review", loop_target="plan", max_iterations=2),
        S("ui"),
        S("ui_review", loop_target="ui", max_iterations=2),
        S("security", loop_target="ui", max_iterations=1, can_veto=True),
        S("ops", condition="deployment_needed", optional=True),
    )),
    "bug_fix": Workflow("bug_fix", "Bug fix, abbreviated workflow", (
        S("research", condition="unknowns_exist", optional=True),
        S("build"),
        S("build_review", loop_target="build", max_iterations=2),
        S("security", condition="security_relevant", optional=True),
    )),
    "hotfix": Workflow("hotfix", "Emergency hotfix, minimal gates", (
        S("build"),
        S("security"),
        S("ops"),
    )),
    "research_only": Workflow("research_only", "Pure research / question answering", (
        S("research"),
    )),
    "security_audit": Workflow("security_audit", "Standalone security audit", (
        S("security"),
        S("build_review", condition="code_review_needed", optional=True),
    )),
    "ops_task": Workflow("ops_task", "Infrastructure / ops changes", (
        S("plan"),
        S("plan_review", loop_target="plan", max_iterations=2),
        S("ops"),
        S("security", can_veto=True),
    )),
}

del S

DEFAULT_WORKFLOW_ID = "feature_request"

# First matching rule wins: (tag or keyword, workflow id)
SELECTION_RULES: List[Tuple[str, str]] = [
    ("hotfix", "hotfix"),
    ("bug", "bug_fix"),
    ("security", "security_audit"),
    ("ops", "ops_task"),
    ("infra", "ops_task"),
    ("ui", "ui_feature"),
    ("research", "research_only"),
    ("greenfield", "greenfield_project"),
]

CONDITION_KEYS = {
    "unknowns_exist": "has_unknowns",
    "deployment_needed": "needs_deployment",
    "security_relevant": "touches_security",
    "code_review_needed": "has_code_changes",
}


def get_workflow(workflow_id: str) -> Workflow:
    workflow = WORKFLOWS.get(workflow_id)
    if workflow is None:
        raise WorkflowError(ErrorCode.WORKFLOW_START_REJECTED, f"Unknown workflow: {workflow_id}",
                            details={"workflow_id": workflow_id})
    return workflow


def select_workflow(tags: List[str], priority: str = "P2", requested: Optional[str] = None,
                    existing: Optional[str] = None) -> Tuple[str, str]:
    """Return (workflow_id, reason) where reason is explicit|existing|rule|priority|default."""
    if requested and requested.strip():
        return get_workflow(requested.strip()).id, "explicit"
    if existing and existing.strip():
        return get_workflow(existing.strip()).id, "existing"

    normalized = {t.strip().lower() for t in tags if t and t.strip()}
    for token, workflow_id in SELECTION_RULES:
        if token in normalized:
            return workflow_id, "rule"
    if priority == "P0":
        return "hotfix", "priority"
    return DEFAULT_WORKFLOW_ID, "default"


def evaluate_condition(condition: Optional[str], context: Dict[str, Any]) -> bool:
    """Unknown or missing conditions evaluate true."""
    if not condition:
        return True
    key = CONDITION_KEYS.get(condition)
    if key is None:
        return True
    return bool(context.get(key))


def next_runnable_stage(workflow: Workflow, start_index: int,
                        context: Dict[str, Any]) -> Tuple[Optional[int], List[WorkflowStage]]:
    """First stage at or after start_index whose condition holds, plus the optional stages skipped."""
    skipped = []
    for index in range(start_index, len(workflow.stages)):
        stage = workflow.stages[index]
        if stage.optional and not evaluate_condition(stage.condition, context):
            skipped.append(stage)
            continue
        return index, skipped
    return None, skipped


@dataclass
class LoopStory:
    story_key: str
    title: str
    description: str
    acceptance_criteria: List[str] = field(default_factory=list)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _to_stories(raw_stories: List[Any], max_stories: int) -> List[LoopStory]:
    stories = []
    for index, raw in enumerate(raw_stories):
        if not isinstance(raw, dict):
            continue
        title = _text(raw.get("title")) or f"Story {index + 1}"
        criteria = raw.get("acceptanceCriteria")
        if not isinstance(criteria, list):
            criteria = raw.get("acceptance_criteria")
        if not isinstance(criteria, list):
            criteria = []
        stories.append(LoopStory(
            story_key=_text(raw.get("storyKey")) or _text(raw.get("key")) or f"story_{index + 1}",
            title=title,
            description=_text(raw.get("description")) or _text(raw.get("summary")) or title,
            acceptance_criteria=[c.strip() for c in criteria if isinstance(c, str) and c.strip()],
        ))
    return stories[:max_stories]


def parse_stories_from_output(output: Any, max_stories: int) -> List[LoopStory]:
    """Stories from a planning run's output.

    Accepts a bare list, an object carrying `stories`, `story_list` or a
    `STORIES_JSON` string, or the JSON text of either. Anything else yields
    no stories.
    """
    if isinstance(output, str):
        try:
            output = json.loads(output)
        except json.JSONDecodeError:
            return []
    if isinstance(output, list):
        return _to_stories(output, max_stories)
    if not isinstance(output, dict):
        return []
    for key in ("stories", "story_list"):
        if isinstance(output.get(key), list):
            return _to_stories(output[key], max_stories)
    if isinstance(output.get("STORIES_JSON"), str):
        try:
            parsed = json.loads(output["STORIES_JSON"])
        except json.JSONDecodeError:
            return []
        if isinstance(parsed, list):
            return _to_stories(parsed, max_stories)
    return []


def _bounded_int(value: Any, low: int, high: int) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    value = int(value)
    return value if low <= value <= high else None


def resolve_loop_max_stories(stage_ref: str, configured: int, context: Dict[str, Any]) -> int:
    """Story cap for a loop stage. A per-stage override beats the global one; both must be 1..50."""
    resolved = configured
    override = _bounded_int(context.get("maxStoriesOverride"), 1, MAX_STORIES_LIMIT)
    if override is not None:
        resolved = override
    by_stage = context.get("maxStoriesByStage")
    if isinstance(by_stage, dict):
        raw = by_stage.get(stage_ref, by_stage.get(stage_ref.strip().lower()))
        override = _bounded_int(raw, 1, MAX_STORIES_LIMIT)
        if override is not None:
            resolved = override
    return resolved
