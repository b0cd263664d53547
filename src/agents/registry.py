"""
Agent roster - which worker agents can take the next operation.

Load counts the operations an agent is assigned in an open status, and is at
least one while the agent has a recently used session. The dispatcher increments load after each
assignment so one pass never pushes an agent past its WIP limit.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from src.core import config
from src.core.dao import Repository, get_repository
from src.core.schema import OPEN_OPERATION_STATUSES, Agent

EXCLUDED_KINDS = ("manager", "ceo", "guard")
EXCLUDED_STATUSES = ("blocked", "error")

# Checked in order; the first keyword that starts a word of station/role wins.
SPECIALTY_KEYWORDS = [
    ("security", ("security", "sec", "audit")),
    ("review", ("review", "qa", "test")),
    ("research", ("research", "analyst")),
    ("ui", ("ui", "frontend", "ux")),
    ("plan", ("plan", "architect", "design")),
    ("ops", ("ops", "deploy", "infra", "sre")),
    ("build", ("build", "dev", "engineer", "code")),
]


@dataclass
class AgentAvailability:
    agent: Agent
    specialty: Optional[str]
    load: int
    capacity: int

    @property
    def eligible(self) -> bool:
        return self.load < self.capacity

    def to_dict(self):
        return {
            "agent_id": self.agent.id,
            "name": self.agent.name,
            "specialty": self.specialty,
            "load": self.load,
            "capacity": self.capacity,
            "eligible": self.eligible,
        }


def infer_specialty(agent: Agent) -> Optional[str]:
    """Guess an agent's specialty from its station, then its role."""
    for text in (agent.station, agent.role):
        words = [w for w in re.split(r"[^a-z]+", (text or "").lower()) if w]
        if not words:
            continue
        for specialty, keywords in SPECIALTY_KEYWORDS:
            if any(w.startswith(k) for w in words for k in keywords):
                return specialty
    return None


class AgentRoster:
    """Snapshot of worker availability for one dispatch pass."""

    def __init__(self, repo: Optional[Repository] = None):
        self.repo = repo or get_repository()
        self.entries: Dict[str, AgentAvailability] = {}
        self.refresh()

    def refresh(self):
        open_ops = self.repo.list_operations(statuses=OPEN_OPERATION_STATUSES)
        load: Dict[str, int] = {}
        for op in open_ops:
            for agent_id in op.assignee_agent_ids:
                load[agent_id] = load.get(agent_id, 0) + 1

        cutoff = datetime.now() - timedelta(seconds=config.CLAIM_TTL_SEC)
        open_ids = {op.id for op in open_ops}
        in_flight = {s.agent_id for s in self.repo.list_sessions()
                     if s.last_used_at >= cutoff and s.operation_id in open_ids}

        self.entries = {}
        for agent in self.repo.list_agents():
            if agent.kind in EXCLUDED_KINDS or agent.status in EXCLUDED_STATUSES:
                continue
            agent_load = load.get(agent.id, 0)
            if agent.id in in_flight:
                agent_load = max(agent_load, 1)
            self.entries[agent.id] = AgentAvailability(
                agent=agent,
                specialty=infer_specialty(agent),
                load=agent_load,
                capacity=max(1, agent.wip_limit or 1),
            )

    def eligible(self, specialty: Optional[str] = None,
                 respect_wip: bool = True) -> List[AgentAvailability]:
        candidates = [e for e in self.entries.values() if e.eligible or not respect_wip]
        if specialty is not None:
            candidates = [e for e in candidates if e.specialty == specialty]
        return sorted(candidates, key=lambda e: (e.load, e.agent.name))

    def pick_agent(self, specialty: str, respect_wip: bool = True) -> Optional[Agent]:
        """Best agent for a stage: its specialty, else a builder, else anyone free."""
        for wanted in (specialty, "build", None):
            candidates = self.eligible(wanted, respect_wip)
            if candidates:
                return candidates[0].agent
        return None

    def record_assignment(self, agent_id: str):
        entry = self.entries.get(agent_id)
        if entry:
            entry.load += 1

    def snapshot(self) -> List[dict]:
        return [e.to_dict() for e in sorted(self.entries.values(), key=lambda e: e.agent.name)]
