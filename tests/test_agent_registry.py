"""
Agent roster tests - specialty inference, load accounting and WIP limits.
"""

from datetime import datetime, timedelta

from src.agents.registry import AgentRoster, infer_specialty
from src.core.schema import Agent, AgentSession


class TestSpecialty:

    def test_station_first(self):
        """Test station keywords win over role."""
        assert infer_specialty(Agent(id="a", name="a", station="qa", role="builder")) == "review"

    def test_role_fallback(self):
        """Test role is used when station says nothing."""
        assert infer_specialty(Agent(id="a", name="a", station="", role="Frontend Engineer")) == "ui"

    def test_word_prefix_not_substring(self):
        """Test 'build' is not mistaken for 'ui'."""
        assert infer_specialty(Agent(id="a", name="a", station="build")) == "build"

    def test_unknown(self):
        """Test no keyword means no specialty."""
        assert infer_specialty(Agent(id="a", name="a", station="lobby", role="greeter")) is None


class TestRoster:

    def test_excludes_managers_and_broken(self, repo):
        """Test manager kinds and blocked/error agents never take work."""
        repo.create_agent("boss", kind="manager", station="build")
        repo.create_agent("guard", kind="guard", station="security")
        repo.create_agent("broken", status="error", station="build")
        repo.create_agent("worker", station="build")
        roster = AgentRoster(repo)
        assert [e.agent.name for e in roster.entries.values()] == ["worker"]

    def test_load_counts_open_operations(self, seed, repo):
        """Test open operations count toward load and done ones do not."""
        agent = repo.create_agent("builder", station="build", wip_limit=2)
        wo = repo.create_work_order("Load")
        seed.operation(wo.id, "build", "a", status="in_progress", assignee_agent_ids=[agent.id])
        seed.operation(wo.id, "build", "b", status="done", assignee_agent_ids=[agent.id])
        entry = AgentRoster(repo).entries[agent.id]
        assert entry.load == 1
        assert entry.eligible

    def test_recent_session_counts_as_busy(self, seed, repo):
        """Test a fresh session on an open operation holds one slot."""
        agent = repo.create_agent("builder", station="build")
        wo = repo.create_work_order("Busy")
        op = seed.operation(wo.id, "build", "a", status="todo")
        repo.save_session(AgentSession("k", agent.id, wo.id, op.id))
        assert not AgentRoster(repo).entries[agent.id].eligible

    def test_old_session_ignored(self, seed, repo):
        """Test a stale session does not hold a slot."""
        agent = repo.create_agent("builder", station="build")
        wo = repo.create_work_order("Idle")
        op = seed.operation(wo.id, "build", "a", status="todo")
        old = datetime.now() - timedelta(days=1)
        repo.save_session(AgentSession("k", agent.id, wo.id, op.id, created_at=old, last_used_at=old))
        assert AgentRoster(repo).entries[agent.id].eligible

    def test_pick_prefers_specialty_then_build(self, repo):
        """Test specialty first, then a builder, then anyone."""
        repo.create_agent("zed-builder", station="build")
        repo.create_agent("reviewer", station="qa")
        roster = AgentRoster(repo)
        assert roster.pick_agent("review").name == "reviewer"
        assert roster.pick_agent("research").name == "zed-builder"

    def test_pick_lowest_load_then_name(self, seed, repo):
        """Test ties break by load, then name."""
        busy = repo.create_agent("alpha", station="build", wip_limit=3)
        repo.create_agent("beta", station="build", wip_limit=3)
        wo = repo.create_work_order("Load")
        seed.operation(wo.id, "build", "a", status="todo", assignee_agent_ids=[busy.id])
        assert AgentRoster(repo).pick_agent("build").name == "beta"

    def test_record_assignment_respects_wip(self, repo):
        """Test an assignment in the same pass uses up capacity."""
        agent = repo.create_agent("solo", station="build", wip_limit=1)
        roster = AgentRoster(repo)
        assert roster.pick_agent("build").id == agent.id
        roster.record_assignment(agent.id)
        assert roster.pick_agent("build") is None
        assert roster.pick_agent("build", respect_wip=False).id == agent.id

    def test_zero_wip_limit_treated_as_one(self, repo):
        """Test a non-positive WIP limit still allows one operation."""
        agent = repo.create_agent("solo", station="build", wip_limit=0)
        assert AgentRoster(repo).entries[agent.id].capacity == 1
