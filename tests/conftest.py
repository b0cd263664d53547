"""
Shared fixtures: every test runs against a fresh in-memory repository and a mock runtime.
"""

import pytest

from src.core.dao import InMemoryRepository, format_work_order_code, new_id, set_repository
from src.core.schema import Operation, WorkOrder
from src.agents.runtime import MockRuntimeAdapter, set_runtime


class Seeder:
    """Inserts work orders and operations in any state, below the state-writer boundary."""

    def __init__(self, repository):
        self.repository = repository

    def work_order(self, title, **values):
        with self.repository.transaction():
            seq = self.repository._next_work_order_seq()
            work_order = WorkOrder(id=new_id("wo"), code=format_work_order_code(seq), title=title, **values)
            self.repository._insert("work_orders", work_order, extra={"seq": seq})
        return work_order

    def operation(self, work_order_id, station, title, **values):
        operation = Operation(id=new_id("op"), work_order_id=work_order_id,
                              station=station, title=title, **values)
        self.repository._insert("operations", operation)
        return operation


@pytest.fixture(autouse=True)
def repo():
    """Fresh in-memory repository installed as the process repository."""
    repository = InMemoryRepository()
    set_repository(repository)
    yield repository
    set_repository(None)


@pytest.fixture
def seed(repo):
    """Fixture data that starts past the planned state."""
    return Seeder(repo)


@pytest.fixture(autouse=True)
def runtime():
    """Available mock runtime installed as the process runtime."""
    adapter = MockRuntimeAdapter()
    set_runtime(adapter)
    yield adapter
    set_runtime(None)


@pytest.fixture
def crew(repo):
    """One worker per specialty used by the default workflows."""
    return {
        "planner": repo.create_agent("planner", id="agent_planner", station="plan", role="Architect"),
        "reviewer": repo.create_agent("reviewer", id="agent_reviewer", station="qa", role="Reviewer"),
        "builder": repo.create_agent("builder", id="agent_builder", station="build", role="Engineer"),
        "security": repo.create_agent("sentinel", id="agent_security", station="security", role="Security"),
        "ops": repo.create_agent("deployer", id="agent_ops", station="ops", role="SRE"),
    }
