"""
Repository tests - both backends behind the same interface, and the single-writer boundary.
"""

import threading

import pytest
from datetime import datetime

from src.core.dao import InMemoryRepository, SQLiteRepository, claim_state_writer
from src.core.db import REQUIRED_TABLES, get_db, health_check, init_db
from src.core.errors import (
    ErrorCode,
    ManagerControlledError,
    NotFoundError,
    ValidationFailed,
)
from src.core.schema import AgentSession, Receipt, StagedPackage


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    """Each test runs against both repository implementations."""
    if request.param == "memory":
        yield InMemoryRepository()
    else:
        repository = SQLiteRepository(str(tmp_path / "clawcontrol.db"))
        yield repository
        repository.close()


@pytest.fixture
def backend(repo):
    return repo


class TestWorkOrders:

    def test_create_assigns_sequential_codes(self, backend):
        """Test codes are human-readable and sequential."""
        first = backend.create_work_order("First")
        second = backend.create_work_order("Second")
        assert first.code == "WO-0001"
        assert second.code == "WO-0002"
        assert backend.get_work_order(first.id).state == "planned"

    def test_intake_cannot_choose_state(self, backend):
        """Test intake has no way to start a work order or operation past its initial state."""
        with pytest.raises(TypeError):
            backend.create_work_order("Sneaky", state="active")
        with pytest.raises(TypeError):
            backend.create_work_order("Sneaky", blocked_reason="none")
        assert not hasattr(backend, "seed_operation")
        assert backend.list_work_orders() == []

    def test_title_required(self, backend):
        """Test blank titles are rejected."""
        with pytest.raises(ValidationFailed):
            backend.create_work_order("   ")

    def test_list_oldest_first(self, backend):
        """Test planned work orders come back in intake order."""
        ids = [backend.create_work_order(f"WO {i}").id for i in range(3)]
        assert [wo.id for wo in backend.list_work_orders(state="planned")] == ids
        assert len(backend.list_work_orders(limit=2)) == 2

    def test_state_edit_rejected(self, backend):
        """Test plain edits can never touch state."""
        wo = backend.create_work_order("Guarded")
        with pytest.raises(ManagerControlledError) as exc:
            backend.update_work_order(wo.id, state="active")
        assert exc.value.code == ErrorCode.MANAGER_CONTROLLED_STATE
        assert exc.value.status_code == 400
        assert backend.get_work_order(wo.id).state == "planned"

    def test_plain_edit(self, backend):
        """Test editable fields round through the backend."""
        wo = backend.create_work_order("Editable")
        updated = backend.update_work_order(wo.id, title="Renamed", tags=["ui", "bug"])
        assert updated.title == "Renamed"
        assert backend.get_work_order(wo.id).tags == ["ui", "bug"]

    def test_unknown_field_rejected(self, backend):
        """Test fields outside the editable set are rejected."""
        wo = backend.create_work_order("Editable")
        with pytest.raises(ValidationFailed):
            backend.update_work_order(wo.id, workflow_id="hotfix")

    def test_write_requires_engine_writer(self, backend):
        """Test a forged writer cannot write state."""
        wo = backend.create_work_order("Forged")
        with pytest.raises(ManagerControlledError):
            backend.write_work_order(None, wo.id, state="active")

    def test_missing(self, backend):
        """Test require_* raises 404."""
        with pytest.raises(NotFoundError) as exc:
            backend.require_work_order("wo_missing")
        assert exc.value.status_code == 404


class TestOperations:

    def test_status_edit_rejected(self, seed, backend):
        """Test operation status is engine-only."""
        wo = backend.create_work_order("Ops")
        op = seed.operation(wo.id, "build", "Build")
        with pytest.raises(ManagerControlledError) as exc:
            backend.update_operation(op.id, status="done")
        assert exc.value.status_code == 403
        assert backend.get_operation(op.id).status == "todo"

    def test_graph_creation_requires_writer(self, backend):
        """Test operations cannot be created without the engine writer."""
        wo = backend.create_work_order("Ops")
        with pytest.raises(ManagerControlledError) as exc:
            backend.create_operation(None, wo.id, "build", "Build")
        assert exc.value.code == ErrorCode.MANAGER_CONTROLLED_OPERATION_GRAPH
        assert exc.value.status_code == 410

    def test_filter_by_status(self, seed, backend):
        """Test status filters and list fields survive storage."""
        wo = backend.create_work_order("Ops")
        seed.operation(wo.id, "build", "A", status="todo", assignee_agent_ids=["a1"])
        seed.operation(wo.id, "build", "B", status="done")
        open_ops = backend.list_operations(wo.id, statuses=("todo", "in_progress"))
        assert [op.title for op in open_ops] == ["A"]
        assert open_ops[0].assignee_agent_ids == ["a1"]

    def test_datetime_fields_round_trip(self, seed, backend):
        """Test optional datetimes come back as datetimes."""
        wo = backend.create_work_order("Ops")
        now = datetime.now()
        op = seed.operation(wo.id, "build", "A", escalated_at=now)
        assert backend.get_operation(op.id).escalated_at == now

    def test_stories(self, seed, backend):
        """Test loop stories are engine-written and keep their order and JSON fields."""
        from src.core.workflow_engine import _WRITER
        wo = backend.create_work_order("Loop")
        op = seed.operation(wo.id, "build", "Build", execution_type="loop",
                            loop_config={"over": "stories"}, max_retries=3)
        with pytest.raises(ManagerControlledError):
            backend.create_story(None, op, 0, "s1", "First")

        second = backend.create_story(_WRITER, op, 1, "s2", "Second", acceptance_criteria=["fast"])
        first = backend.create_story(_WRITER, op, 0, "s1", "First")
        backend.write_story(_WRITER, first.id, status="done", output={"output": "ok"})

        assert [s.story_key for s in backend.list_stories(op.id)] == ["s1", "s2"]
        assert [s.id for s in backend.list_stories(op.id, status="pending")] == [second.id]
        assert backend.get_story(first.id).output == {"output": "ok"}
        assert backend.get_story(second.id).acceptance_criteria == ["fast"]
        assert second.max_retries == 3
        assert backend.get_operation(op.id).loop_config == {"over": "stories"}
        with pytest.raises(ManagerControlledError):
            backend.write_story(None, first.id, status="pending")


class TestTransactions:

    def test_rollback_on_error(self, backend):
        """Test a failed transaction leaves nothing behind."""
        with pytest.raises(RuntimeError):
            with backend.transaction():
                wo = backend.create_work_order("Rolled back")
                backend.add_activity("test", "user:x", "work_order", wo.id)
                raise RuntimeError("abort")
        assert backend.list_work_orders() == []
        assert backend.list_activities() == []


class TestLeasesAndTokens:

    def test_lease_exclusive_until_expiry(self, backend):
        """Test a live lease blocks other owners and an expired one does not."""
        assert backend.acquire_lease("dispatch", "a", 10, now=100.0)
        assert not backend.acquire_lease("dispatch", "b", 10, now=105.0)
        assert backend.acquire_lease("dispatch", "a", 10, now=105.0)
        assert backend.acquire_lease("dispatch", "b", 10, now=200.0)
        assert backend.get_lease("dispatch")["owner"] == "b"

    def test_release_only_by_owner(self, backend):
        """Test another owner cannot release a lease."""
        backend.acquire_lease("dispatch", "a", 10)
        assert not backend.release_lease("dispatch", "b")
        assert backend.release_lease("dispatch", "a")
        assert backend.get_lease("dispatch") is None

    def test_lease_exclusive_across_connections(self, tmp_path):
        """Test only one of several repositories sharing a database file wins the lease."""
        path = str(tmp_path / "shared.db")
        repositories = [SQLiteRepository(path) for _ in range(6)]
        barrier = threading.Barrier(len(repositories))
        won = []

        def contend(index, repository):
            barrier.wait()
            if repository.acquire_lease("dispatch", f"process-{index}", 60):
                won.append(index)

        threads = [threading.Thread(target=contend, args=(i, r)) for i, r in enumerate(repositories)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(won) == 1
        assert repositories[0].get_lease("dispatch")["owner"] == f"process-{won[0]}"
        for repository in repositories:
            repository.close()

    def test_completion_token_once(self, backend):
        """Test a completion token is accepted once."""
        assert backend.record_completion_token("tok-1", "op_1")
        assert not backend.record_completion_token("tok-1", "op_1")


class TestOtherRecords:

    def test_agents(self, backend):
        """Test agent capabilities survive storage."""
        agent = backend.create_agent("builder", id="agent_b", capabilities={"can_execute_code": True})
        assert backend.get_agent("agent_b").capabilities == {"can_execute_code": True}
        backend.update_agent(agent.id, status="active")
        assert [a.id for a in backend.list_agents(status="active")] == ["agent_b"]

    def test_sessions_reused(self, backend):
        """Test saving an existing session key only touches last_used_at."""
        first = backend.save_session(AgentSession("k1", "a", "wo", "op"))
        backend.save_session(AgentSession("k1", "a", "wo", "op"))
        assert len(backend.list_sessions()) == 1
        assert backend.get_session("k1").created_at == first.created_at

    def test_receipts_and_packages(self, backend):
        """Test receipts and packages round through the backend."""
        backend.create_receipt(Receipt(id="r1", kind="manual", command_name="x"))
        backend.update_receipt("r1", parsed_json={"ok": True})
        assert backend.get_receipt("r1").parsed_json == {"ok": True}

        backend.save_package(StagedPackage(id="p1", name="pkg", sha256="abc", blocked_by_scan=True))
        assert backend.get_package("p1").blocked_by_scan is True


class TestDatabase:

    def test_sqlite_creates_missing_directory(self, tmp_path):
        """Test the database directory is created on first open."""
        path = tmp_path / "nested" / "deeper" / "clawcontrol.db"
        repository = SQLiteRepository(str(path))
        repository.close()
        assert path.parent.is_dir()

    def test_init_and_health(self, tmp_path):
        """Test init_db creates every required table."""
        path = str(tmp_path / "health.db")
        init_db(path)
        assert health_check(path)
        with get_db(path) as conn:
            names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert set(REQUIRED_TABLES) <= names

    def test_claim_writer_once(self):
        """Test the engine writer is already claimed."""
        import src.core.workflow_engine  # noqa: F401
        with pytest.raises(RuntimeError):
            claim_state_writer("intruder")
