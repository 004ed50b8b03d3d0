import pytest

import waypoint.persistence as persistence
from waypoint.models import ExecutionStatus
from waypoint.persistence import (
    FileExecutionRepository,
    InMemoryExecutionRepository,
    RegistryEntry,
    SQLiteExecutionRepository,
    get_repository,
)


@pytest.fixture(params=["memory", "sqlite", "file"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryExecutionRepository()
    if request.param == "sqlite":
        return SQLiteExecutionRepository(tmp_path / "waypoint.db")
    return FileExecutionRepository(tmp_path / "executions")


@pytest.mark.asyncio
async def test_checkpoint_is_replaced_not_appended(repo):
    await repo.save_checkpoint("exec-1", '{"step": 1}')
    await repo.save_checkpoint("exec-1", '{"step": 2}')

    assert await repo.load_checkpoint("exec-1") == '{"step": 2}'
    assert await repo.load_checkpoint("exec-2") is None

    await repo.delete_checkpoint("exec-1")
    assert await repo.load_checkpoint("exec-1") is None


@pytest.mark.asyncio
async def test_entries_crud(repo):
    entry = RegistryEntry(execution_id="exec-1", owner_id="alice", workflow_id="wf")
    await repo.upsert_entry(entry)
    await repo.upsert_entry(entry.model_copy(update={"status": ExecutionStatus.RUNNING}))

    stored = await repo.get_entry("exec-1")
    assert stored.status == ExecutionStatus.RUNNING
    assert [e.execution_id for e in await repo.list_entries()] == ["exec-1"]

    await repo.delete_entry("exec-1")
    assert await repo.get_entry("exec-1") is None
    assert await repo.list_entries() == []


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    db_path = tmp_path / "waypoint.db"
    first = SQLiteExecutionRepository(db_path)
    await first.save_checkpoint("exec-1", "{}")
    await first.upsert_entry(RegistryEntry(execution_id="exec-1", owner_id="a", workflow_id="wf"))
    first.close()

    second = SQLiteExecutionRepository(db_path)
    assert await second.load_checkpoint("exec-1") == "{}"
    assert (await second.get_entry("exec-1")).owner_id == "a"


@pytest.mark.asyncio
async def test_file_repository_rejects_unsafe_ids(tmp_path):
    repo = FileExecutionRepository(tmp_path)

    with pytest.raises(ValueError):
        await repo.save_checkpoint("../escape", "{}")


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("WAYPOINT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("WAYPOINT_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setattr(persistence, "_repository_instance", None)

    assert isinstance(get_repository(f"sqlite://{tmp_path / 'a.db'}"), SQLiteExecutionRepository)
    assert isinstance(get_repository(f"file://{tmp_path / 'files'}"), FileExecutionRepository)
    with pytest.raises(ValueError):
        get_repository("mysql://nope")

    monkeypatch.setattr(persistence, "_repository_instance", None)
    memory = get_repository()
    assert isinstance(memory, InMemoryExecutionRepository)
    assert get_repository() is memory


def test_get_repository_reads_environment(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.setenv("WAYPOINT_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")

    repo = get_repository()

    assert isinstance(repo, SQLiteExecutionRepository)
    assert repo.db_path == str(tmp_path / "env.db")
