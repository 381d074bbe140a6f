"""
Tests for Async Storage Interface

Tests the thread-pool wrapped backends, the schema steps applied on top of
them, and the storage factory.
"""

import pytest
import pytest_asyncio
import asyncio

from loan_desk.async_storage import (
    AsyncInMemoryStorage,
    AsyncPostgreSQLStorage,
    AsyncSQLiteStorage,
    create_async_storage
)
from loan_desk.config import LoanDeskConfig
from loan_desk.errors import ConflictError
from loan_desk.schema import SchemaManager, SchemaStep, LOANS_TABLE, PAYMENTS_TABLE
from loan_desk.storage import UniqueIndex


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def storage(request):
    """Async storage over each embedded backend"""
    if request.param == "memory":
        backend = AsyncInMemoryStorage()
    else:
        backend = AsyncSQLiteStorage(":memory:")
    await backend.initialize()
    yield backend
    await backend.close()


class TestAsyncWrapper:
    """Async wrapper around the sync backends"""
    
    @pytest.mark.asyncio
    async def test_basic_crud_operations(self, storage):
        data = {"id": "r1", "account_no": "3", "order": 0}
        
        await storage.save("loans", "r1", data)
        assert await storage.load("loans", "r1") == data
        
        assert await storage.update("loans", "r1", {"order": 2}) is True
        assert (await storage.load("loans", "r1"))["order"] == 2
        
        assert await storage.update_if("loans", "r1", {"order": 0}, {"order": 7}) is False
        assert await storage.load("loans", "missing") is None
    
    @pytest.mark.asyncio
    async def test_find_one_and_delete_many(self, storage):
        for i in range(3):
            await storage.save("payments", f"p{i}", {"id": f"p{i}", "account_no": "9"})
        
        assert (await storage.find_one("payments", {"account_no": "9"}))["account_no"] == "9"
        assert await storage.delete_many("payments", {"account_no": "9"}) == 3
        assert await storage.find("payments", {}) == []
    
    @pytest.mark.asyncio
    async def test_concurrent_saves(self, storage):
        """Concurrent calls each complete; the wrapper serializes single operations"""
        await asyncio.gather(*(
            storage.save("loans", f"l{i}", {"id": f"l{i}", "account_no": str(i)})
            for i in range(20)
        ))
        assert len(await storage.load_all("loans")) == 20
    
    @pytest.mark.asyncio
    async def test_unique_violation_is_conflict(self, storage):
        await storage.create_unique_index("loans", UniqueIndex("account_no"))
        await storage.save("loans", "a", {"id": "a", "account_no": "1"})
        
        with pytest.raises(ConflictError):
            await storage.save("loans", "b", {"id": "b", "account_no": "1"})
    
    @pytest.mark.asyncio
    async def test_atomic_rollback(self, storage):
        await storage.save("loans", "a", {"id": "a", "order": 0})
        
        with pytest.raises(ConflictError):
            async with storage.atomic():
                await storage.update("loans", "a", {"order": 5})
                raise ConflictError("abort")
        
        assert (await storage.load("loans", "a"))["order"] == 0
    
    @pytest.mark.asyncio
    async def test_nested_atomic_joins_outer(self, storage):
        with pytest.raises(ConflictError):
            async with storage.atomic():
                async with storage.atomic():
                    await storage.save("loans", "a", {"id": "a", "order": 1})
                raise ConflictError("abort")
        
        assert await storage.load("loans", "a") is None
    
    @pytest.mark.asyncio
    async def test_rollback_spares_other_tasks(self, storage):
        """Writes from other tasks wait for the open transaction instead of joining it"""
        await storage.save("loans", "a", {"id": "a", "order": 0})
        started = asyncio.Event()
        
        async def failing_transaction():
            async with storage.atomic():
                await storage.update("loans", "a", {"order": 5})
                started.set()
                await asyncio.sleep(0.05)
                raise ConflictError("abort")
        
        async def other_writer():
            await started.wait()
            await storage.save("loans", "b", {"id": "b", "order": 1})
        
        results = await asyncio.gather(failing_transaction(), other_writer(), return_exceptions=True)
        
        assert isinstance(results[0], ConflictError)
        assert results[1] is None
        assert (await storage.load("loans", "a"))["order"] == 0
        assert (await storage.load("loans", "b"))["order"] == 1


class TestSchemaManager:
    """Ordered schema steps"""
    
    @pytest.mark.asyncio
    async def test_apply_default_steps(self, storage):
        manager = SchemaManager(storage)
        
        applied = await manager.apply()
        assert [step.version for step in applied] == [1, 2, 3]
        
        assert await manager.get_current_version() == 3
        assert await manager.get_pending_steps() == []
    
    @pytest.mark.asyncio
    async def test_apply_is_idempotent(self, storage):
        manager = SchemaManager(storage)
        await manager.apply()
        
        assert await manager.apply() == []
        assert await manager.get_current_version() == 3
    
    @pytest.mark.asyncio
    async def test_default_steps_install_indexes(self, storage):
        await SchemaManager(storage).apply()
        
        await storage.save(LOANS_TABLE, "a", {"id": "a", "account_no": "1", "index": 4})
        await storage.save(LOANS_TABLE, "b", {"id": "b", "account_no": "2", "index": -1})
        await storage.save(LOANS_TABLE, "c", {"id": "c", "account_no": "3", "index": -1})
        
        with pytest.raises(ConflictError):
            await storage.save(LOANS_TABLE, "d", {"id": "d", "account_no": "1", "index": -1})
        with pytest.raises(ConflictError):
            await storage.update(LOANS_TABLE, "b", {"index": 4})
        
        await storage.save(PAYMENTS_TABLE, "p", {"id": "p", "account_no": "1"})
        assert len(await storage.load_all(PAYMENTS_TABLE)) == 1
    
    @pytest.mark.asyncio
    async def test_steps_run_in_version_order(self, storage):
        calls = []
        
        def step(version):
            async def apply(store):
                calls.append(version)
            return SchemaStep(version, f"step {version}", apply)
        
        manager = SchemaManager(storage, steps=[step(2), step(1)])
        await manager.apply()
        
        assert calls == [1, 2]
    
    @pytest.mark.asyncio
    async def test_failed_step_is_not_recorded(self, storage):
        async def broken(store):
            raise RuntimeError("boom")
        
        async def fine(store):
            pass
        
        manager = SchemaManager(storage, steps=[
            SchemaStep(1, "fine", fine), SchemaStep(2, "broken", broken)
        ])
        with pytest.raises(RuntimeError):
            await manager.apply()
        
        assert await manager.get_current_version() == 1


class TestStorageFactory:
    
    def test_memory_backend(self):
        storage = create_async_storage(LoanDeskConfig(storage_type="memory"))
        assert isinstance(storage, AsyncInMemoryStorage)
    
    def test_sqlite_backend(self, tmp_path):
        storage = create_async_storage(LoanDeskConfig(
            storage_type="sqlite", sqlite_path=str(tmp_path / "desk.db")
        ))
        assert isinstance(storage, AsyncSQLiteStorage)
    
    def test_postgresql_backend(self):
        storage = create_async_storage(LoanDeskConfig(
            storage_type="postgresql", database_url="postgresql://desk@localhost/desk"
        ))
        assert isinstance(storage, AsyncPostgreSQLStorage)
        # No connection is made until initialize()
        assert storage.pool is None
    
    def test_postgresql_requires_url(self):
        with pytest.raises(ValueError):
            create_async_storage(LoanDeskConfig(storage_type="postgresql", database_url=None))
    
    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_async_storage(LoanDeskConfig(storage_type="mongodb"))
