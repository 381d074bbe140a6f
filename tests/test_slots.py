"""
Tests for slot assignment

Covers one-way displacement, slot validation, release, occupancy and
backfill, and the retry path when a concurrent writer takes a slot between
the occupancy read and the write.
"""

import pytest
import pytest_asyncio

from loan_desk.async_storage import AsyncInMemoryStorage
from loan_desk.config import LoanDeskConfig
from loan_desk.errors import ConflictError, NotFoundError, ValidationError
from loan_desk.loans import UNASSIGNED
from loan_desk.schema import LOANS_TABLE
from loan_desk.system import LoanDeskSystem


async def slot_of(system, account_no):
    loan = await system.loans.get_by_account(account_no)
    return loan.index


class TestAssignSlot:
    """Slot assignment and displacement"""
    
    @pytest.mark.asyncio
    async def test_assign_empty_slot(self, system):
        await system.loans.open_account("daily", account_no="A")
        
        displaced = await system.slots.assign_slot("A", 5)
        
        assert displaced is None
        assert await slot_of(system, "A") == 5
    
    @pytest.mark.asyncio
    async def test_displaced_loan_becomes_unassigned(self, system):
        await system.loans.open_account("daily", account_no="A")
        await system.loans.open_account("daily", account_no="B")
        await system.slots.assign_slot("A", 3)
        await system.slots.assign_slot("B", 7)
        
        displaced = await system.slots.assign_slot("B", 3)
        
        # One-way: A does not move into B's old slot 7
        assert displaced == "A"
        assert await slot_of(system, "A") == UNASSIGNED
        assert await slot_of(system, "B") == 3
        assert 7 not in await system.slots.occupancy()
    
    @pytest.mark.asyncio
    async def test_reassign_same_slot_is_noop(self, system):
        await system.loans.open_account("daily", account_no="A")
        await system.slots.assign_slot("A", 2)
        
        assert await system.slots.assign_slot("A", 2) is None
        assert await slot_of(system, "A") == 2
    
    @pytest.mark.asyncio
    async def test_move_to_another_slot(self, system):
        await system.loans.open_account("daily", account_no="A")
        await system.slots.assign_slot("A", 2)
        await system.slots.assign_slot("A", 84)
        
        assert await system.slots.occupancy() == {84: "A"}
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("index", [0, 85, -1, "5", 2.0, True, None])
    async def test_invalid_index(self, system, index):
        await system.loans.open_account("daily", account_no="A")
        
        with pytest.raises(ValidationError, match="must be 1-84"):
            await system.slots.assign_slot("A", index)
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("account_no", [None, "", "   "])
    async def test_missing_account(self, system, account_no):
        with pytest.raises(ValidationError):
            await system.slots.assign_slot(account_no, 1)
    
    @pytest.mark.asyncio
    async def test_unknown_loan(self, system):
        with pytest.raises(NotFoundError, match="Loan not found"):
            await system.slots.assign_slot("404", 1)
    
    @pytest.mark.asyncio
    async def test_custom_capacity(self):
        desk = LoanDeskSystem(AsyncInMemoryStorage(), LoanDeskConfig(slot_capacity=10))
        await desk.initialize()
        try:
            await desk.loans.open_account("daily", account_no="A")
            with pytest.raises(ValidationError, match="must be 1-10"):
                await desk.slots.assign_slot("A", 11)
            assert await desk.slots.assign_slot("A", 10) is None
        finally:
            await desk.close()


class RacingStorage(AsyncInMemoryStorage):
    """Runs a one-shot callback right after the first slot occupancy read"""
    
    def __init__(self):
        super().__init__()
        self.race = None
    
    async def find_one(self, table, filters):
        result = await super().find_one(table, filters)
        if self.race is not None and "index" in filters:
            race, self.race = self.race, None
            await race()
        return result


class LateScanStorage(AsyncInMemoryStorage):
    """Runs a one-shot callback right after the first full table scan"""
    
    def __init__(self):
        super().__init__()
        self.race = None
    
    async def load_all(self, table):
        result = await super().load_all(table)
        if self.race is not None:
            race, self.race = self.race, None
            await race()
        return result


class ContestedStorage(AsyncInMemoryStorage):
    """Every write into a real slot fails as if someone else got there first"""
    
    def __init__(self):
        super().__init__()
        self.slot_writes = 0
    
    async def update(self, table, record_id, changes):
        index = changes.get("index")
        if table == LOANS_TABLE and isinstance(index, int) and index >= 1:
            self.slot_writes += 1
            raise ConflictError("slot taken")
        return await super().update(table, record_id, changes)


class TestSlotRaces:
    """Concurrent writers on the same slot"""
    
    @pytest_asyncio.fixture
    async def racing(self):
        desk = LoanDeskSystem(RacingStorage(), LoanDeskConfig())
        await desk.initialize()
        yield desk
        await desk.close()
    
    @pytest.mark.asyncio
    async def test_slot_taken_between_read_and_write(self, racing):
        target = await racing.loans.open_account("daily", account_no="T")
        intruder = await racing.loans.open_account("daily", account_no="C")
        
        async def take_slot():
            await racing.storage.update(LOANS_TABLE, intruder.id, {"index": 5})
        
        racing.storage.race = take_slot
        await racing.slots.assign_slot("T", 5)
        
        # Retried against fresh state: the intruder is displaced, never duplicated
        assert await slot_of(racing, "T") == 5
        assert await slot_of(racing, "C") == UNASSIGNED
        assert await racing.slots.occupancy() == {5: "T"}
        assert target.id != intruder.id
    
    @pytest.mark.asyncio
    async def test_gives_up_after_retry_budget(self):
        storage = ContestedStorage()
        desk = LoanDeskSystem(storage, LoanDeskConfig(conflict_retry_attempts=3))
        await desk.initialize()
        try:
            await desk.loans.open_account("daily", account_no="A")
            
            with pytest.raises(ConflictError):
                await desk.slots.assign_slot("A", 1)
            assert storage.slot_writes == 3
            assert await slot_of(desk, "A") == UNASSIGNED
        finally:
            await desk.close()


class TestReleaseAndOccupancy:
    
    @pytest.mark.asyncio
    async def test_release_slot(self, system):
        await system.loans.open_account("daily", account_no="A")
        await system.slots.assign_slot("A", 9)
        
        assert await system.slots.release_slot("A") == 9
        assert await slot_of(system, "A") == UNASSIGNED
        assert await system.slots.release_slot("A") == UNASSIGNED
    
    @pytest.mark.asyncio
    async def test_release_unknown_loan(self, system):
        with pytest.raises(NotFoundError):
            await system.slots.release_slot("nope")
    
    @pytest.mark.asyncio
    async def test_occupancy_sorted(self, system):
        for account_no, index in (("A", 30), ("B", 2), ("C", 15)):
            await system.loans.open_account("daily", account_no=account_no)
            await system.slots.assign_slot(account_no, index)
        await system.loans.open_account("daily", account_no="D")
        
        occupancy = await system.slots.occupancy()
        assert list(occupancy.items()) == [(2, "B"), (15, "C"), (30, "A")]


class TestBackfill:
    
    @pytest.mark.asyncio
    async def test_fills_lowest_free_slots_oldest_first(self, system):
        await system.loans.open_account("daily", account_no="A")
        await system.loans.open_account("daily", account_no="B")
        await system.loans.open_account("daily", account_no="C")
        await system.slots.assign_slot("B", 1)
        
        assert await system.slots.backfill() == 2
        assert await system.slots.occupancy() == {1: "B", 2: "A", 3: "C"}
    
    @pytest.mark.asyncio
    async def test_stops_when_slots_run_out(self):
        desk = LoanDeskSystem(AsyncInMemoryStorage(), LoanDeskConfig(slot_capacity=2))
        await desk.initialize()
        try:
            for account_no in ("A", "B", "C"):
                await desk.loans.open_account("daily", account_no=account_no)
            
            assert await desk.slots.backfill() == 2
            assert await slot_of(desk, "C") == UNASSIGNED
        finally:
            await desk.close()
    
    @pytest.mark.asyncio
    async def test_nothing_to_place(self, system):
        assert await system.slots.backfill() == 0
    
    @pytest.mark.asyncio
    async def test_loan_assigned_after_scan_keeps_its_slot(self):
        storage = LateScanStorage()
        desk = LoanDeskSystem(storage, LoanDeskConfig())
        await desk.initialize()
        try:
            await desk.loans.open_account("daily", account_no="A")
            late = await desk.loans.open_account("daily", account_no="X")
            
            async def assign_late():
                await storage.update(LOANS_TABLE, late.id, {"index": 40})
            
            storage.race = assign_late
            
            assert await desk.slots.backfill() == 1
            assert await slot_of(desk, "X") == 40
            assert await desk.slots.occupancy() == {1: "A", 40: "X"}
        finally:
            await desk.close()
