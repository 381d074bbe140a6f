"""
Tests for Loan Module

Account opening, amount validation and conflict handling when two openings
race for the same account number.
"""

import pytest
import asyncio
from decimal import Decimal

from loan_desk.async_storage import AsyncInMemoryStorage
from loan_desk.config import LoanDeskConfig
from loan_desk.errors import ConflictError, ValidationError
from loan_desk.loans import Loan, LoanType, UNASSIGNED, DEFAULT_PENDING_TOTAL, to_amount
from loan_desk.sequence import SequenceAllocator
from loan_desk.system import LoanDeskSystem


class TestAmounts:
    
    def test_valid_amounts(self):
        assert to_amount("12.50", "amount") == Decimal("12.50")
        assert to_amount(0, "amount") == Decimal("0")
    
    @pytest.mark.parametrize("value", [-1, "abc", None, True, "NaN", "Infinity"])
    def test_invalid_amounts(self, value):
        with pytest.raises(ValidationError):
            to_amount(value, "amount")


class TestOpenAccount:
    """Account opening"""
    
    @pytest.mark.asyncio
    async def test_allocates_account_number(self, system):
        first = await system.loans.open_account("daily", installment_amount="100")
        second = await system.loans.open_account(LoanType.MONTHLY)
        
        assert first.account_no == "1"
        assert second.account_no == "2"
        assert first.installment_amount == Decimal("100")
    
    @pytest.mark.asyncio
    async def test_new_loan_is_unassigned(self, system):
        loan = await system.loans.open_account("daily")
        
        assert loan.index == UNASSIGNED
        assert loan.order == 0
        assert not loan.has_slot
    
    @pytest.mark.asyncio
    async def test_pending_loan_total_defaults(self, system):
        pending = await system.loans.open_account("pending")
        explicit = await system.loans.open_account("pending", total_to_be_paid="250")
        daily = await system.loans.open_account("daily")
        
        assert pending.total_to_be_paid == DEFAULT_PENDING_TOTAL
        assert explicit.total_to_be_paid == Decimal("250")
        assert daily.total_to_be_paid is None
    
    @pytest.mark.asyncio
    async def test_invalid_loan_type(self, system):
        with pytest.raises(ValidationError):
            await system.loans.open_account("weekly")
    
    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, system):
        with pytest.raises(ValidationError):
            await system.loans.open_account("daily", installment_amount=-5)
        assert len(await system.storage.load_all("loans")) == 0
    
    @pytest.mark.asyncio
    async def test_explicit_duplicate_account_conflicts(self, system):
        await system.loans.open_account("daily", account_no="10")
        
        with pytest.raises(ConflictError, match="already exists"):
            await system.loans.open_account("monthly", account_no="10")
    
    @pytest.mark.asyncio
    async def test_round_trip_through_storage(self, system):
        opened = await system.loans.open_account(
            "monthly", installment_amount="1500.25", name_english="Ravi Patel",
            file_category="gold"
        )
        
        loaded = await system.loans.get_by_account(opened.account_no)
        assert isinstance(loaded, Loan)
        assert loaded.id == opened.id
        assert loaded.loan_type == LoanType.MONTHLY
        assert loaded.installment_amount == Decimal("1500.25")
        assert loaded.name_english == "Ravi Patel"
        assert await system.loans.get(opened.id) is not None
        assert await system.loans.get_by_account("999") is None


class StaleAllocator(SequenceAllocator):
    """Hands out an already-taken number once, then behaves normally"""
    
    def __init__(self, storage, stale: str):
        super().__init__(storage)
        self.stale = stale
        self.calls = 0
    
    async def next_account_number(self) -> str:
        self.calls += 1
        if self.calls == 1:
            return self.stale
        return await super().next_account_number()


class TestAccountRaces:
    """Openings that collide on an allocated number"""
    
    @pytest.mark.asyncio
    async def test_stale_allocation_is_retried(self, system):
        await system.loans.open_account("daily")
        system.loans.allocator = StaleAllocator(system.storage, stale="1")
        
        loan = await system.loans.open_account("daily")
        
        assert loan.account_no == "2"
        assert system.loans.allocator.calls == 2
    
    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, system):
        await system.loans.open_account("daily")
        
        class AlwaysOne(SequenceAllocator):
            async def next_account_number(self):
                return "1"
        
        system.loans.allocator = AlwaysOne(system.storage)
        with pytest.raises(ConflictError):
            await system.loans.open_account("daily")
        assert len(await system.storage.load_all("loans")) == 1
    
    @pytest.mark.asyncio
    async def test_concurrent_openings_get_distinct_numbers(self):
        desk = LoanDeskSystem(AsyncInMemoryStorage(), LoanDeskConfig(conflict_retry_attempts=10))
        await desk.initialize()
        try:
            loans = await asyncio.gather(*(desk.loans.open_account("daily") for _ in range(5)))
            
            numbers = sorted(int(loan.account_no) for loan in loans)
            assert numbers == [1, 2, 3, 4, 5]
        finally:
            await desk.close()
    
    @pytest.mark.asyncio
    async def test_list_loans_by_order(self, system):
        a = await system.loans.open_account("daily")
        b = await system.loans.open_account("daily")
        await system.reorderer.reorder([b.id, a.id])
        
        listed = await system.loans.list_loans()
        assert [loan.id for loan in listed] == [b.id, a.id]
