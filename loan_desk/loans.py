"""
Loan Module

Loan records, lookup, and account opening. Account opening takes its account
number from the sequence allocator unless the caller supplies one, and relies
on the store's unique account number index to catch two openings racing for
the same number.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .async_storage import AsyncStorageInterface
from .errors import ConflictError, ValidationError
from .logging_config import log_action
from .retry import retry_on_conflict
from .schema import LOANS_TABLE
from .sequence import SequenceAllocator
from .storage import StorageRecord


logger = logging.getLogger(__name__)

UNASSIGNED = -1

# Balance owed on a pending loan when none is given at opening
DEFAULT_PENDING_TOTAL = Decimal('1000')


class LoanType(Enum):
    """How installments are collected"""
    DAILY = "daily"
    MONTHLY = "monthly"
    PENDING = "pending"


def to_amount(value: Any, field_name: str) -> Decimal:
    """Parse a non-negative monetary amount"""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field_name} must be a non-negative number")
    return amount


@dataclass
class Loan(StorageRecord):
    """One borrower's account and its physical file position"""
    account_no: str
    loan_type: LoanType
    installment_amount: Decimal = Decimal('0')
    received_amount: Decimal = Decimal('0')
    late_amount: Decimal = Decimal('0')
    total_to_be_paid: Optional[Decimal] = None
    index: int = UNASSIGNED             # Physical slot, -1 when unassigned
    order: int = 0                      # Caller-controlled sort key
    name_english: Optional[str] = None
    name_gujarati: Optional[str] = None
    file_category: Optional[str] = None

    @property
    def has_slot(self) -> bool:
        return self.index != UNASSIGNED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['loan_type'] = LoanType(data['loan_type'])
        for key in ('installment_amount', 'received_amount', 'late_amount'):
            if data.get(key) is not None:
                data[key] = Decimal(str(data[key]))
        if data.get('total_to_be_paid') is not None:
            data['total_to_be_paid'] = Decimal(str(data['total_to_be_paid']))
        return super().from_dict(data)


class LoanRegistry:
    """
    Loan lookup and account opening
    """

    def __init__(self, storage: AsyncStorageInterface, allocator: SequenceAllocator,
                 conflict_retry_attempts: int = 3):
        self.storage = storage
        self.allocator = allocator
        self.conflict_retry_attempts = conflict_retry_attempts

    async def get(self, loan_id: str) -> Optional[Loan]:
        data = await self.storage.load(LOANS_TABLE, loan_id)
        return Loan.from_dict(data) if data else None

    async def get_by_account(self, account_no: str) -> Optional[Loan]:
        data = await self.storage.find_one(LOANS_TABLE, {"account_no": account_no})
        return Loan.from_dict(data) if data else None

    async def list_loans(self) -> List[Loan]:
        """All loans sorted by their order key, then creation time"""
        loans = [Loan.from_dict(d) for d in await self.storage.load_all(LOANS_TABLE)]
        loans.sort(key=lambda loan: (loan.order, loan.created_at))
        return loans

    async def open_account(
        self,
        loan_type: Any,
        installment_amount: Any = 0,
        received_amount: Any = 0,
        late_amount: Any = 0,
        total_to_be_paid: Any = None,
        account_no: Optional[str] = None,
        name_english: Optional[str] = None,
        name_gujarati: Optional[str] = None,
        file_category: Optional[str] = None
    ) -> Loan:
        """
        Open a new loan account

        Args:
            loan_type: daily, monthly or pending
            installment_amount: Amount collected per installment
            total_to_be_paid: Balance owed; pending loans default to 1000
            account_no: Explicit account number; allocated when omitted

        Returns:
            The stored Loan, unassigned to any slot and with order 0
        """
        try:
            loan_type = LoanType(loan_type)
        except ValueError:
            raise ValidationError(f"Invalid loan type: {loan_type!r}")

        fields = {
            "installment_amount": to_amount(installment_amount, "installmentAmount"),
            "received_amount": to_amount(received_amount, "receivedAmount"),
            "late_amount": to_amount(late_amount, "lateAmount"),
            "total_to_be_paid": None,
            "name_english": name_english,
            "name_gujarati": name_gujarati,
            "file_category": file_category,
        }
        if total_to_be_paid is not None:
            fields["total_to_be_paid"] = to_amount(total_to_be_paid, "totalToBePaid")
        elif loan_type == LoanType.PENDING:
            fields["total_to_be_paid"] = DEFAULT_PENDING_TOTAL

        if account_no is not None:
            account_no = str(account_no).strip()
            if not account_no:
                raise ValidationError("accountNo must not be empty")
            try:
                loan = await self._insert(account_no, loan_type, fields)
            except ConflictError:
                raise ConflictError(f"Loan with account number {account_no} already exists")
            return loan

        async def attempt() -> Loan:
            number = await self.allocator.next_account_number()
            return await self._insert(number, loan_type, fields)

        return await retry_on_conflict(attempt, self.conflict_retry_attempts, "open_account")

    async def _insert(self, account_no: str, loan_type: LoanType, fields: Dict[str, Any]) -> Loan:
        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_no=account_no,
            loan_type=loan_type,
            **fields
        )
        await self.storage.save(LOANS_TABLE, loan.id, loan.to_dict())

        log_action(
            logger, "info", f"Opened loan account {account_no}",
            action="open_account", resource=loan.id,
            extra={"account_no": account_no, "loan_type": loan_type.value}
        )
        return loan
