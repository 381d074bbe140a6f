"""
Payment Ledger

Payments are append-only entries keyed to a loan's account number. They are
never edited; the only removal is the bulk reset of every payment on one
loan. The history view groups payments per account, newest first.
"""

from decimal import Decimal
from datetime import date, datetime, time, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import logging
import uuid

from .async_storage import AsyncStorageInterface
from .errors import NotFoundError, ValidationError
from .loans import to_amount
from .logging_config import log_action
from .schema import LOANS_TABLE, PAYMENTS_TABLE
from .storage import StorageRecord, format_timestamp, parse_timestamp


logger = logging.getLogger(__name__)


def to_timestamp(value: Any, field_name: str = "date") -> datetime:
    """Parse a payment timestamp; naive values and bare dates are taken as UTC"""
    if isinstance(value, datetime):
        return parse_timestamp(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp(text)
        except ValueError:
            pass
    raise ValidationError(f"{field_name} must be a valid date")


@dataclass
class Payment(StorageRecord):
    """One ledger entry"""
    account_no: str
    amount: Decimal
    date: datetime
    late_amount: Decimal = Decimal('0')
    remaining_amount: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        data = dict(data)
        data['amount'] = Decimal(str(data['amount']))
        data['late_amount'] = Decimal(str(data.get('late_amount') or '0'))
        if data.get('remaining_amount') is not None:
            data['remaining_amount'] = Decimal(str(data['remaining_amount']))
        data['date'] = parse_timestamp(data['date'])
        return super().from_dict(data)


class PaymentLedger:
    """Records payments and serves grouped payment history"""

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    async def record_payment(
        self,
        account_no: str,
        amount: Any,
        date: Any,
        late_amount: Any = 0,
        remaining_amount: Any = None
    ) -> Payment:
        """Append a payment entry for an account"""
        if account_no is None or not str(account_no).strip():
            raise ValidationError("accountNo is required")

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_no=str(account_no).strip(),
            amount=to_amount(amount, "amountPaid"),
            date=to_timestamp(date),
            late_amount=to_amount(late_amount if late_amount is not None else 0, "lateAmount"),
            remaining_amount=(
                to_amount(remaining_amount, "remainingAmount")
                if remaining_amount is not None else None
            )
        )
        await self.storage.save(PAYMENTS_TABLE, payment.id, payment.to_dict())

        log_action(
            logger, "info", f"Recorded payment for account {payment.account_no}",
            action="record_payment", resource=payment.id,
            extra={"account_no": payment.account_no, "amount": str(payment.amount)}
        )
        return payment

    async def history(
        self,
        account_nos: Iterable[str],
        start: Any = None,
        end: Any = None
    ) -> Dict[str, List[Payment]]:
        """
        Payments for the given accounts, grouped by account number.

        Args:
            account_nos: Account numbers to include
            start: Inclusive lower bound on payment date, optional
            end: Inclusive upper bound on payment date, optional

        Returns:
            Mapping of account number to its payments, most recent first.
            Accounts without matching payments are left out.
        """
        if isinstance(account_nos, str):
            account_nos = [account_nos]
        wanted = sorted({str(a).strip() for a in account_nos if a is not None and str(a).strip()})
        if not wanted:
            return {}

        filters: Dict[str, Any] = {"account_no": {"$in": wanted}}
        date_range = {}
        if start is not None:
            date_range["$gte"] = format_timestamp(to_timestamp(start, "startDate"))
        if end is not None:
            date_range["$lte"] = format_timestamp(to_timestamp(end, "endDate"))
        if date_range:
            filters["date"] = date_range

        payments = [Payment.from_dict(d) for d in await self.storage.find(PAYMENTS_TABLE, filters)]
        payments.sort(key=lambda p: (p.date, p.created_at), reverse=True)

        grouped: Dict[str, List[Payment]] = {}
        for payment in payments:
            grouped.setdefault(payment.account_no, []).append(payment)
        return grouped

    async def delete_all_for_loan(self, loan_id: str) -> int:
        """
        Remove every payment on a loan.

        A missing loan and a loan with no payments both raise NotFoundError,
        with different messages.
        """
        if not loan_id or not str(loan_id).strip():
            raise ValidationError("loanId is required")

        loan = await self.storage.load(LOANS_TABLE, str(loan_id))
        if loan is None:
            raise NotFoundError("Loan not found")

        deleted = await self.storage.delete_many(PAYMENTS_TABLE, {"account_no": loan["account_no"]})
        if deleted == 0:
            raise NotFoundError("No payments found for the specified loan")

        log_action(
            logger, "info", f"Deleted {deleted} payments for loan {loan_id}",
            action="delete_all_payments", resource=str(loan_id),
            extra={"account_no": loan["account_no"], "deleted": deleted}
        )
        return deleted
