"""
Pydantic schemas for API requests and responses

Wire names are camelCase; engine names are snake_case.
"""

from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..ledger import Payment
from ..loans import Loan
from ..storage import format_timestamp


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateLoanRequest(CamelModel):
    account_no: Optional[str] = Field(None, alias="accountNo",
                                      description="Allocated automatically when omitted")
    loan_type: str = Field(..., alias="loanType", description="daily, monthly or pending")
    installment_amount: Decimal = Field(Decimal('0'), alias="installmentAmount")
    received_amount: Decimal = Field(Decimal('0'), alias="receivedAmount")
    late_amount: Decimal = Field(Decimal('0'), alias="lateAmount")
    total_to_be_paid: Optional[Decimal] = Field(None, alias="totalToBePaid")
    name_english: Optional[str] = Field(None, alias="nameEnglish")
    name_gujarati: Optional[str] = Field(None, alias="nameGujarati")
    file_category: Optional[str] = Field(None, alias="fileCategory")


# Slot fields are left loosely typed so the engine reports bad values as 400s
class AssignIndexRequest(CamelModel):
    account_no: Any = Field(None, alias="accountNo")
    index: Any = None


class ReleaseIndexRequest(CamelModel):
    account_no: Any = Field(None, alias="accountNo")


class ReorderRequest(CamelModel):
    loans: Any = None
    atomic: bool = False


class RecordPaymentRequest(CamelModel):
    account_no: Optional[str] = Field(None, alias="accountNo")
    date: Optional[str] = None
    amount_paid: Optional[Decimal] = Field(
        None, validation_alias=AliasChoices("amountPaid", "amount", "amount_paid")
    )
    late_amount: Optional[Decimal] = Field(Decimal('0'), alias="lateAmount")
    remaining_amount: Optional[Decimal] = Field(None, alias="remainingAmount")


class DeleteAllPaymentsRequest(CamelModel):
    loan_id: Optional[str] = Field(None, alias="loanId")


def _amount(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def loan_to_json(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "accountNo": loan.account_no,
        "loanType": loan.loan_type.value,
        "index": loan.index,
        "order": loan.order,
        "installmentAmount": _amount(loan.installment_amount),
        "receivedAmount": _amount(loan.received_amount),
        "lateAmount": _amount(loan.late_amount),
        "totalToBePaid": _amount(loan.total_to_be_paid),
        "nameEnglish": loan.name_english,
        "nameGujarati": loan.name_gujarati,
        "fileCategory": loan.file_category,
        "createdAt": format_timestamp(loan.created_at),
        "updatedAt": format_timestamp(loan.updated_at),
    }


def payment_to_json(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "accountNo": payment.account_no,
        "amountPaid": _amount(payment.amount),
        "date": format_timestamp(payment.date),
        "lateAmount": _amount(payment.late_amount),
        "remainingAmount": _amount(payment.remaining_amount),
    }
