"""
Payment ledger endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from ..system import LoanDeskSystem
from .dependencies import get_system
from .schemas import DeleteAllPaymentsRequest, RecordPaymentRequest, payment_to_json


router = APIRouter()


@router.post("/payment-history", status_code=status.HTTP_201_CREATED)
async def record_payment(
    request: RecordPaymentRequest,
    system: LoanDeskSystem = Depends(get_system)
):
    """Append a payment to the ledger"""
    payment = await system.ledger.record_payment(
        account_no=request.account_no,
        amount=request.amount_paid,
        date=request.date,
        late_amount=request.late_amount,
        remaining_amount=request.remaining_amount
    )
    return payment_to_json(payment)


@router.get("/payment-histories")
async def get_payment_histories(
    account_nos: str = Query("", alias="accountNos", description="Comma-separated account numbers"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    system: LoanDeskSystem = Depends(get_system)
):
    """Payments per account, most recent first"""
    grouped = await system.ledger.history(
        [a for a in account_nos.split(",") if a.strip()],
        start=start_date or None,
        end=end_date or None
    )
    return {
        account_no: [payment_to_json(p) for p in payments]
        for account_no, payments in grouped.items()
    }


@router.delete("/loanPayments/deleteAll")
async def delete_all_payments(
    request: DeleteAllPaymentsRequest,
    system: LoanDeskSystem = Depends(get_system)
):
    """Remove every payment recorded against a loan"""
    deleted = await system.ledger.delete_all_for_loan(request.loan_id)
    return {
        "success": True,
        "deletedCount": deleted,
        "message": f"Successfully deleted {deleted} payment(s)"
    }
