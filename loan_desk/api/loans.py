"""
Loan account endpoints
"""

from fastapi import APIRouter, Depends, status

from ..errors import NotFoundError
from ..system import LoanDeskSystem
from .dependencies import get_system
from .schemas import CreateLoanRequest, loan_to_json


router = APIRouter()


@router.get("/next-account")
async def get_next_account(system: LoanDeskSystem = Depends(get_system)):
    """Smallest account number not yet in use"""
    return {"nextAccountNo": await system.sequence.next_account_number()}


@router.get("")
async def list_loans(system: LoanDeskSystem = Depends(get_system)):
    """All loans in filing order"""
    return [loan_to_json(loan) for loan in await system.loans.list_loans()]


@router.post("", status_code=status.HTTP_201_CREATED)
async def open_loan(
    request: CreateLoanRequest,
    system: LoanDeskSystem = Depends(get_system)
):
    """Open a loan account"""
    loan = await system.loans.open_account(
        loan_type=request.loan_type,
        installment_amount=request.installment_amount,
        received_amount=request.received_amount,
        late_amount=request.late_amount,
        total_to_be_paid=request.total_to_be_paid,
        account_no=request.account_no,
        name_english=request.name_english,
        name_gujarati=request.name_gujarati,
        file_category=request.file_category
    )
    return loan_to_json(loan)


@router.get("/{account_no}")
async def get_loan(account_no: str, system: LoanDeskSystem = Depends(get_system)):
    """Get a loan by account number"""
    loan = await system.loans.get_by_account(account_no)
    if not loan:
        raise NotFoundError("Loan not found")
    return loan_to_json(loan)
