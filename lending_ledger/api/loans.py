"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .dependencies import LendingSystem, get_lending_system, page_limit
from .schemas import (
    CalculateLoanRequest,
    CreateLoanRequest,
    UpdateLoanRequest,
    loan_response,
    page_response,
    payment_response,
    success_response
)
from ..interest import InterestType
from ..loans import LoanStatus


router = APIRouter()


@router.get("")
async def list_loans(
    status: Optional[LoanStatus] = None,
    interest_type: Optional[InterestType] = None,
    customer_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans newest first, with interest accrued as of now"""
    result = system.loan_manager.list_loans(
        status=status, interest_type=interest_type, customer_id=customer_id,
        page=page, limit=page_limit(limit)
    )
    return page_response(result.map(lambda loan: loan_response(loan, with_current_interest=True)))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse a loan to a customer"""
    loan = system.loan_manager.create_loan(
        customer_id=request.customer_id,
        principal_amount=request.principal_amount,
        interest_type=request.interest_type,
        interest_rate=request.interest_rate,
        disbursement_date=request.disbursement_date,
        due_date=request.due_date,
        notes=request.notes
    )
    return success_response(loan_response(loan), "Loan created successfully")


@router.get("/stats/overview")
async def get_loan_stats(system: LendingSystem = Depends(get_lending_system)):
    """Portfolio totals"""
    return success_response(system.loan_manager.get_loan_stats())


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get a loan with its payment history"""
    loan = system.loan_manager.get_loan(loan_id)
    payments = system.payment_processor.get_loan_payments(loan.id)
    return success_response({
        "loan": loan_response(loan, with_current_interest=True),
        "payments": [payment_response(payment) for payment in payments]
    })


@router.put("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Update notes or apply a status transition"""
    loan = system.loan_manager.update_loan(loan_id, notes=request.notes, status=request.status)
    return success_response(loan_response(loan), "Loan updated successfully")


@router.put("/{loan_id}/close")
async def close_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Close a loan that has no outstanding principal"""
    loan = system.loan_manager.close_loan(loan_id)
    return success_response(loan_response(loan), "Loan closed successfully")


@router.post("/{loan_id}/calculate")
async def calculate_loan(
    loan_id: str,
    request: Optional[CalculateLoanRequest] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Interest and balances as of a date, without changing the loan"""
    as_of = request.as_of_date if request else None
    return success_response(system.loan_manager.calculate_loan_details(loan_id, as_of))
