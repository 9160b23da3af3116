"""
Payment endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .dependencies import LendingSystem, get_lending_system, page_limit
from .schemas import (
    CreatePaymentRequest,
    UpdatePaymentRequest,
    page_response,
    payment_response,
    success_response
)
from ..payments import PaymentStatus


router = APIRouter()


@router.get("")
async def list_payments(
    loan_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    status: Optional[PaymentStatus] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    system: LendingSystem = Depends(get_lending_system)
):
    """List payments, most recent payment date first"""
    result = system.payment_processor.list_payments(
        loan_id=loan_id, customer_id=customer_id, status=status,
        page=page, limit=page_limit(limit)
    )
    return page_response(result.map(payment_response))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_payment(
    request: CreatePaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a payment, interest first then principal"""
    payment = system.payment_processor.record_payment(
        loan_id=request.loan_id,
        amount=request.amount,
        payment_date=request.payment_date,
        payment_method=request.payment_method,
        transaction_reference=request.transaction_reference,
        notes=request.notes,
        received_by=request.received_by
    )
    loan = system.loan_manager.get_loan(payment.loan_id)
    return success_response({
        "payment": payment_response(payment),
        "loan": {
            "loan_id": loan.id,
            "outstanding_principal": loan.outstanding_principal,
            "outstanding_interest": loan.outstanding_interest,
            "status": loan.status.value
        }
    }, "Payment recorded successfully")


@router.get("/stats/overview")
async def get_payment_stats(system: LendingSystem = Depends(get_lending_system)):
    """Collection totals"""
    return success_response(system.payment_processor.get_payment_stats())


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get a payment"""
    payment = system.payment_processor.get_payment(payment_id)
    return success_response(payment_response(payment))


@router.put("/{payment_id}")
async def update_payment(
    payment_id: str,
    request: UpdatePaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Edit descriptive payment fields"""
    payment = system.payment_processor.update_payment(
        payment_id,
        payment_method=request.payment_method,
        transaction_reference=request.transaction_reference,
        notes=request.notes,
        received_by=request.received_by
    )
    return success_response(payment_response(payment), "Payment updated successfully")


@router.delete("/{payment_id}")
async def delete_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Delete a payment and reverse its effect on the loan"""
    system.payment_processor.delete_payment(payment_id)
    return success_response(message="Payment deleted successfully")
