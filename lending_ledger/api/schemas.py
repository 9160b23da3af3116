"""
Pydantic schemas for API requests, and response builders

Monetary values travel as decimal strings in both directions so no amount
ever passes through a float.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..customers import Address, Customer, CustomerStatus
from ..interest import InterestType
from ..loans import Loan, LoanStatus
from ..payments import Payment, PaymentMethod
from ..storage import Page


class AddressModel(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None

    def to_address(self) -> Address:
        return Address(
            street=self.street,
            city=self.city,
            state=self.state,
            pincode=self.pincode
        )


# Customer schemas
class CreateCustomerRequest(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None
    address: Optional[AddressModel] = None
    aadhar_number: Optional[str] = None
    pan_number: Optional[str] = None


class UpdateCustomerRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[AddressModel] = None
    aadhar_number: Optional[str] = None
    pan_number: Optional[str] = None
    status: Optional[CustomerStatus] = None


# Loan schemas
class CreateLoanRequest(BaseModel):
    customer_id: str = Field(..., description="Customer ID, e.g. CUS-00001")
    principal_amount: Decimal = Field(..., ge=0)
    interest_type: InterestType
    interest_rate: Decimal = Field(..., ge=0, description="Percent per day or per 30-day month")
    disbursement_date: datetime
    due_date: datetime
    notes: Optional[str] = None


class UpdateLoanRequest(BaseModel):
    notes: Optional[str] = None
    status: Optional[LoanStatus] = None


class CalculateLoanRequest(BaseModel):
    as_of_date: Optional[datetime] = None


# Payment schemas
class CreatePaymentRequest(BaseModel):
    loan_id: str
    amount: Decimal = Field(..., gt=0)
    payment_date: Optional[datetime] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None
    received_by: Optional[str] = None


class UpdatePaymentRequest(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None
    received_by: Optional[str] = None


def jsonable(value: Any) -> Any:
    """Decimals to strings and dates to ISO strings, recursively"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [jsonable(v) for v in value]
    return value


def customer_response(customer: Customer) -> Dict[str, Any]:
    return {
        "customer_id": customer.id,
        "name": customer.name,
        "phone": customer.phone,
        "email": customer.email,
        "address": {
            "street": customer.address.street,
            "city": customer.address.city,
            "state": customer.address.state,
            "pincode": customer.address.pincode
        } if customer.address else None,
        "aadhar_number": customer.aadhar_number,
        "pan_number": customer.pan_number,
        "status": customer.status.value,
        "total_loans": customer.total_loans,
        "active_loans": customer.active_loans,
        "total_amount_borrowed": str(customer.total_amount_borrowed),
        "total_amount_repaid": str(customer.total_amount_repaid),
        "created_at": customer.created_at.isoformat(),
        "updated_at": customer.updated_at.isoformat()
    }


def loan_response(loan: Loan, with_current_interest: bool = False) -> Dict[str, Any]:
    result = {
        "loan_id": loan.id,
        "sequence_number": loan.sequence_number,
        "customer_id": loan.customer_id,
        "customer_loan_number": loan.customer_loan_number,
        "principal_amount": loan.terms.principal_amount,
        "interest_type": loan.terms.interest_type.value,
        "interest_rate": loan.terms.interest_rate,
        "loan_type_code": loan.loan_type_code,
        "disbursement_date": loan.terms.disbursement_date,
        "due_date": loan.terms.due_date,
        "status": loan.status.value,
        "outstanding_principal": loan.outstanding_principal,
        "principal_paid": loan.principal_paid,
        "outstanding_interest": loan.outstanding_interest,
        "total_outstanding": loan.total_outstanding,
        "total_amount_paid": loan.total_amount_paid,
        "total_interest_earned": loan.total_interest_earned,
        "total_payments": loan.total_payments,
        "last_payment_date": loan.last_payment_date,
        "profit_loss": loan.profit_loss,
        "closed_date": loan.closed_date,
        "notes": loan.notes,
        "created_at": loan.created_at,
        "updated_at": loan.updated_at
    }
    if with_current_interest:
        # Interest accrued on the current principal as of now, uncollected or not
        current_interest = loan.accrued_interest()
        result["current_interest"] = current_interest
        result["total_outstanding"] = loan.outstanding_principal + current_interest
    return jsonable(result)


def payment_response(payment: Payment) -> Dict[str, Any]:
    return jsonable({
        "payment_id": payment.id,
        "loan_id": payment.loan_id,
        "customer_id": payment.customer_id,
        "amount": payment.amount,
        "principal_paid": payment.principal_paid,
        "interest_paid": payment.interest_paid,
        "unapplied_amount": payment.unapplied_amount,
        "payment_date": payment.payment_date,
        "payment_method": payment.payment_method.value,
        "transaction_reference": payment.transaction_reference,
        "notes": payment.notes,
        "received_by": payment.received_by,
        "status": payment.status.value,
        "outstanding_principal_after": payment.outstanding_principal_after,
        "outstanding_interest_after": payment.outstanding_interest_after,
        "created_at": payment.created_at,
        "updated_at": payment.updated_at
    })


def page_response(page: Page) -> Dict[str, Any]:
    """List envelope: success, count, total, page, pages, data"""
    return {
        "success": True,
        "count": page.count,
        "total": page.total,
        "page": page.page,
        "pages": page.pages,
        "data": page.items
    }


def success_response(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    result: Dict[str, Any] = {"success": True}
    if message:
        result["message"] = message
    if data is not None:
        result["data"] = jsonable(data)
    return result


def error_response(message: str, errors: Optional[List[Any]] = None) -> Dict[str, Any]:
    result: Dict[str, Any] = {"success": False, "message": message}
    if errors:
        result["errors"] = errors
    return result
