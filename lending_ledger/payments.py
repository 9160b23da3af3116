"""
Payment Processing Module

Interest-first allocation of loan repayments, the resulting loan and customer
updates, and reversal of a payment when it is deleted.

Allocation order for a payment of `amount` on `payment_date`:
    1. interest accrued on the outstanding principal up to the payment date,
       less interest already collected, is paid first
    2. whatever remains pays principal, up to the outstanding principal
    3. anything left over is reported as unapplied and not booked to the loan
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .customers import CustomerManager
from .exceptions import (
    ConflictError, InvalidInputError, InvalidStateError, LoanClosedError,
    PaymentNotFoundError
)
from .identifiers import SequenceAllocator, generate_payment_id, payment_day_key
from .interest import DateLike, as_utc_datetime
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .money import ZERO, money, positive_money
from .storage import Page, StorageInterface, StorageRecord, paginate

logger = get_logger("lending_ledger.payments")


class PaymentStatus(Enum):
    """Payment processing status"""
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    REVERSED = "reversed"

    @classmethod
    def parse(cls, value: Any) -> 'PaymentStatus':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Invalid payment status {value!r}")


class PaymentMethod(Enum):
    """How the borrower paid"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    CHEQUE = "cheque"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> 'PaymentMethod':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Invalid payment method {value!r}")


@dataclass
class PaymentAllocation:
    """Split of a payment amount between interest and principal"""
    amount: Decimal
    interest_due: Decimal       # accrued as of payment date minus interest already earned
    interest_paid: Decimal
    principal_paid: Decimal
    unapplied_amount: Decimal   # beyond full payoff, not booked anywhere

    @property
    def outstanding_interest_after(self) -> Decimal:
        return money(self.interest_due - self.interest_paid)


@dataclass
class Payment(StorageRecord):
    """
    Historical record of one repayment.

    Financial fields are fixed at allocation time; only the descriptive
    fields (method, reference, notes, received_by) may be edited.
    """
    loan_id: str
    customer_id: str
    amount: Decimal
    principal_paid: Decimal
    interest_paid: Decimal
    payment_date: datetime
    outstanding_principal_after: Decimal
    outstanding_interest_after: Decimal
    unapplied_amount: Decimal = ZERO
    payment_method: PaymentMethod = PaymentMethod.CASH
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None
    received_by: Optional[str] = None
    status: PaymentStatus = PaymentStatus.COMPLETED

    @property
    def payment_id(self) -> str:
        return self.id


def allocate_payment(loan: Loan, amount: Decimal, payment_date: DateLike) -> PaymentAllocation:
    """
    Split a payment between interest and principal without touching the loan.

    Args:
        loan: Loan in its current state
        amount: Payment amount, must be positive
        payment_date: Effective date; interest is accrued up to here

    Returns:
        PaymentAllocation with interest_paid + principal_paid + unapplied_amount == amount
    """
    amount = positive_money(amount, "Payment amount")

    accrued = loan.accrued_interest(payment_date)
    interest_due = money(accrued - loan.total_interest_earned)

    interest_paid = min(amount, max(ZERO, interest_due))
    remaining = amount - interest_paid
    principal_paid = min(remaining, loan.outstanding_principal)

    return PaymentAllocation(
        amount=amount,
        interest_due=interest_due,
        interest_paid=interest_paid,
        principal_paid=principal_paid,
        unapplied_amount=money(remaining - principal_paid)
    )


def apply_allocation(loan: Loan, allocation: PaymentAllocation, payment_date: DateLike) -> bool:
    """
    Book an allocation onto the loan and recompute its balances.

    Returns:
        True when the payment cleared both balances and closed the loan
    """
    payment_date = as_utc_datetime(payment_date)

    loan.total_amount_paid = money(loan.total_amount_paid + allocation.amount)
    loan.total_interest_earned = money(loan.total_interest_earned + allocation.interest_paid)
    loan.principal_paid = money(loan.principal_paid + allocation.principal_paid)
    loan.outstanding_principal = money(loan.outstanding_principal - allocation.principal_paid)
    loan.total_payments += 1
    loan.last_payment_date = payment_date
    loan.recompute_outstanding()

    if loan.outstanding_principal <= ZERO and loan.outstanding_interest <= ZERO:
        loan.close(closed_at=payment_date)
        return True
    return False


def reverse_allocation(loan: Loan, payment: Payment) -> bool:
    """
    Undo a payment's effect on the loan.

    The exact arithmetic inverse of apply_allocation; accrued interest is not
    recomputed, so outstanding_interest stays as it was until the next
    recompute.

    Returns:
        True when a closed loan was reopened
    """
    loan.total_amount_paid = money(loan.total_amount_paid - payment.amount)
    loan.total_interest_earned = money(loan.total_interest_earned - payment.interest_paid)
    loan.principal_paid = money(loan.principal_paid - payment.principal_paid)
    loan.outstanding_principal = money(loan.outstanding_principal + payment.principal_paid)
    loan.total_payments = max(0, loan.total_payments - 1)

    if loan.status == LoanStatus.CLOSED:
        loan.reopen()
        return True
    return False


class PaymentProcessor:
    """
    Records, lists and reverses loan payments.

    Lock order is loan, then customer, then storage, matching LoanManager.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        loan_manager: LoanManager,
        customer_manager: CustomerManager,
        sequences: Optional[SequenceAllocator] = None,
        id_retry_attempts: int = 3
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loan_manager = loan_manager
        self.customer_manager = customer_manager
        self.sequences = sequences or SequenceAllocator(storage)
        self.id_retry_attempts = max(1, id_retry_attempts)
        self.table_name = "payments"

    def record_payment(
        self,
        loan_id: str,
        amount: Decimal,
        payment_date: Optional[DateLike] = None,
        payment_method: Any = PaymentMethod.CASH,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
        received_by: Optional[str] = None
    ) -> Payment:
        """
        Record a payment against a loan

        Args:
            loan_id: Loan being repaid
            amount: Cash received, must be positive
            payment_date: Effective date (defaults to now)
            payment_method: cash, bank_transfer, upi, cheque or other
            transaction_reference: External reference
            notes: Free text
            received_by: Collector name

        Returns:
            The stored Payment

        Raises:
            LoanNotFoundError: unknown loan
            LoanClosedError: loan already closed
            InvalidStateError: loan defaulted or written off
            InvalidAmountError: amount is not positive
            InvalidInputError: unknown payment method
        """
        amount = positive_money(amount, "Payment amount")
        payment_date = as_utc_datetime(payment_date or datetime.now(timezone.utc))
        payment_method = PaymentMethod.parse(payment_method or PaymentMethod.CASH)

        with self.loan_manager.lock(loan_id):
            loan = self.loan_manager.get_loan(loan_id)
            if loan.status == LoanStatus.CLOSED:
                raise LoanClosedError(loan.id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStateError(
                    f"Cannot add payment to {loan.status.value} loan {loan.id}"
                )

            allocation = allocate_payment(loan, amount, payment_date)
            payment_id = self._allocate_payment_id()

            with self.customer_manager.lock, self.storage.atomic():
                closed = apply_allocation(loan, allocation, payment_date)

                now = datetime.now(timezone.utc)
                payment = Payment(
                    id=payment_id,
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    customer_id=loan.customer_id,
                    amount=allocation.amount,
                    principal_paid=allocation.principal_paid,
                    interest_paid=allocation.interest_paid,
                    payment_date=payment_date,
                    outstanding_principal_after=loan.outstanding_principal,
                    outstanding_interest_after=allocation.outstanding_interest_after,
                    unapplied_amount=allocation.unapplied_amount,
                    payment_method=payment_method,
                    transaction_reference=transaction_reference,
                    notes=notes,
                    received_by=received_by
                )
                self._save_payment(payment)
                self.loan_manager.save_loan(loan)

                if closed:
                    self.customer_manager.adjust_active_loans(loan.customer_id, -1)
                self.customer_manager.add_repaid(loan.customer_id, allocation.amount)

        log_action(logger, "info", "Payment recorded", action="record_payment",
                   resource=f"payment:{payment.id}",
                   extra={
                       "loan_id": loan.id,
                       "amount": str(payment.amount),
                       "interest_paid": str(payment.interest_paid),
                       "principal_paid": str(payment.principal_paid),
                       "loan_closed": closed
                   })

        if allocation.unapplied_amount > ZERO:
            log_action(logger, "warning", "Payment exceeds loan payoff; excess not applied",
                       action="record_payment", resource=f"loan:{loan.id}",
                       extra={"payment_id": payment.id,
                              "unapplied_amount": str(allocation.unapplied_amount)})

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "loan_id": loan.id,
                "amount": payment.amount,
                "interest_paid": payment.interest_paid,
                "principal_paid": payment.principal_paid,
                "unapplied_amount": payment.unapplied_amount,
                "outstanding_principal_after": payment.outstanding_principal_after
            }
        )
        if closed:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CLOSED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"closed_date": loan.closed_date, "payment_id": payment.id}
            )

        return payment

    def _allocate_payment_id(self) -> str:
        generated_on = datetime.now(timezone.utc).date()
        day_key = payment_day_key(generated_on)
        for _ in range(self.id_retry_attempts):
            sequence = self.sequences.next_value(
                f"payment:{day_key}", seed=lambda: self._last_payment_number(day_key)
            )
            payment_id = generate_payment_id(sequence, generated_on)
            if not self.storage.exists(self.table_name, payment_id):
                return payment_id
            logger.warning("Payment id %s already taken, drawing a new sequence", payment_id)
        raise ConflictError("Could not allocate a unique payment id")

    def _last_payment_number(self, day_key: str) -> int:
        prefix = f"PAY-{day_key}-"
        numbers = [
            int(record['id'][len(prefix):])
            for record in self.storage.load_all(self.table_name)
            if record['id'].startswith(prefix) and record['id'][len(prefix):].isdigit()
        ]
        return max(numbers, default=0)

    def get_payment(self, payment_id: str) -> Payment:
        """Get payment by ID, raising PaymentNotFoundError if absent"""
        payment_dict = self.storage.load(self.table_name, payment_id)
        if not payment_dict:
            raise PaymentNotFoundError(payment_id)
        return self._payment_from_dict(payment_dict)

    def list_payments(
        self,
        loan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        status: Optional[Any] = None,
        page: int = 1,
        limit: int = 10
    ) -> Page:
        """List payments, most recent payment date first"""
        filters: Dict[str, Any] = {}
        if loan_id:
            filters['loan_id'] = loan_id
        if customer_id:
            filters['customer_id'] = customer_id
        if status:
            filters['status'] = PaymentStatus.parse(status).value

        payments = [self._payment_from_dict(data)
                    for data in self.storage.find(self.table_name, filters)]
        payments.sort(key=lambda p: p.payment_date, reverse=True)
        return paginate(payments, page, limit)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """All payments of one loan, most recent payment date first"""
        payments = [self._payment_from_dict(data)
                    for data in self.storage.find(self.table_name, {"loan_id": loan_id})]
        payments.sort(key=lambda p: p.payment_date, reverse=True)
        return payments

    def update_payment(
        self,
        payment_id: str,
        payment_method: Optional[Any] = None,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
        received_by: Optional[str] = None
    ) -> Payment:
        """Edit descriptive fields; allocation figures cannot change"""
        payment = self.get_payment(payment_id)

        changes: Dict[str, Any] = {}
        if payment_method is not None:
            payment.payment_method = PaymentMethod.parse(payment_method)
            changes['payment_method'] = payment.payment_method.value
        if transaction_reference is not None:
            payment.transaction_reference = transaction_reference
            changes['transaction_reference'] = transaction_reference
        if notes is not None:
            payment.notes = notes
            changes['notes'] = notes
        if received_by is not None:
            payment.received_by = received_by
            changes['received_by'] = received_by

        if changes:
            payment.updated_at = datetime.now(timezone.utc)
            self._save_payment(payment)
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_UPDATED,
                entity_type="payment",
                entity_id=payment.id,
                metadata=changes
            )

        return payment

    def delete_payment(self, payment_id: str) -> Payment:
        """
        Delete a payment and reverse its effect on the loan and customer.

        A loan the payment had closed is reopened and counted as active again
        on the customer. When the customer record no longer exists only the
        loan is reversed.

        Returns:
            The deleted payment
        """
        payment = self.get_payment(payment_id)
        reopened = False

        with self.loan_manager.lock(payment.loan_id), self.customer_manager.lock:
            with self.storage.atomic():
                payment = self.get_payment(payment_id)
                counted = payment.status == PaymentStatus.COMPLETED

                if counted and self.storage.exists(self.loan_manager.table_name, payment.loan_id):
                    loan = self.loan_manager.get_loan(payment.loan_id)
                    customer_exists = self.customer_manager.storage.exists(
                        self.customer_manager.table_name, loan.customer_id
                    )
                    reopened = reverse_allocation(loan, payment)

                    remaining = [p for p in self.get_loan_payments(loan.id)
                                 if p.id != payment.id and p.status == PaymentStatus.COMPLETED]
                    loan.last_payment_date = remaining[0].payment_date if remaining else None
                    self.loan_manager.save_loan(loan)

                    if customer_exists:
                        if reopened:
                            self.customer_manager.adjust_active_loans(loan.customer_id, 1)
                        self.customer_manager.add_repaid(loan.customer_id, -payment.amount)
                    else:
                        logger.warning("Customer %s of loan %s no longer exists; "
                                       "skipping customer totals", loan.customer_id, loan.id)

                self.storage.delete(self.table_name, payment.id)

        log_action(logger, "info", "Payment reversed", action="delete_payment",
                   resource=f"payment:{payment.id}",
                   extra={"loan_id": payment.loan_id, "amount": str(payment.amount),
                          "loan_reopened": reopened})

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_REVERSED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "loan_id": payment.loan_id,
                "amount": payment.amount,
                "interest_paid": payment.interest_paid,
                "principal_paid": payment.principal_paid
            }
        )
        if reopened:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REOPENED,
                entity_type="loan",
                entity_id=payment.loan_id,
                metadata={"reversed_payment_id": payment.id}
            )

        return payment

    def get_payment_stats(self, today: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts and amounts received; amounts cover completed payments only"""
        payments = [self._payment_from_dict(data)
                    for data in self.storage.load_all(self.table_name)]
        completed = [p for p in payments if p.status == PaymentStatus.COMPLETED]

        today = as_utc_datetime(today or datetime.now(timezone.utc)).date()
        todays = [p for p in completed if p.payment_date.date() == today]

        return {
            "total_payments": len(payments),
            "completed_payments": len(completed),
            "pending_payments": sum(1 for p in payments if p.status == PaymentStatus.PENDING),
            "total_amount_received": money(sum((p.amount for p in completed), ZERO)),
            "total_principal_received": money(sum((p.principal_paid for p in completed), ZERO)),
            "total_interest_received": money(sum((p.interest_paid for p in completed), ZERO)),
            "today_payments": len(todays),
            "today_amount": money(sum((p.amount for p in todays), ZERO)),
        }

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.table_name, payment.id, payment.to_dict())

    def _payment_from_dict(self, data: Dict) -> Payment:
        return Payment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            amount=Decimal(data['amount']),
            principal_paid=Decimal(data['principal_paid']),
            interest_paid=Decimal(data['interest_paid']),
            payment_date=datetime.fromisoformat(data['payment_date']),
            outstanding_principal_after=Decimal(data['outstanding_principal_after']),
            outstanding_interest_after=Decimal(data['outstanding_interest_after']),
            unapplied_amount=Decimal(data.get('unapplied_amount', '0.00')),
            payment_method=PaymentMethod(data.get('payment_method', PaymentMethod.CASH.value)),
            transaction_reference=data.get('transaction_reference'),
            notes=data.get('notes'),
            received_by=data.get('received_by'),
            status=PaymentStatus(data.get('status', PaymentStatus.COMPLETED.value))
        )
