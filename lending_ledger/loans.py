"""
Loan Ledger Module

Loan entity with its mutable financial state, the status state machine
(active -> closed | defaulted | written-off) and the LoanManager that creates,
lists, closes and reports on loans.

Interest is simple interest computed by the interest engine against the
outstanding principal at calculation time. Principal repaid is tracked
separately from gross cash received so interest payments never reduce the
principal balance.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .audit import AuditEventType, AuditTrail
from .customers import CustomerManager
from .exceptions import (
    ConflictError, InvalidInputError, InvalidStateError,
    InvalidTransitionError, LoanNotFoundError
)
from .identifiers import SequenceAllocator, generate_loan_id, parse_customer_number
from .interest import (
    DateLike, InterestType, as_utc_datetime, calculate_accrued_interest, days_between
)
from .logging_config import get_logger, log_action
from .money import ZERO, money, non_negative_money, to_decimal
from .storage import Page, StorageInterface, StorageRecord, paginate

logger = get_logger("lending_ledger.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"             # accepting payments
    CLOSED = "closed"             # fully repaid or explicitly closed
    DEFAULTED = "defaulted"       # set externally
    WRITTEN_OFF = "written-off"   # set externally, outstanding principal booked as loss

    @classmethod
    def parse(cls, value: Any) -> 'LoanStatus':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Invalid loan status {value!r}")


@dataclass
class LoanTerms:
    """Contract terms, fixed at creation"""
    principal_amount: Decimal
    interest_type: InterestType
    interest_rate: Decimal              # percent per day or per 30-day month
    disbursement_date: datetime
    due_date: datetime

    def __post_init__(self):
        self.principal_amount = non_negative_money(self.principal_amount, "Principal amount")
        self.interest_type = InterestType.parse(self.interest_type)

        self.interest_rate = to_decimal(self.interest_rate)
        if self.interest_rate < 0:
            raise InvalidInputError("Interest rate cannot be negative")

        if self.disbursement_date is None:
            raise InvalidInputError("Disbursement date is required")
        if self.due_date is None:
            raise InvalidInputError("Due date is required")
        self.disbursement_date = as_utc_datetime(self.disbursement_date)
        self.due_date = as_utc_datetime(self.due_date)
        if self.due_date <= self.disbursement_date:
            raise InvalidInputError("Due date must be after the disbursement date")


@dataclass
class Loan(StorageRecord):
    """
    A loan and its ledger state.

    The record id is the formatted loan id (00-001-001-01-D).
    """
    sequence_number: int
    customer_id: str
    customer_loan_number: int
    terms: LoanTerms
    status: LoanStatus = LoanStatus.ACTIVE

    outstanding_principal: Decimal = ZERO
    principal_paid: Decimal = ZERO          # running total of principal allocations
    total_amount_paid: Decimal = ZERO       # gross cash received
    total_interest_earned: Decimal = ZERO
    outstanding_interest: Decimal = ZERO    # may go negative after early payments
    total_payments: int = 0
    last_payment_date: Optional[datetime] = None
    profit_loss: Decimal = ZERO
    closed_date: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def loan_id(self) -> str:
        return self.id

    @property
    def loan_type_code(self) -> str:
        return self.terms.interest_type.type_code

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def total_outstanding(self) -> Decimal:
        return self.outstanding_principal + self.outstanding_interest

    def accrued_interest(self, as_of: Optional[DateLike] = None) -> Decimal:
        """Interest accrued on the current outstanding principal as of a date"""
        return calculate_accrued_interest(
            self.outstanding_principal,
            self.terms.interest_rate,
            self.terms.disbursement_date,
            self.terms.due_date,
            as_of or datetime.now(timezone.utc),
            self.terms.interest_type
        )

    def recompute_outstanding(self, as_of: Optional[DateLike] = None) -> None:
        """
        Re-derive outstanding balances and profit/loss.

        Principal comes from the principal-paid running total, never from
        gross cash, so interest payments are not double-counted.
        """
        self.outstanding_principal = max(
            ZERO, money(self.terms.principal_amount - self.principal_paid)
        )
        self.outstanding_interest = money(self.accrued_interest(as_of) - self.total_interest_earned)
        loss = self.outstanding_principal if self.status == LoanStatus.WRITTEN_OFF else ZERO
        self.profit_loss = money(self.total_interest_earned - loss)

    def close(self, closed_at: Optional[DateLike] = None) -> None:
        """
        Close the loan.

        Raises:
            InvalidTransitionError: loan is not active or principal is still
                outstanding; the loan is left untouched
        """
        if self.status == LoanStatus.CLOSED:
            raise InvalidTransitionError("Loan is already closed")
        if self.status != LoanStatus.ACTIVE:
            raise InvalidTransitionError(f"Cannot close a {self.status.value} loan")
        if self.outstanding_principal > ZERO:
            raise InvalidTransitionError("Cannot close loan with outstanding principal")

        self.status = LoanStatus.CLOSED
        self.closed_date = as_utc_datetime(closed_at or datetime.now(timezone.utc))

    def reopen(self) -> None:
        """Return a closed loan to active (payment reversal only)"""
        if self.status != LoanStatus.CLOSED:
            raise InvalidTransitionError(f"Cannot reopen a {self.status.value} loan")
        self.status = LoanStatus.ACTIVE
        self.closed_date = None

    def mark_defaulted(self) -> None:
        if self.status != LoanStatus.ACTIVE:
            raise InvalidTransitionError(f"Cannot default a {self.status.value} loan")
        self.status = LoanStatus.DEFAULTED

    def write_off(self, as_of: Optional[DateLike] = None) -> None:
        if self.status != LoanStatus.ACTIVE:
            raise InvalidTransitionError(f"Cannot write off a {self.status.value} loan")
        self.status = LoanStatus.WRITTEN_OFF
        self.recompute_outstanding(as_of)


class LoanManager:
    """
    Creates loans and drives their status transitions.

    Every read-modify-write of a loan happens under that loan's lock
    (see lock()) inside a storage transaction.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        customer_manager: CustomerManager,
        sequences: Optional[SequenceAllocator] = None,
        id_retry_attempts: int = 3
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.customer_manager = customer_manager
        self.sequences = sequences or SequenceAllocator(storage)
        self.id_retry_attempts = max(1, id_retry_attempts)
        self.table_name = "loans"

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock(self, loan_id: str):
        """Serialize work on a single loan; different loans do not block each other"""
        with self._locks_guard:
            loan_lock = self._locks.setdefault(loan_id, threading.RLock())
        with loan_lock:
            yield

    def create_loan(
        self,
        customer_id: str,
        principal_amount: Decimal,
        interest_type: Any,
        interest_rate: Decimal,
        disbursement_date: DateLike,
        due_date: DateLike,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Create a loan for an active customer

        Args:
            customer_id: Borrower (CUS-xxxxx)
            principal_amount: Amount disbursed
            interest_type: "daily" or "monthly"
            interest_rate: Percent per period
            disbursement_date: Start of accrual
            due_date: Accrual stops here
            notes: Free text

        Returns:
            Created Loan, with outstanding principal equal to the principal
        """
        terms = LoanTerms(
            principal_amount=principal_amount,
            interest_type=interest_type,
            interest_rate=interest_rate,
            disbursement_date=disbursement_date,
            due_date=due_date
        )

        with self.customer_manager.lock:
            customer = self.customer_manager.get_customer(customer_id)
            if not customer.is_active:
                raise InvalidStateError(
                    f"Customer {customer.id} is {customer.status.value} and cannot take new loans"
                )

            sequence_number, customer_loan_number, loan_id = self._allocate_loan_id(
                customer.id, terms.interest_type
            )
            loan = self._open_loan(loan_id, sequence_number, customer.id,
                                   customer_loan_number, terms, notes)

        log_action(logger, "info", "Loan created", action="create_loan",
                   resource=f"loan:{loan.id}",
                   extra={"customer_id": customer.id,
                          "principal_amount": str(terms.principal_amount),
                          "interest_type": terms.interest_type.value})

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "customer_id": customer.id,
                "principal_amount": terms.principal_amount,
                "interest_type": terms.interest_type.value,
                "interest_rate": terms.interest_rate,
                "disbursement_date": terms.disbursement_date,
                "due_date": terms.due_date
            }
        )

        return loan

    def _open_loan(
        self,
        loan_id: str,
        sequence_number: int,
        customer_id: str,
        customer_loan_number: int,
        terms: LoanTerms,
        notes: Optional[str]
    ) -> Loan:
        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            loan = Loan(
                id=loan_id,
                created_at=now,
                updated_at=now,
                sequence_number=sequence_number,
                customer_id=customer_id,
                customer_loan_number=customer_loan_number,
                terms=terms,
                outstanding_principal=terms.principal_amount,
                notes=notes
            )
            self._save_loan(loan)

            self.customer_manager.increment_loan_count(customer_id)
            self.customer_manager.adjust_active_loans(customer_id, 1)
            self.customer_manager.add_borrowed(customer_id, terms.principal_amount)

        return loan

    def _allocate_loan_id(self, customer_id: str, interest_type: InterestType) -> Tuple[int, int, str]:
        customer_number = parse_customer_number(customer_id)
        customer_loan_number = self.sequences.next_value(
            f"loan:{customer_id}",
            seed=lambda: self.storage.count(self.table_name, {"customer_id": customer_id})
        )
        for _ in range(self.id_retry_attempts):
            sequence_number = self.sequences.next_value("loan", seed=self._last_sequence_number)
            loan_id = generate_loan_id(sequence_number, customer_number,
                                       customer_loan_number, interest_type)
            if not self.storage.exists(self.table_name, loan_id):
                return sequence_number, customer_loan_number, loan_id
            logger.warning("Loan id %s already taken, drawing a new sequence", loan_id)
        raise ConflictError("Could not allocate a unique loan id")

    def _last_sequence_number(self) -> int:
        latest = self.storage.find_latest(self.table_name)
        return int(latest['sequence_number']) if latest else 0

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID, raising LoanNotFoundError if absent"""
        loan_dict = self.storage.load(self.table_name, loan_id)
        if not loan_dict:
            raise LoanNotFoundError(loan_id)
        return self._loan_from_dict(loan_dict)

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        """Loans of one customer, newest first"""
        loans = [self._loan_from_dict(data)
                 for data in self.storage.find(self.table_name, {"customer_id": customer_id})]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def list_loans(
        self,
        status: Optional[Any] = None,
        interest_type: Optional[Any] = None,
        customer_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Page:
        """List loans newest first, optionally filtered"""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = LoanStatus.parse(status).value
        if interest_type:
            filters['interest_type'] = InterestType.parse(interest_type).value
        if customer_id:
            filters['customer_id'] = customer_id

        loans = [self._loan_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return paginate(loans, page, limit)

    def update_loan(
        self,
        loan_id: str,
        notes: Optional[str] = None,
        status: Optional[Any] = None
    ) -> Loan:
        """
        Update notes and/or move the loan through an external transition.

        Financial fields and terms cannot be edited. A status change goes
        through the same transition rules as the dedicated operations, and is
        stored together with the notes or not at all.
        """
        target = LoanStatus.parse(status) if status else None
        transition = target is not None and target != LoanStatus.ACTIVE

        with self.lock(loan_id), self.customer_manager.lock:
            with self.storage.atomic():
                loan = self.get_loan(loan_id)
                if target == LoanStatus.ACTIVE and not loan.is_active:
                    raise InvalidTransitionError(
                        f"Cannot move a {loan.status.value} loan back to active"
                    )

                if transition:
                    self._apply_transition(loan, target)
                if notes is not None:
                    loan.notes = notes
                if transition or notes is not None:
                    self.save_loan(loan)
                if transition:
                    self.customer_manager.adjust_active_loans(loan.customer_id, -1)

        if transition:
            self._record_transition(loan, target)
        if notes is not None:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_UPDATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"notes": notes}
            )

        return loan

    def close_loan(self, loan_id: str, closed_at: Optional[DateLike] = None) -> Loan:
        """
        Explicitly close a loan with no principal outstanding.

        Raises:
            LoanNotFoundError: unknown loan
            InvalidTransitionError: already closed, not active, or principal
                still outstanding
        """
        return self._transition(loan_id, LoanStatus.CLOSED, closed_at)

    def mark_defaulted(self, loan_id: str) -> Loan:
        """Move an active loan to defaulted"""
        return self._transition(loan_id, LoanStatus.DEFAULTED)

    def write_off_loan(self, loan_id: str) -> Loan:
        """Write off an active loan; outstanding principal becomes a loss"""
        return self._transition(loan_id, LoanStatus.WRITTEN_OFF)

    def _transition(self, loan_id: str, target: LoanStatus,
                    closed_at: Optional[DateLike] = None) -> Loan:
        with self.lock(loan_id), self.customer_manager.lock:
            with self.storage.atomic():
                loan = self.get_loan(loan_id)
                self._apply_transition(loan, target, closed_at)
                self.save_loan(loan)
                self.customer_manager.adjust_active_loans(loan.customer_id, -1)

        self._record_transition(loan, target)
        return loan

    @staticmethod
    def _apply_transition(loan: Loan, target: LoanStatus,
                          closed_at: Optional[DateLike] = None) -> None:
        if target == LoanStatus.CLOSED:
            loan.close(closed_at)
        elif target == LoanStatus.DEFAULTED:
            loan.mark_defaulted()
        else:
            loan.write_off()

    def _record_transition(self, loan: Loan, target: LoanStatus) -> None:
        if target == LoanStatus.CLOSED:
            log_action(logger, "info", "Loan closed", action="close_loan",
                       resource=f"loan:{loan.id}")
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CLOSED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"closed_date": loan.closed_date, "reason": "explicit"}
            )
            return

        if target == LoanStatus.DEFAULTED:
            event_type = AuditEventType.LOAN_DEFAULTED
        else:
            event_type = AuditEventType.LOAN_WRITTEN_OFF

        log_action(logger, "warning", f"Loan {target.value}", action=event_type.value,
                   resource=f"loan:{loan.id}",
                   extra={"outstanding_principal": str(loan.outstanding_principal)})

        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "outstanding_principal": loan.outstanding_principal,
                "profit_loss": loan.profit_loss
            }
        )

    def calculate_loan_details(self, loan_id: str, as_of: Optional[DateLike] = None) -> Dict[str, Any]:
        """Interest and balances of a loan as of a date, without changing it"""
        loan = self.get_loan(loan_id)
        calculation_date = as_utc_datetime(as_of or datetime.now(timezone.utc))
        interest = loan.accrued_interest(calculation_date)

        return {
            "loan_id": loan.id,
            "principal_amount": loan.terms.principal_amount,
            "outstanding_principal": loan.outstanding_principal,
            "interest_rate": loan.terms.interest_rate,
            "interest_type": loan.terms.interest_type.value,
            "disbursement_date": loan.terms.disbursement_date,
            "calculation_date": calculation_date,
            "days_since_disbursement": days_between(loan.terms.disbursement_date, calculation_date),
            "calculated_interest": interest,
            "total_outstanding": loan.outstanding_principal + interest,
            "total_paid": loan.total_amount_paid,
            "total_interest_earned": loan.total_interest_earned,
        }

    def get_loan_stats(self, as_of: Optional[DateLike] = None) -> Dict[str, Any]:
        """Portfolio totals across all loans"""
        loans = [self._loan_from_dict(data) for data in self.storage.load_all(self.table_name)]
        as_of = as_of or datetime.now(timezone.utc)

        by_status = {status: 0 for status in LoanStatus}
        principal_disbursed = ZERO
        outstanding_principal = ZERO
        interest_earned = ZERO
        outstanding_interest = ZERO
        profit = ZERO
        loss = ZERO
        daily_active = 0
        monthly_active = 0

        for loan in loans:
            by_status[loan.status] += 1
            principal_disbursed += loan.terms.principal_amount
            outstanding_principal += loan.outstanding_principal
            interest_earned += loan.total_interest_earned

            if loan.is_active:
                outstanding_interest += max(
                    ZERO, loan.accrued_interest(as_of) - loan.total_interest_earned
                )
                if loan.terms.interest_type == InterestType.DAILY:
                    daily_active += 1
                else:
                    monthly_active += 1

            if loan.profit_loss >= ZERO:
                profit += loan.profit_loss
            else:
                loss += abs(loan.profit_loss)

        return {
            "total_loans": len(loans),
            "active_loans": by_status[LoanStatus.ACTIVE],
            "closed_loans": by_status[LoanStatus.CLOSED],
            "defaulted_loans": by_status[LoanStatus.DEFAULTED],
            "written_off_loans": by_status[LoanStatus.WRITTEN_OFF],
            "daily_loans": daily_active,
            "monthly_loans": monthly_active,
            "total_principal_disbursed": money(principal_disbursed),
            "total_outstanding_principal": money(outstanding_principal),
            "total_interest_earned": money(interest_earned),
            "total_outstanding_interest": money(outstanding_interest),
            "total_profit": money(profit),
            "total_loss": money(loss),
            "net_profit_loss": money(profit - loss),
        }

    def save_loan(self, loan: Loan) -> None:
        """Persist a loan after a state change"""
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.table_name, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Flatten Loan (terms included) into a storage dictionary"""
        result = loan.to_dict()
        terms = result.pop('terms')
        result.update(terms)
        result['loan_type_code'] = loan.loan_type_code
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        def get_datetime(key: str) -> Optional[datetime]:
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        terms = LoanTerms(
            principal_amount=Decimal(data['principal_amount']),
            interest_type=InterestType(data['interest_type']),
            interest_rate=Decimal(data['interest_rate']),
            disbursement_date=get_datetime('disbursement_date'),
            due_date=get_datetime('due_date')
        )

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            sequence_number=int(data['sequence_number']),
            customer_id=data['customer_id'],
            customer_loan_number=int(data['customer_loan_number']),
            terms=terms,
            status=LoanStatus(data['status']),
            outstanding_principal=Decimal(data['outstanding_principal']),
            principal_paid=Decimal(data.get('principal_paid', '0.00')),
            total_amount_paid=Decimal(data['total_amount_paid']),
            total_interest_earned=Decimal(data['total_interest_earned']),
            outstanding_interest=Decimal(data['outstanding_interest']),
            total_payments=int(data.get('total_payments', 0)),
            last_payment_date=get_datetime('last_payment_date'),
            profit_loss=Decimal(data['profit_loss']),
            closed_date=get_datetime('closed_date'),
            notes=data.get('notes')
        )
