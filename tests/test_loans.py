"""
Test suite for the loan ledger

Tests loan terms validation, loan id numbering, the status state machine
(active -> closed | defaulted | written-off), outstanding balance
recomputation and portfolio statistics.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from lending_ledger.storage import InMemoryStorage, SQLiteStorage
from lending_ledger.audit import AuditTrail, AuditEventType
from lending_ledger.identifiers import SequenceAllocator
from lending_ledger.customers import CustomerManager, CustomerStatus
from lending_ledger.interest import InterestType
from lending_ledger.loans import Loan, LoanManager, LoanStatus, LoanTerms
from lending_ledger.exceptions import (
    CustomerNotFoundError, InvalidInputError, InvalidStateError,
    InvalidTransitionError, LoanNotFoundError
)


DISBURSED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_terms(**overrides):
    fields = dict(
        principal_amount=Decimal('1000'),
        interest_type="daily",
        interest_rate=Decimal('2'),
        disbursement_date=DISBURSED,
        due_date=DISBURSED + timedelta(days=30)
    )
    fields.update(overrides)
    return LoanTerms(**fields)


def make_loan(**overrides):
    now = datetime.now(timezone.utc)
    terms = overrides.pop("terms", None) or make_terms()
    fields = dict(
        id="00-001-001-01-D", created_at=now, updated_at=now,
        sequence_number=1, customer_id="CUS-00001", customer_loan_number=1,
        terms=terms, outstanding_principal=terms.principal_amount
    )
    fields.update(overrides)
    return Loan(**fields)


class TestLoanTerms:
    """Test loan terms validation"""

    def test_valid_terms(self):
        terms = make_terms(principal_amount="1000.005", interest_type="Monthly")
        assert terms.principal_amount == Decimal('1000.01')
        assert terms.interest_type == InterestType.MONTHLY
        assert terms.interest_rate == Decimal('2')

    def test_naive_dates_become_utc(self):
        terms = make_terms(disbursement_date=datetime(2024, 1, 1),
                           due_date=datetime(2024, 2, 1))
        assert terms.disbursement_date.tzinfo is not None
        assert terms.disbursement_date == DISBURSED

    @pytest.mark.parametrize("overrides", [
        {"principal_amount": Decimal('-1')},
        {"interest_rate": Decimal('-0.5')},
        {"interest_type": "weekly"},
        {"due_date": None},
        {"disbursement_date": None},
        {"due_date": DISBURSED},
        {"due_date": DISBURSED - timedelta(days=1)},
    ])
    def test_invalid_terms(self, overrides):
        with pytest.raises(InvalidInputError):
            make_terms(**overrides)


class TestLoanStateMachine:
    """Test status transitions on the loan entity"""

    def test_new_loan_is_active(self):
        loan = make_loan()
        assert loan.is_active
        assert loan.loan_type_code == "D"
        assert loan.total_outstanding == Decimal('1000.00')

    def test_close_with_principal_outstanding_leaves_loan_unmodified(self):
        loan = make_loan()
        before = loan.to_dict()

        with pytest.raises(InvalidTransitionError):
            loan.close()

        assert loan.to_dict() == before
        assert loan.status == LoanStatus.ACTIVE

    def test_close_paid_loan(self):
        loan = make_loan(outstanding_principal=Decimal('0.00'),
                         principal_paid=Decimal('1000.00'))
        closed_at = DISBURSED + timedelta(days=10)
        loan.close(closed_at)

        assert loan.status == LoanStatus.CLOSED
        assert loan.closed_date == closed_at

        with pytest.raises(InvalidTransitionError):
            loan.close()

    def test_invalid_state_error_family(self):
        loan = make_loan()
        with pytest.raises(InvalidStateError):
            loan.close()

    def test_reopen_only_from_closed(self):
        loan = make_loan()
        with pytest.raises(InvalidTransitionError):
            loan.reopen()

        loan.outstanding_principal = Decimal('0.00')
        loan.close()
        loan.reopen()
        assert loan.status == LoanStatus.ACTIVE
        assert loan.closed_date is None

    def test_default_and_write_off_only_from_active(self):
        loan = make_loan()
        loan.mark_defaulted()
        assert loan.status == LoanStatus.DEFAULTED

        with pytest.raises(InvalidTransitionError):
            loan.write_off()
        with pytest.raises(InvalidTransitionError):
            loan.close()
        with pytest.raises(InvalidTransitionError):
            loan.mark_defaulted()

    def test_write_off_books_loss(self):
        loan = make_loan(principal_paid=Decimal('400.00'),
                         outstanding_principal=Decimal('600.00'),
                         total_interest_earned=Decimal('150.00'))
        loan.write_off(as_of=DISBURSED + timedelta(days=5))

        assert loan.status == LoanStatus.WRITTEN_OFF
        assert loan.outstanding_principal == Decimal('600.00')
        assert loan.profit_loss == Decimal('-450.00')


class TestRecomputeOutstanding:
    """Test re-derivation of balances from running totals"""

    def test_principal_uses_principal_paid_not_gross_cash(self):
        loan = make_loan(principal_paid=Decimal('50.00'),
                         total_amount_paid=Decimal('250.00'),
                         total_interest_earned=Decimal('200.00'))
        loan.recompute_outstanding(DISBURSED + timedelta(days=10))

        assert loan.outstanding_principal == Decimal('950.00')
        # 950 * 2% * 10 days = 190 accrued against 200 already earned
        assert loan.outstanding_interest == Decimal('-10.00')
        assert loan.profit_loss == Decimal('200.00')

    def test_principal_never_negative(self):
        loan = make_loan(principal_paid=Decimal('1200.00'))
        loan.recompute_outstanding(DISBURSED)
        assert loan.outstanding_principal == Decimal('0.00')

    def test_recompute_is_idempotent(self):
        loan = make_loan(principal_paid=Decimal('100.00'))
        as_of = DISBURSED + timedelta(days=3)
        loan.recompute_outstanding(as_of)
        first = loan.to_dict()
        loan.recompute_outstanding(as_of)
        assert loan.to_dict() == first

    def test_accrued_interest_as_of(self):
        loan = make_loan()
        assert loan.accrued_interest(DISBURSED + timedelta(days=10)) == Decimal('200.00')
        # capped at the 30 day due date
        assert loan.accrued_interest(DISBURSED + timedelta(days=90)) == Decimal('600.00')


class TestLoanManager:
    """Test loan origination and lifecycle through the manager"""

    def setup_method(self):
        """Set up test fixtures"""
        self.build(InMemoryStorage())

    def build(self, storage):
        self.storage = storage
        self.audit = AuditTrail(self.storage)
        self.sequences = SequenceAllocator(self.storage)
        self.customers = CustomerManager(self.storage, self.audit, self.sequences)
        self.loans = LoanManager(self.storage, self.audit, self.customers, self.sequences)
        self.customer = self.customers.create_customer("Asha Verma", "9876543210")
        self.now = datetime.now(timezone.utc)

    def _create_loan(self, customer_id=None, **overrides):
        fields = dict(
            customer_id=customer_id or self.customer.id,
            principal_amount=Decimal('1000'),
            interest_type="daily",
            interest_rate=Decimal('2'),
            disbursement_date=self.now - timedelta(days=10),
            due_date=self.now + timedelta(days=20)
        )
        fields.update(overrides)
        return self.loans.create_loan(**fields)

    def test_create_loan(self):
        loan = self._create_loan(notes="First loan")

        assert loan.id == "00-001-001-01-D"
        assert loan.sequence_number == 1
        assert loan.customer_loan_number == 1
        assert loan.status == LoanStatus.ACTIVE
        assert loan.outstanding_principal == Decimal('1000.00')
        assert loan.notes == "First loan"

        stored = self.storage.load("loans", loan.id)
        assert stored["loan_type_code"] == "D"
        assert stored["principal_amount"] == "1000.00"

        customer = self.customers.get_customer(self.customer.id)
        assert customer.total_loans == 1
        assert customer.active_loans == 1
        assert customer.total_amount_borrowed == Decimal('1000.00')

        events = self.audit.get_events_for_entity("loan", loan.id)
        assert events[0].event_type == AuditEventType.LOAN_CREATED

    def test_loan_numbering(self):
        ravi = self.customers.create_customer("Ravi Kumar", "9876543211")

        first = self._create_loan()
        second = self._create_loan(ravi.id, interest_type="monthly")
        third = self._create_loan()

        assert first.id == "00-001-001-01-D"
        assert second.id == "00-002-002-01-M"
        assert third.id == "00-003-001-02-D"
        assert len({first.sequence_number, second.sequence_number, third.sequence_number}) == 3

    def test_numbering_continues_from_existing_loans(self):
        self._create_loan()
        self._create_loan()

        self.storage.clear_table("sequences")
        loan = self._create_loan()
        assert loan.sequence_number == 3
        assert loan.customer_loan_number == 3

    def test_create_loan_requires_existing_active_customer(self):
        with pytest.raises(CustomerNotFoundError):
            self._create_loan("CUS-09999")

        self.customers.update_customer(self.customer.id, status=CustomerStatus.BLOCKED)
        with pytest.raises(InvalidStateError):
            self._create_loan()
        assert self.storage.count("loans") == 0

    def test_create_loan_rejects_bad_terms(self):
        with pytest.raises(InvalidInputError):
            self._create_loan(principal_amount=Decimal('-5'))
        with pytest.raises(InvalidInputError):
            self._create_loan(due_date=self.now - timedelta(days=20))

        customer = self.customers.get_customer(self.customer.id)
        assert customer.total_loans == 0

    def test_get_loan_round_trip(self):
        loan = self._create_loan(interest_type="monthly", interest_rate=Decimal('3.5'))
        loaded = self.loans.get_loan(loan.id)

        assert loaded.terms.interest_type == InterestType.MONTHLY
        assert loaded.terms.interest_rate == Decimal('3.5')
        assert loaded.terms.disbursement_date == loan.terms.disbursement_date
        assert loaded.last_payment_date is None

        with pytest.raises(LoanNotFoundError):
            self.loans.get_loan("00-999-001-01-D")

    def test_list_and_filter_loans(self):
        ravi = self.customers.create_customer("Ravi Kumar", "9876543211")
        self._create_loan()
        monthly = self._create_loan(ravi.id, interest_type="monthly")
        defaulted = self._create_loan()
        self.loans.mark_defaulted(defaulted.id)

        assert self.loans.list_loans().total == 3
        assert [l.id for l in self.loans.list_loans(interest_type="monthly").items] == [monthly.id]
        assert [l.id for l in self.loans.list_loans(status="defaulted").items] == [defaulted.id]
        assert self.loans.list_loans(customer_id=ravi.id).total == 1
        assert len(self.loans.get_customer_loans(self.customer.id)) == 2

    def test_close_loan_with_principal_outstanding(self):
        loan = self._create_loan()

        with pytest.raises(InvalidTransitionError):
            self.loans.close_loan(loan.id)

        stored = self.loans.get_loan(loan.id)
        assert stored.status == LoanStatus.ACTIVE
        assert self.customers.get_customer(self.customer.id).active_loans == 1

    def test_close_zero_principal_loan(self):
        loan = self._create_loan(principal_amount=Decimal('0'))
        closed = self.loans.close_loan(loan.id)

        assert closed.status == LoanStatus.CLOSED
        assert closed.closed_date is not None
        assert self.customers.get_customer(self.customer.id).active_loans == 0

        with pytest.raises(InvalidTransitionError):
            self.loans.close_loan(loan.id)

    def test_mark_defaulted(self):
        loan = self._create_loan()
        defaulted = self.loans.mark_defaulted(loan.id)

        assert defaulted.status == LoanStatus.DEFAULTED
        assert self.customers.get_customer(self.customer.id).active_loans == 0
        assert self.audit.get_events_by_type(AuditEventType.LOAN_DEFAULTED)[0].entity_id == loan.id

        with pytest.raises(InvalidTransitionError):
            self.loans.write_off_loan(loan.id)

    def test_write_off_loan(self):
        loan = self._create_loan()
        written_off = self.loans.write_off_loan(loan.id)

        assert written_off.status == LoanStatus.WRITTEN_OFF
        assert written_off.profit_loss == Decimal('-1000.00')
        assert self.customers.get_customer(self.customer.id).active_loans == 0

    def test_update_loan(self):
        loan = self._create_loan()

        updated = self.loans.update_loan(loan.id, notes="Called borrower")
        assert updated.notes == "Called borrower"
        assert self.loans.get_loan(loan.id).notes == "Called borrower"

        # staying active is allowed
        self.loans.update_loan(loan.id, status="active")

        defaulted = self.loans.update_loan(loan.id, status="defaulted", notes="No contact")
        assert defaulted.status == LoanStatus.DEFAULTED
        assert defaulted.notes == "No contact"

        with pytest.raises(InvalidTransitionError):
            self.loans.update_loan(loan.id, status="active")

    def test_update_loan_rejects_unknown_status(self):
        loan = self._create_loan()
        with pytest.raises(InvalidInputError):
            self.loans.update_loan(loan.id, status="paused", notes="Paused")

        assert self.loans.get_loan(loan.id).notes is None
        with pytest.raises(InvalidInputError):
            self.loans.list_loans(status="paused")

    def test_update_loan_rejected_transition_keeps_notes(self):
        loan = self._create_loan()
        with pytest.raises(InvalidTransitionError):
            self.loans.update_loan(loan.id, status="closed", notes="Settled")

        unchanged = self.loans.get_loan(loan.id)
        assert unchanged.status == LoanStatus.ACTIVE
        assert unchanged.notes is None

    def test_update_loan_status_and_notes_commit_together(self):
        self.build(SQLiteStorage(":memory:"))
        loan = self._create_loan()

        def fail(customer_id, delta):
            raise RuntimeError("customer store unavailable")

        self.customers.adjust_active_loans = fail
        with pytest.raises(RuntimeError):
            self.loans.update_loan(loan.id, status="defaulted", notes="No contact")

        unchanged = self.loans.get_loan(loan.id)
        assert unchanged.status == LoanStatus.ACTIVE
        assert unchanged.notes is None
        assert self.audit.get_events_by_type(AuditEventType.LOAN_DEFAULTED) == []
        assert self.audit.get_events_by_type(AuditEventType.LOAN_UPDATED) == []

    def test_calculate_loan_details(self):
        loan = self._create_loan()
        details = self.loans.calculate_loan_details(loan.id, as_of=self.now)

        assert details["days_since_disbursement"] == 10
        assert details["calculated_interest"] == Decimal('200.00')
        assert details["total_outstanding"] == Decimal('1200.00')
        assert details["interest_type"] == "daily"

        # read only
        assert self.loans.get_loan(loan.id).outstanding_interest == Decimal('0.00')

    def test_loan_stats(self):
        ravi = self.customers.create_customer("Ravi Kumar", "9876543211")
        self._create_loan()
        self._create_loan(ravi.id, interest_type="monthly", interest_rate=Decimal('3'),
                          disbursement_date=self.now - timedelta(days=30))
        written_off = self._create_loan(principal_amount=Decimal('500'))
        self.loans.write_off_loan(written_off.id)

        stats = self.loans.get_loan_stats(as_of=self.now)

        assert stats["total_loans"] == 3
        assert stats["active_loans"] == 2
        assert stats["written_off_loans"] == 1
        assert stats["closed_loans"] == 0
        assert stats["daily_loans"] == 1
        assert stats["monthly_loans"] == 1
        assert stats["total_principal_disbursed"] == Decimal('2500.00')
        assert stats["total_outstanding_principal"] == Decimal('2500.00')
        # 200 on the daily loan, 30 on the monthly loan
        assert stats["total_outstanding_interest"] == Decimal('230.00')
        assert stats["total_loss"] == Decimal('500.00')
        assert stats["net_profit_loss"] == Decimal('-500.00')
