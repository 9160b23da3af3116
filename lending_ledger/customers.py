"""
Customer Management Module

Manages borrower profiles and the running loan counters kept on each
customer. Counters only move through the loan lifecycle hooks
(increment_loan_count, adjust_active_loans, add_borrowed, add_repaid),
never through profile updates.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum
import threading
import re

from .storage import StorageInterface, StorageRecord, Page, paginate
from .audit import AuditTrail, AuditEventType
from .identifiers import SequenceAllocator, generate_customer_id, parse_customer_number
from .money import ZERO, money, non_negative_money
from .exceptions import (
    ConflictError, CustomerNotFoundError, DuplicateCustomerError,
    InvalidInputError, InvalidStateError
)
from .logging_config import get_logger, log_action

logger = get_logger("lending_ledger.customers")

PHONE_PATTERN = re.compile(r'^[6-9]\d{9}$')
PAN_PATTERN = re.compile(r'^[A-Z]{5}[0-9]{4}[A-Z]$')
AADHAR_PATTERN = re.compile(r'^\d{12}$')
EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


def validate_phone(phone: str) -> bool:
    """10-digit Indian mobile number starting with 6-9"""
    return bool(PHONE_PATTERN.match(phone or ""))


def validate_pan(pan: str) -> bool:
    return bool(PAN_PATTERN.match(pan or ""))


def validate_aadhar(aadhar: str) -> bool:
    return bool(AADHAR_PATTERN.match(aadhar or ""))


class CustomerStatus(Enum):
    """Customer account status"""
    ACTIVE = "active"       # may take new loans
    INACTIVE = "inactive"
    BLOCKED = "blocked"


@dataclass
class Address:
    """Postal address; every part is optional"""
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Address']:
        if not data:
            return None
        return cls(
            street=data.get('street'),
            city=data.get('city'),
            state=data.get('state'),
            pincode=data.get('pincode')
        )


@dataclass
class Customer(StorageRecord):
    """
    Borrower profile with running loan counters.

    The record id is the formatted customer id (CUS-00001).
    """
    name: str
    phone: str
    email: Optional[str] = None
    address: Optional[Address] = None
    aadhar_number: Optional[str] = None
    pan_number: Optional[str] = None
    status: CustomerStatus = CustomerStatus.ACTIVE
    total_loans: int = 0
    active_loans: int = 0
    total_amount_borrowed: Decimal = ZERO
    total_amount_repaid: Decimal = ZERO

    def __post_init__(self):
        self.name = (self.name or "").strip()
        self.phone = (self.phone or "").strip()
        if not self.name:
            raise InvalidInputError("Customer name is required")
        if not self.phone:
            raise InvalidInputError("Phone number is required")
        if not validate_phone(self.phone):
            raise InvalidInputError(f"Invalid phone number {self.phone}")

        if self.email:
            self.email = self.email.strip().lower()
            if not EMAIL_PATTERN.match(self.email):
                raise InvalidInputError("Invalid email format")

        if self.pan_number:
            self.pan_number = self.pan_number.strip().upper()
            if not validate_pan(self.pan_number):
                raise InvalidInputError(f"Invalid PAN number {self.pan_number}")

        if self.aadhar_number:
            self.aadhar_number = self.aadhar_number.strip()
            if not validate_aadhar(self.aadhar_number):
                raise InvalidInputError("Aadhar number must be 12 digits")

        if self.active_loans < 0:
            self.active_loans = 0

    @property
    def customer_id(self) -> str:
        return self.id

    @property
    def is_active(self) -> bool:
        return self.status == CustomerStatus.ACTIVE


class CustomerManager:
    """
    Manages customer lifecycle and the loan counter hooks.

    Counter hooks are read-modify-write on the stored record and run under
    the manager's lock. Callers that update a loan and its customer together
    take this lock before opening the storage transaction.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        sequences: Optional[SequenceAllocator] = None,
        id_retry_attempts: int = 3,
        loans_table: str = "loans"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.sequences = sequences or SequenceAllocator(storage)
        self.id_retry_attempts = max(1, id_retry_attempts)
        self.table_name = "customers"
        self.loans_table = loans_table
        self.lock = threading.RLock()

    def create_customer(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None,
        address: Optional[Address] = None,
        aadhar_number: Optional[str] = None,
        pan_number: Optional[str] = None
    ) -> Customer:
        """
        Create a new customer

        Args:
            name: Full name
            phone: 10-digit mobile number, unique across customers
            email: Optional email address
            address: Optional postal address
            aadhar_number: Optional 12-digit Aadhar number
            pan_number: Optional PAN

        Returns:
            Created Customer object

        Raises:
            DuplicateCustomerError: phone already registered
            InvalidInputError: a field fails validation
        """
        with self.lock:
            phone = (phone or "").strip()
            if phone and self.get_customer_by_phone(phone):
                raise DuplicateCustomerError(phone)

            now = datetime.now(timezone.utc)
            customer = Customer(
                id="",
                created_at=now,
                updated_at=now,
                name=name,
                phone=phone,
                email=email,
                address=address,
                aadhar_number=aadhar_number,
                pan_number=pan_number
            )

            customer.id = self._allocate_customer_id()
            self._save_customer(customer)

        log_action(logger, "info", "Customer created", action="create_customer",
                   resource=f"customer:{customer.id}")

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_CREATED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={"name": customer.name, "phone": customer.phone}
        )

        return customer

    def _allocate_customer_id(self) -> str:
        for _ in range(self.id_retry_attempts):
            sequence = self.sequences.next_value("customer", seed=self._last_customer_number)
            customer_id = generate_customer_id(sequence)
            if not self.storage.exists(self.table_name, customer_id):
                return customer_id
            logger.warning("Customer id %s already taken, drawing a new sequence", customer_id)
        raise ConflictError("Could not allocate a unique customer id")

    def _last_customer_number(self) -> int:
        latest = self.storage.find_latest(self.table_name)
        return parse_customer_number(latest['id']) if latest else 0

    def get_customer(self, customer_id: str) -> Customer:
        """Get customer by ID, raising CustomerNotFoundError if absent"""
        customer_dict = self.storage.load(self.table_name, customer_id)
        if not customer_dict:
            raise CustomerNotFoundError(customer_id)
        return self._customer_from_dict(customer_dict)

    def get_customer_by_phone(self, phone: str) -> Optional[Customer]:
        customers = self.storage.find(self.table_name, {"phone": phone})
        if customers:
            return self._customer_from_dict(customers[0])
        return None

    def list_customers(
        self,
        status: Optional[CustomerStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Page:
        """
        List customers newest first.

        Args:
            status: Only customers in this status
            search: Case-insensitive substring of name, phone or customer id
            page: 1-based page number
            limit: Page size
        """
        filters = {"status": CustomerStatus(status).value} if status else {}
        customers = [self._customer_from_dict(data)
                     for data in self.storage.find(self.table_name, filters)]

        if search:
            needle = search.lower()
            customers = [
                c for c in customers
                if needle in c.name.lower()
                or needle in c.phone.lower()
                or needle in c.id.lower()
            ]

        customers.sort(key=lambda c: c.created_at, reverse=True)
        return paginate(customers, page, limit)

    def update_customer(
        self,
        customer_id: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        address: Optional[Address] = None,
        aadhar_number: Optional[str] = None,
        pan_number: Optional[str] = None,
        status: Optional[CustomerStatus] = None
    ) -> Customer:
        """Update profile fields; loan counters are not editable here"""
        with self.lock:
            customer = self.get_customer(customer_id)

            if phone is not None and phone.strip() != customer.phone:
                existing = self.get_customer_by_phone(phone.strip())
                if existing and existing.id != customer.id:
                    raise DuplicateCustomerError(phone.strip())

            old_data = {"name": customer.name, "phone": customer.phone,
                        "status": customer.status.value}

            data = self._customer_to_dict(customer)
            if name is not None:
                data['name'] = name
            if phone is not None:
                data['phone'] = phone
            if email is not None:
                data['email'] = email
            if address is not None:
                data['address'] = {
                    'street': address.street,
                    'city': address.city,
                    'state': address.state,
                    'pincode': address.pincode
                }
            if aadhar_number is not None:
                data['aadhar_number'] = aadhar_number
            if pan_number is not None:
                data['pan_number'] = pan_number
            if status is not None:
                data['status'] = CustomerStatus(status).value
            data['updated_at'] = datetime.now(timezone.utc).isoformat()

            # Round-trip through the dataclass so the new values are validated
            customer = self._customer_from_dict(data)
            self._save_customer(customer)

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_UPDATED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={
                "old_data": old_data,
                "new_data": {"name": customer.name, "phone": customer.phone,
                             "status": customer.status.value}
            }
        )

        return customer

    def delete_customer(self, customer_id: str) -> None:
        """
        Delete a customer.

        Raises:
            CustomerNotFoundError: unknown customer
            InvalidStateError: the customer still has active loans
        """
        with self.lock:
            customer = self.get_customer(customer_id)
            active = self.storage.count(self.loans_table,
                                        {"customer_id": customer.id, "status": "active"})
            if active > 0:
                raise InvalidStateError("Cannot delete customer with active loans")
            self.storage.delete(self.table_name, customer.id)

        log_action(logger, "info", "Customer deleted", action="delete_customer",
                   resource=f"customer:{customer.id}")

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_DELETED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={"name": customer.name, "phone": customer.phone}
        )

    def get_customer_stats(self) -> Dict[str, int]:
        customers = [self._customer_from_dict(data)
                     for data in self.storage.load_all(self.table_name)]
        return {
            "total_customers": len(customers),
            "active_customers": sum(1 for c in customers if c.status == CustomerStatus.ACTIVE),
            "inactive_customers": sum(1 for c in customers if c.status == CustomerStatus.INACTIVE),
            "blocked_customers": sum(1 for c in customers if c.status == CustomerStatus.BLOCKED),
            "customers_with_active_loans": sum(1 for c in customers if c.active_loans > 0),
        }

    # Loan lifecycle hooks

    def increment_loan_count(self, customer_id: str) -> Customer:
        """Count a newly created loan"""
        with self.lock:
            customer = self.get_customer(customer_id)
            customer.total_loans += 1
            return self._touch(customer)

    def adjust_active_loans(self, customer_id: str, delta: int) -> Customer:
        """Move the active loan count by delta, never below zero"""
        with self.lock:
            customer = self.get_customer(customer_id)
            customer.active_loans = max(0, customer.active_loans + delta)
            return self._touch(customer)

    def add_borrowed(self, customer_id: str, amount: Decimal) -> Customer:
        """Add disbursed principal to the customer's borrowed total"""
        with self.lock:
            customer = self.get_customer(customer_id)
            customer.total_amount_borrowed = money(
                customer.total_amount_borrowed + non_negative_money(amount, "Borrowed amount")
            )
            return self._touch(customer)

    def add_repaid(self, customer_id: str, amount: Decimal) -> Customer:
        """Add (or with a negative amount, remove) repaid cash, floored at zero"""
        with self.lock:
            customer = self.get_customer(customer_id)
            customer.total_amount_repaid = max(
                ZERO, money(customer.total_amount_repaid + money(amount))
            )
            return self._touch(customer)

    def _touch(self, customer: Customer) -> Customer:
        customer.updated_at = datetime.now(timezone.utc)
        self._save_customer(customer)
        return customer

    def _save_customer(self, customer: Customer) -> None:
        self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))

    def _customer_to_dict(self, customer: Customer) -> Dict:
        """Convert Customer to dictionary for storage"""
        result = customer.to_dict()
        result["status"] = customer.status.value
        return result

    def _customer_from_dict(self, data: Dict) -> Customer:
        """Convert dictionary to Customer"""
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            phone=data['phone'],
            email=data.get('email'),
            address=Address.from_dict(data.get('address')),
            aadhar_number=data.get('aadhar_number'),
            pan_number=data.get('pan_number'),
            status=CustomerStatus(data.get('status', CustomerStatus.ACTIVE.value)),
            total_loans=int(data.get('total_loans', 0)),
            active_loans=int(data.get('active_loans', 0)),
            total_amount_borrowed=Decimal(data.get('total_amount_borrowed', '0.00')),
            total_amount_repaid=Decimal(data.get('total_amount_repaid', '0.00'))
        )

