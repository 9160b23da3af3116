"""
Identifier Module

Human-readable, fixed-width identifiers for customers, loans and payments,
and an atomic sequence allocator that hands out the numbers encoded in them.

    Customer:  CUS-00042
    Loan:      00-003-007-02-D   (sequence - customer no - customer loan no - type)
    Payment:   PAY-20240115-00001 (generation date - day-local sequence)
"""

import threading
from datetime import date, datetime, timezone
from typing import Callable, Optional, Union

from .interest import InterestType
from .storage import StorageInterface


def _loan_type_code(loan_type: Union[str, InterestType]) -> str:
    if isinstance(loan_type, InterestType):
        return loan_type.type_code
    code = str(loan_type).strip().upper()
    if code in ("D", "M"):
        return code
    return InterestType.parse(loan_type).type_code


def generate_loan_id(
    sequence_number: int,
    customer_number: int,
    customer_loan_number: int,
    loan_type: Union[str, InterestType]
) -> str:
    """
    Format a loan identifier.

    >>> generate_loan_id(3, 7, 2, 'daily')
    '00-003-007-02-D'
    """
    return (
        f"00-{int(sequence_number):03d}-{int(customer_number):03d}"
        f"-{int(customer_loan_number):02d}-{_loan_type_code(loan_type)}"
    )


def generate_customer_id(sequence_number: int) -> str:
    """
    Format a customer identifier.

    >>> generate_customer_id(42)
    'CUS-00042'
    """
    return f"CUS-{int(sequence_number):05d}"


def payment_day_key(generated_on: Optional[date] = None) -> str:
    """YYYYMMDD for the generation day (today, UTC, by default)"""
    if generated_on is None:
        generated_on = datetime.now(timezone.utc).date()
    return generated_on.strftime("%Y%m%d")


def generate_payment_id(sequence_number: int, generated_on: Optional[date] = None) -> str:
    """
    Format a payment identifier from the day the id is generated, which is
    not necessarily the payment's effective date.

    >>> generate_payment_id(7, date(2024, 1, 15))
    'PAY-20240115-00007'
    """
    return f"PAY-{payment_day_key(generated_on)}-{int(sequence_number):05d}"


def parse_customer_number(customer_id: str) -> int:
    """Numeric part of a customer id ('CUS-00042' -> 42), 1 if unparseable"""
    parts = str(customer_id).split("-")
    if len(parts) < 2:
        return 1
    try:
        return int(parts[1]) or 1
    except ValueError:
        return 1


class SequenceAllocator:
    """
    Named monotonically increasing counters persisted in storage.

    Replaces "find the last record and add one": read-increment-write happens
    under a lock inside a storage transaction, so two callers never receive
    the same value from the same allocator.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "sequences"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def next_value(self, name: str, seed: Optional[Callable[[], int]] = None) -> int:
        """
        Allocate the next value of a counter.

        Args:
            name: Counter name, e.g. "loan" or "payment:20240115"
            seed: Called once when the counter does not exist yet; returns the
                highest value already in use so numbering continues from it

        Returns:
            The newly allocated value (first value is seed + 1, or 1)
        """
        with self._lock:
            with self.storage.atomic():
                now = datetime.now(timezone.utc).isoformat()
                record = self.storage.load(self.table_name, name)
                if record is None:
                    current = int(seed()) if seed else 0
                    created_at = now
                else:
                    current = int(record['value'])
                    created_at = record['created_at']

                value = current + 1
                self.storage.save(self.table_name, name, {
                    'id': name,
                    'value': value,
                    'created_at': created_at,
                    'updated_at': now
                })
                return value

    def current_value(self, name: str) -> int:
        """Last allocated value of a counter (0 if never used)"""
        record = self.storage.load(self.table_name, name)
        return int(record['value']) if record else 0
