"""
Exception Hierarchy Module

Typed failures raised by the lending core. The request layer maps each
family to an HTTP status; nothing here knows about HTTP.
"""


class LedgerError(Exception):
    """Base exception for all lending ledger errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LedgerError):
    """Raised when a referenced customer, loan or payment does not exist"""


class CustomerNotFoundError(NotFoundError):
    """Raised when a customer identifier cannot be resolved"""

    def __init__(self, customer_id: str):
        super().__init__(f"Customer {customer_id} not found")
        self.customer_id = customer_id


class LoanNotFoundError(NotFoundError):
    """Raised when a loan identifier cannot be resolved"""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class PaymentNotFoundError(NotFoundError):
    """Raised when a payment identifier cannot be resolved"""

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found")
        self.payment_id = payment_id


class InvalidStateError(LedgerError):
    """Raised when an entity is in the wrong state for the operation"""


class InvalidTransitionError(InvalidStateError):
    """Raised when a loan status transition is not allowed"""


class LoanClosedError(InvalidStateError):
    """Raised when a payment is attempted against a closed loan"""

    def __init__(self, loan_id: str):
        super().__init__(f"Cannot add payment to closed loan {loan_id}")
        self.loan_id = loan_id


class InvalidInputError(LedgerError, ValueError):
    """Raised when caller-supplied values fail validation"""


class InvalidAmountError(InvalidInputError):
    """Raised when a monetary amount is zero, negative or malformed"""


class ConflictError(LedgerError):
    """Raised when a create would duplicate an existing identifier"""


class DuplicateCustomerError(ConflictError):
    """Raised when a customer with the same phone number already exists"""

    def __init__(self, phone: str):
        super().__init__(f"Customer with phone number {phone} already exists")
        self.phone = phone
