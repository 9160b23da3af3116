"""
Shared request dependencies
"""

from typing import Optional

from ..audit import AuditTrail
from ..config import LedgerConfig, get_config
from ..customers import CustomerManager
from ..identifiers import SequenceAllocator
from ..loans import LoanManager
from ..payments import PaymentProcessor
from ..storage import InMemoryStorage, SQLiteStorage, StorageInterface


class LendingSystem:
    """Lending ledger with all components wired to one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LedgerConfig] = None):
        self.config = config or get_config()

        if storage is None:
            if self.config.storage_backend == "memory":
                storage = InMemoryStorage()
            else:
                storage = SQLiteStorage(self.config.database_path)
        self.storage = storage

        retries = self.config.id_retry_attempts
        self.audit_trail = AuditTrail(self.storage)
        self.sequences = SequenceAllocator(self.storage)
        self.customer_manager = CustomerManager(
            self.storage, self.audit_trail, self.sequences, id_retry_attempts=retries
        )
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.customer_manager,
            self.sequences, id_retry_attempts=retries
        )
        self.payment_processor = PaymentProcessor(
            self.storage, self.audit_trail, self.loan_manager,
            self.customer_manager, self.sequences, id_retry_attempts=retries
        )

    def close(self) -> None:
        self.storage.close()


# Global lending system instance, built on first use
lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem()
    return lending_system


def page_limit(limit: Optional[int]) -> int:
    """Requested page size, defaulted and capped by configuration"""
    config = get_config()
    if not limit:
        return config.default_page_size
    return min(limit, config.max_page_size)
