"""Exception hierarchy for the loan servicing core."""


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""


class NotFoundError(LoanServicingError):
    """Raised when a loan or client does not exist for the given tenant."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class InvalidAmountError(LoanServicingError):
    """Raised when a monetary amount is rejected before any transaction begins."""


class ConflictRetryableError(LoanServicingError):
    """Raised when a uniqueness race could not be resolved within the retry budget."""


class TransactionFailureError(LoanServicingError):
    """Raised when the datastore fails inside an atomic block (after rollback)."""


class PlanLimitExceededError(LoanServicingError):
    """Raised when a tenant has used up its subscription plan quota."""


class InvalidStatusTransitionError(LoanServicingError, ValueError):
    """Raised when a loan status change is not allowed."""


class StorageError(LoanServicingError):
    """Base class for storage backend errors."""


class DuplicateRecordError(StorageError):
    """Raised when an insert-only write hits an existing key."""

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"Record {record_id} already exists in {table}")
