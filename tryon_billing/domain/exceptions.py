"""Domain-specific exceptions"""

from typing import List


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class LedgerStoreError(DomainException):
    """Ledger store returned an error or is unavailable"""

    pass


class LedgerWriteError(LedgerStoreError):
    """Batch-set was rejected, fully or partially"""

    def __init__(self, message: str, errors: List[str] | None = None, written_keys: List[str] | None = None):
        super().__init__(message)
        self.errors = errors or []
        self.written_keys = written_keys or []

    @property
    def partial(self) -> bool:
        return bool(self.written_keys)


class LedgerInvariantError(DomainException):
    """A mutation would break the balance partition"""

    pass


class BillingAPIError(DomainException):
    """Billing API returned user errors or is unavailable"""

    pass


class CappedAmountExceededError(BillingAPIError):
    """Metered usage would exceed the line item's capped amount"""

    pass


class NotificationDeliveryError(DomainException):
    """Notification sink rejected or never acknowledged an alert"""

    pass
