from __future__ import annotations

from datetime import datetime


class InvoicingError(Exception):
    """Base error for invoicerun."""


class PluginRetryableError(InvoicingError):
    """Transient invoice plugin failure; the run is retried through the retry lane."""


class PluginContractError(InvoicingError):
    """Invoice plugin returned data that breaks the plugin contract."""


class PluginConfigError(InvoicingError):
    """Missing or invalid plugin registration."""


class InvoiceValidationError(InvoicingError):
    """Assembled invoice violates an item invariant."""


class NothingToDoError(InvoicingError):
    """Generation run produced no invoice for a synchronous caller."""

    code = "INVOICE_NOTHING_TO_DO"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class RetryScheduledError(InvoicingError):
    """Synchronous run hit a retryable plugin failure; a retry was queued."""

    def __init__(self, message: str, *, next_attempt_at: datetime, retry_count: int) -> None:
        super().__init__(message)
        self.next_attempt_at = next_attempt_at
        self.retry_count = retry_count


class AccountBusyError(InvoicingError):
    """Another generation run holds the account lease."""


class IntegrationUnavailableError(InvoicingError):
    """External integration is short-circuited by its circuit breaker."""


class DatabaseError(InvoicingError):
    """Database layer failure."""
