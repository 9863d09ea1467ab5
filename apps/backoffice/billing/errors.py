from __future__ import annotations


class BillingError(ValueError):
    pass


class InvoiceNotFound(BillingError):
    pass


class LoadNotFound(BillingError):
    pass


class InvoiceNumberAllocationError(BillingError):
    """No invoice number could be allocated; nothing was written."""


class InvoiceCreateError(BillingError):
    """The invoice + load link could not be written; nothing was left behind."""


class SubmissionInProgress(BillingError):
    """Another submission currently holds the claim for this load."""


class VerificationRequired(BillingError):
    def __init__(self, message: str, failed_items: list[str]):
        super().__init__(message)
        self.failed_items = failed_items


class ReturnToAuditBlocked(BillingError):
    pass


class CreditCheckError(RuntimeError):
    """Credit-check service failure. Never escapes the credit-check wrapper."""
