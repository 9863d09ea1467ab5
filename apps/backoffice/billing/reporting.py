from __future__ import annotations

from typing import Optional

from .models import (
    BillingMethod,
    DeliveryStatus,
    InvoiceRecord,
    SubmissionOutcomeKind,
    SubmissionResponse,
)


def outcome_message(invoice: InvoiceRecord, outcome: SubmissionOutcomeKind, error: Optional[str] = None) -> str:
    number = invoice.invoice_number
    if outcome == SubmissionOutcomeKind.DELIVERED:
        return f"Invoice {number} created and submitted to factoring"
    if outcome == SubmissionOutcomeKind.SUBMISSION_FAILED:
        reason = f": {error}" if error else ""
        return f"Invoice {number} was created but factoring submission failed{reason}. Use retry to resubmit."
    if invoice.billing_method == BillingMethod.DIRECT_EMAIL:
        return f"Invoice {number} created for direct email billing"
    return f"Invoice {number} created"


def submission_response(
    *,
    invoice: InvoiceRecord,
    outcome: SubmissionOutcomeKind,
    delivery_status: Optional[DeliveryStatus] = None,
    error: Optional[str] = None,
) -> SubmissionResponse:
    return SubmissionResponse(
        ok=outcome != SubmissionOutcomeKind.SUBMISSION_FAILED,
        outcome=outcome,
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        billing_method=invoice.billing_method,
        status=invoice.status,
        delivery_status=delivery_status,
        error=error,
        message=outcome_message(invoice, outcome, error),
    )


def create_failure_message(error: Exception) -> str:
    return f"Could not create invoice: {error}"
