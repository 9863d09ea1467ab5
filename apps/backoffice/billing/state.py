from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Tuple

from .models import (
    ApprovalStatus,
    BillingMethod,
    CustomerFactoringFacts,
    DeliveryStatus,
    EmailAttemptStatus,
    EmailDeliveryAttempt,
    InvoiceLoadRecord,
    InvoiceRecord,
    InvoiceStatus,
    LoadDocumentRecord,
    MissingInfo,
    OtrStatus,
)


RATE_CONFIRMATION_TYPES = frozenset({"rate_confirmation"})
# Either a bill of lading or a proof of delivery satisfies the delivery-proof requirement.
DELIVERY_PROOF_TYPES = frozenset({"bill_of_lading", "bol", "proof_of_delivery", "pod"})

# Factoring submissions do not carry attachments, so these never block the otr path.
ATTACHMENT_ITEMS = frozenset({MissingInfo.RATE_CONFIRMATION, MissingInfo.BOL_POD})

REPORTING_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.OVERDUE})


@dataclass(frozen=True)
class InvoiceFacts:
    """Everything the deriver may look at for one invoice."""

    invoice: InvoiceRecord
    loads: Tuple[InvoiceLoadRecord, ...] = ()
    documents: Tuple[LoadDocumentRecord, ...] = ()
    latest_attempt: Optional[EmailDeliveryAttempt] = None
    customer: Optional[CustomerFactoringFacts] = None
    accounting_email: Optional[str] = None


@dataclass(frozen=True)
class DeliveryDerivation:
    delivery_status: Optional[DeliveryStatus]
    missing_info: Tuple[MissingInfo, ...] = field(default_factory=tuple)
    has_rate_confirmation: bool = False
    has_pod_or_bol: bool = False
    broker_approved: bool = False
    last_attempt: Optional[EmailDeliveryAttempt] = None


def _norm_type(document_type: str) -> str:
    return str(document_type or "").strip().lower()


def has_document(documents: Iterable[LoadDocumentRecord], load_ids: Iterable[str], kinds: frozenset) -> bool:
    wanted = set(load_ids)
    return any(d.load_id in wanted and _norm_type(d.document_type) in kinds for d in documents)


def latest_attempt(attempts: Iterable[EmailDeliveryAttempt]) -> Optional[EmailDeliveryAttempt]:
    """Most recent attempt by creation time; ties resolve to the later attempt_id for determinism."""
    best: Optional[EmailDeliveryAttempt] = None
    for a in attempts:
        if best is None or (a.created_at, a.attempt_id) > (best.created_at, best.attempt_id):
            best = a
    return best


def is_broker_approved(customer: Optional[CustomerFactoringFacts]) -> bool:
    if customer is None:
        return False
    return ApprovalStatus.parse(customer.otr_approval_status) == ApprovalStatus.APPROVED


def customer_email(customer: Optional[CustomerFactoringFacts]) -> Optional[str]:
    return customer.usable_email if customer is not None else None


def compute_missing_info(facts: InvoiceFacts) -> Tuple[MissingInfo, ...]:
    load_ids = [l.load_id for l in facts.loads]
    missing = []
    if facts.invoice.billing_method == BillingMethod.UNKNOWN:
        missing.append(MissingInfo.BILLING_METHOD)
    if not customer_email(facts.customer):
        missing.append(MissingInfo.TO_EMAIL)
    if not str(facts.accounting_email or "").strip():
        missing.append(MissingInfo.CC_EMAIL)
    if not has_document(facts.documents, load_ids, RATE_CONFIRMATION_TYPES):
        missing.append(MissingInfo.RATE_CONFIRMATION)
    if not has_document(facts.documents, load_ids, DELIVERY_PROOF_TYPES):
        missing.append(MissingInfo.BOL_POD)
    return tuple(missing)


def _otr_status(invoice: InvoiceRecord, missing: Sequence[MissingInfo]) -> DeliveryStatus:
    if invoice.otr_submitted_at:
        return DeliveryStatus.DELIVERED
    if invoice.otr_status == OtrStatus.FAILED:
        return DeliveryStatus.FAILED
    if all(m in ATTACHMENT_ITEMS for m in missing):
        return DeliveryStatus.READY
    return DeliveryStatus.NEEDS_SETUP


def _direct_email_status(attempt: Optional[EmailDeliveryAttempt], missing: Sequence[MissingInfo]) -> DeliveryStatus:
    if attempt is not None and attempt.status == EmailAttemptStatus.SENT:
        return DeliveryStatus.DELIVERED
    if attempt is not None and attempt.status == EmailAttemptStatus.FAILED:
        return DeliveryStatus.FAILED
    if not missing:
        return DeliveryStatus.READY
    return DeliveryStatus.NEEDS_SETUP


def derive_delivery_status(facts: InvoiceFacts) -> DeliveryDerivation:
    """Pure projection of the facts onto a delivery status.

    Paid/overdue invoices are reporting states and cancelled invoices are out of
    every bucket, so none of them get a delivery status.
    """
    invoice = facts.invoice
    load_ids = [l.load_id for l in facts.loads]
    missing = compute_missing_info(facts)

    status: Optional[DeliveryStatus]
    if invoice.status in REPORTING_STATUSES or invoice.status == InvoiceStatus.CANCELLED:
        status = None
    elif invoice.billing_method == BillingMethod.OTR:
        status = _otr_status(invoice, missing)
    elif invoice.billing_method == BillingMethod.DIRECT_EMAIL:
        status = _direct_email_status(facts.latest_attempt, missing)
    else:
        status = DeliveryStatus.NEEDS_SETUP

    return DeliveryDerivation(
        delivery_status=status,
        missing_info=missing,
        has_rate_confirmation=has_document(facts.documents, load_ids, RATE_CONFIRMATION_TYPES),
        has_pod_or_bol=has_document(facts.documents, load_ids, DELIVERY_PROOF_TYPES),
        broker_approved=is_broker_approved(facts.customer),
        last_attempt=facts.latest_attempt,
    )


def return_to_audit_block_reason(invoice: InvoiceRecord, attempt: Optional[EmailDeliveryAttempt]) -> Optional[str]:
    """Why an invoice can no longer be pulled back into the audit queue, or None if it can.

    Once an invoice has left the system (customer or factoring company) it needs a
    void or credit memo instead.
    """
    if invoice.status in {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED, InvoiceStatus.SENT}:
        return f'Invoice status is "{invoice.status.value}"'
    if float(invoice.amount_paid or 0) > 0:
        return f"Invoice has payments recorded (${float(invoice.amount_paid):.2f})"
    if invoice.otr_submitted_at:
        return "Invoice was submitted to OTR factoring"
    if attempt is not None and attempt.status == EmailAttemptStatus.SENT:
        return "Invoice was sent via email"
    return None
