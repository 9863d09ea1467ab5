from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..settings import settings
from ..utils import add_days_iso, now_ts, parse_any_date, today_iso
from .credit_check import CreditChecker, check_broker_credit
from .emailer import build_invoice_email, send_invoice_email
from .errors import (
    BillingError,
    InvoiceCreateError,
    InvoiceNotFound,
    LoadNotFound,
    ReturnToAuditBlocked,
    SubmissionInProgress,
    VerificationRequired,
)
from .facts import build_delivery_view, gather_facts_for_invoice
from .factoring_provider import FactoringProvider, SubmissionResult
from .models import (
    AuditLogEntry,
    BillingMethod,
    CustomerFactoringFacts,
    DeliveryStatus,
    EmailAttemptCreateRequest,
    EmailAttemptStatus,
    EmailDeliveryAttempt,
    FactoringSubmissionRecord,
    FinancialStatus,
    InvoiceDeliveryView,
    InvoiceLoadRecord,
    InvoiceRecord,
    InvoiceStatus,
    InvoiceSubmitRequest,
    OtrStatus,
    PendingLoad,
    SubmissionOutcomeKind,
    VerificationItem,
    VerificationReport,
    VerificationResult,
)
from .state import (
    DELIVERY_PROOF_TYPES,
    RATE_CONFIRMATION_TYPES,
    has_document,
    latest_attempt,
    return_to_audit_block_reason,
)
from .store import FactStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionOutcome:
    kind: SubmissionOutcomeKind
    invoice: InvoiceRecord
    delivery_status: Optional[DeliveryStatus] = None
    error: Optional[str] = None


def _actor(user: Optional[Dict[str, Any]]) -> Optional[str]:
    return str((user or {}).get("uid") or "") or None


def _require_invoice(store: FactStore, tenant_id: str, invoice_id: str) -> InvoiceRecord:
    invoice = store.get_invoice(tenant_id, invoice_id)
    if invoice is None:
        raise InvoiceNotFound("Invoice not found")
    return invoice


def _require_load(store: FactStore, tenant_id: str, load_id: str) -> PendingLoad:
    load = store.get_load(tenant_id, load_id)
    if load is None:
        raise LoadNotFound("Load not found")
    return load


def _customer_for(store: FactStore, tenant_id: str, customer_id: Optional[str]) -> Optional[CustomerFactoringFacts]:
    if not customer_id:
        return None
    return store.get_customer(tenant_id, customer_id)


def _broker_mc(customer: Optional[CustomerFactoringFacts], load: PendingLoad) -> Optional[str]:
    return (customer.mc_number if customer else None) or load.broker_mc


def _append_note(notes: Optional[str], line: str) -> str:
    base = (notes or "").rstrip()
    return f"{base}\n\n{line}" if base else line


def _audit(store: FactStore, **kwargs: Any) -> None:
    try:
        store.add_audit_log(AuditLogEntry(created_at=now_ts(), **kwargs))
    except Exception as e:
        logger.warning("Audit log write failed (%s %s): %s", kwargs.get("action"), kwargs.get("entity_id"), e)


def current_delivery_status(*, store: FactStore, tenant_id: str, invoice: InvoiceRecord) -> Optional[DeliveryStatus]:
    return build_delivery_view(gather_facts_for_invoice(store=store, tenant_id=tenant_id, invoice=invoice)).delivery_status


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


def verify_pending_load(*, store: FactStore, tenant_id: str, load_id: str) -> VerificationReport:
    """Pre-flight checklist for a load about to be invoiced. Never persisted."""
    load = _require_load(store, tenant_id, load_id)
    customer = _customer_for(store, tenant_id, load.customer_id)
    profile = store.get_tenant_profile(tenant_id)
    docs = store.list_load_documents(tenant_id, load_ids=[load_id])

    def item(id_: str, label: str, ok: bool) -> VerificationItem:
        return VerificationItem(id=id_, label=label, status=VerificationResult.MATCH if ok else VerificationResult.FAIL)

    return VerificationReport(
        load_id=load_id,
        items=[
            item("rate", "Load rate is set", float(load.rate or 0) > 0),
            item("customer", "Customer is linked", customer is not None),
            item("to_email", "Customer billing email on file", bool(customer and customer.usable_email)),
            item("cc_email", "Accounting email configured", bool((profile.accounting_email or "").strip())),
            item("rate_confirmation", "Rate confirmation uploaded", has_document(docs, [load_id], RATE_CONFIRMATION_TYPES)),
            item("bol_pod", "BOL / POD uploaded", has_document(docs, [load_id], DELIVERY_PROOF_TYPES)),
        ],
    )


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------


def _open_invoice_for_load(store: FactStore, tenant_id: str, load_id: str) -> Optional[InvoiceRecord]:
    for link in store.list_invoice_loads(tenant_id, load_id=load_id):
        inv = store.get_invoice(tenant_id, link.invoice_id)
        if inv is not None and inv.status != InvoiceStatus.CANCELLED:
            return inv
    return None


def _create_invoice(
    *,
    store: FactStore,
    tenant_id: str,
    load: PendingLoad,
    customer: Optional[CustomerFactoringFacts],
    request: InvoiceSubmitRequest,
    notes: Optional[str],
) -> InvoiceRecord:
    invoice_number = store.next_invoice_number(tenant_id)
    logger.info("Allocated invoice number %s for tenant=%s load=%s", invoice_number, tenant_id, load.load_id)

    now = now_ts()
    amount = round(float(load.rate or 0), 2)
    terms_days = int(settings.DEFAULT_PAYMENT_TERMS_DAYS)
    invoice_date = (parse_any_date(request.invoice_date) or parse_any_date(today_iso(now))).isoformat()
    due = parse_any_date(request.due_date)
    due_date = due.isoformat() if due else add_days_iso(invoice_date, terms_days)

    invoice = InvoiceRecord(
        invoice_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        invoice_number=invoice_number,
        customer_id=load.customer_id,
        customer_name=(customer.name if customer else None) or load.broker_name,
        invoice_date=invoice_date,
        due_date=due_date,
        payment_terms=f"Net {terms_days}",
        amount_total=amount,
        amount_paid=0.0,
        balance_due=amount,
        status=InvoiceStatus.DRAFT,
        billing_method=BillingMethod.UNKNOWN,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    link = InvoiceLoadRecord(
        invoice_id=invoice.invoice_id,
        load_id=load.load_id,
        tenant_id=tenant_id,
        description=load.route_description(),
        amount=amount,
        created_at=now,
    )
    try:
        created = store.create_invoice(invoice, link)
    except InvoiceCreateError:
        raise
    except Exception as e:
        logger.exception("Invoice create failed tenant=%s number=%s", tenant_id, invoice_number)
        raise InvoiceCreateError("Could not create invoice") from e
    logger.info("Created invoice %s (%s) for load %s", created.invoice_number, created.invoice_id, load.load_id)
    return created


def _resolve_billing_method(
    *,
    store: FactStore,
    checker: CreditChecker,
    tenant_id: str,
    invoice: InvoiceRecord,
    load: PendingLoad,
    customer: Optional[CustomerFactoringFacts],
) -> InvoiceRecord:
    mc = _broker_mc(customer, load)
    verdict = None
    if mc:
        verdict = check_broker_credit(
            checker=checker,
            store=store,
            tenant_id=tenant_id,
            mc_number=mc,
            customer_id=load.customer_id,
            broker_name=invoice.customer_name,
        )

    if verdict is not None and verdict.approved:
        patch = {
            "billing_method": BillingMethod.OTR.value,
            "billing_party": settings.FACTORING_COMPANY_NAME,
            "otr_status": OtrStatus.PENDING.value,
        }
    else:
        patch = {
            "billing_method": BillingMethod.DIRECT_EMAIL.value,
            "billing_party": invoice.customer_name,
        }
    updated = store.update_invoice(tenant_id, invoice.invoice_id, patch)
    logger.info("Invoice %s billing method resolved to %s", updated.invoice_number, updated.billing_method.value)
    return updated


def _mark_loads_invoiced(store: FactStore, tenant_id: str, invoice: InvoiceRecord) -> None:
    for link in store.list_invoice_loads(tenant_id, invoice_id=invoice.invoice_id):
        store.update_load(
            tenant_id,
            link.load_id,
            {
                "financial_status": FinancialStatus.INVOICED.value,
                "invoice_id": invoice.invoice_id,
                "invoice_number": invoice.invoice_number,
            },
        )


def _record_submission(store: FactStore, *, tenant_id: str, invoice: InvoiceRecord, load: PendingLoad, broker_mc: Optional[str], result: SubmissionResult, user: Optional[Dict[str, Any]]) -> None:
    try:
        store.add_factoring_submission(
            FactoringSubmissionRecord(
                submission_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                invoice_id=invoice.invoice_id,
                load_id=load.load_id,
                invoice_number=invoice.invoice_number,
                invoice_amount=float(invoice.amount_total or 0),
                broker_mc=broker_mc,
                broker_name=invoice.customer_name,
                status=result.otr_status,
                otr_invoice_id=result.otr_invoice_id,
                error_message=result.error,
                submitted_at=now_ts(),
                submitted_by=_actor(user),
                raw_request=result.raw_request,
                raw_response=result.raw_response,
            )
        )
    except Exception as e:
        logger.warning("Could not record OTR submission for invoice %s: %s", invoice.invoice_number, e)


def _submit_to_factoring(
    *,
    store: FactStore,
    provider: FactoringProvider,
    tenant_id: str,
    invoice: InvoiceRecord,
    load: PendingLoad,
    customer: Optional[CustomerFactoringFacts],
    user: Optional[Dict[str, Any]],
) -> SubmissionOutcome:
    mc = _broker_mc(customer, load)
    profile = store.get_tenant_profile(tenant_id)
    try:
        result = provider.submit_invoice(invoice=invoice, load=load, profile=profile, broker_mc=mc)
    except Exception as e:
        logger.warning("Factoring provider %s raised for invoice %s: %s", getattr(provider, "name", "?"), invoice.invoice_number, e)
        result = SubmissionResult(success=False, otr_status=OtrStatus.FAILED, error=str(e) or e.__class__.__name__)

    _record_submission(store, tenant_id=tenant_id, invoice=invoice, load=load, broker_mc=mc, result=result, user=user)

    if not result.success:
        logger.warning("Factoring submission failed for invoice %s: %s", invoice.invoice_number, result.error)
        updated = store.update_invoice(
            tenant_id,
            invoice.invoice_id,
            {"otr_status": OtrStatus.FAILED.value, "otr_error": result.error},
        )
        return SubmissionOutcome(
            kind=SubmissionOutcomeKind.SUBMISSION_FAILED,
            invoice=updated,
            delivery_status=current_delivery_status(store=store, tenant_id=tenant_id, invoice=updated),
            error=result.error,
        )

    now = now_ts()
    updated = store.update_invoice(
        tenant_id,
        invoice.invoice_id,
        {
            "status": InvoiceStatus.SENT.value,
            "sent_at": now,
            "otr_submitted_at": now,
            "otr_status": result.otr_status.value,
            "otr_invoice_id": result.otr_invoice_id,
            "otr_error": None,
        },
    )
    _mark_loads_invoiced(store, tenant_id, updated)
    logger.info("Invoice %s submitted to factoring (otr id %s)", updated.invoice_number, updated.otr_invoice_id)
    return SubmissionOutcome(
        kind=SubmissionOutcomeKind.DELIVERED,
        invoice=updated,
        delivery_status=current_delivery_status(store=store, tenant_id=tenant_id, invoice=updated),
    )


def submit_pending_load(
    *,
    store: FactStore,
    checker: CreditChecker,
    provider: FactoringProvider,
    tenant_id: str,
    load_id: str,
    request: Optional[InvoiceSubmitRequest] = None,
    user: Optional[Dict[str, Any]] = None,
) -> SubmissionOutcome:
    """Turn a pending load into an invoice and route it to factoring or direct email.

    Allocation and create failures abort with nothing written. Once the invoice
    exists, credit-check and factoring failures degrade into the returned outcome.
    """
    request = request or InvoiceSubmitRequest()
    load = _require_load(store, tenant_id, load_id)
    if load.financial_status != FinancialStatus.PENDING_INVOICE:
        raise BillingError("Load is not awaiting invoice creation")

    owner = str(uuid.uuid4())
    key = f"load:{load_id}"
    if not store.claim_submission(tenant_id, key, owner=owner, ttl_seconds=float(settings.SUBMISSION_CLAIM_TTL_SECONDS)):
        raise SubmissionInProgress("An invoice is already being created for this load")

    try:
        existing = _open_invoice_for_load(store, tenant_id, load_id)
        if existing is not None:
            raise BillingError(f"Load already has invoice {existing.invoice_number}; use retry to resubmit it")

        override_reason = (request.override_reason or "").strip() or None
        failed_items: List[str] = []
        if request.verify:
            report = verify_pending_load(store=store, tenant_id=tenant_id, load_id=load_id)
            failed_items = report.failed_labels()
            if failed_items and not override_reason:
                raise VerificationRequired("Verification failed: " + ", ".join(failed_items), failed_items)
        overridden = bool(failed_items and override_reason)

        notes = request.notes
        if overridden:
            notes = _append_note(notes, f"[OVERRIDE] {override_reason}")

        customer = _customer_for(store, tenant_id, load.customer_id)
        invoice = _create_invoice(store=store, tenant_id=tenant_id, load=load, customer=customer, request=request, notes=notes)

        try:
            invoice = _resolve_billing_method(store=store, checker=checker, tenant_id=tenant_id, invoice=invoice, load=load, customer=customer)
        except Exception:
            logger.exception("Could not record billing method for invoice %s", invoice.invoice_number)
            outcome = SubmissionOutcome(kind=SubmissionOutcomeKind.CREATED, invoice=invoice, delivery_status=DeliveryStatus.NEEDS_SETUP)
        else:
            if invoice.billing_method == BillingMethod.OTR:
                outcome = _submit_to_factoring(store=store, provider=provider, tenant_id=tenant_id, invoice=invoice, load=load, customer=customer, user=user)
            else:
                outcome = SubmissionOutcome(
                    kind=SubmissionOutcomeKind.CREATED,
                    invoice=invoice,
                    delivery_status=current_delivery_status(store=store, tenant_id=tenant_id, invoice=invoice),
                )

        _audit(
            store,
            tenant_id=tenant_id,
            entity_type="invoice",
            entity_id=invoice.invoice_id,
            action="audit_create_invoice_override" if overridden else "audit_create_invoice",
            actor_uid=_actor(user),
            new_value={
                "invoice_number": invoice.invoice_number,
                "load_id": load_id,
                "billing_method": outcome.invoice.billing_method.value,
                "outcome": outcome.kind.value,
                "override_reason": override_reason if overridden else None,
                "failed_items": failed_items,
            },
            notes=f"Override: {override_reason}" if overridden else None,
        )
        return outcome
    finally:
        store.release_submission(tenant_id, key, owner=owner)


def retry_submission(
    *,
    store: FactStore,
    provider: FactoringProvider,
    tenant_id: str,
    invoice_id: str,
    user: Optional[Dict[str, Any]] = None,
) -> SubmissionOutcome:
    """Resubmit an existing factoring invoice. Never allocates a number or re-links loads."""
    invoice = _require_invoice(store, tenant_id, invoice_id)
    if invoice.billing_method != BillingMethod.OTR:
        raise BillingError("Only factoring (otr) invoices can be resubmitted")
    if invoice.status in {InvoiceStatus.CANCELLED, InvoiceStatus.PAID}:
        raise BillingError(f'Invoice status is "{invoice.status.value}"')

    links = store.list_invoice_loads(tenant_id, invoice_id=invoice_id)
    if not links:
        raise BillingError("No load associated with this invoice")
    load = _require_load(store, tenant_id, links[0].load_id)

    owner = str(uuid.uuid4())
    key = f"load:{load.load_id}"
    if not store.claim_submission(tenant_id, key, owner=owner, ttl_seconds=float(settings.SUBMISSION_CLAIM_TTL_SECONDS)):
        raise SubmissionInProgress("A submission is already in progress for this invoice")
    try:
        # Re-read under the claim so a concurrent success is not submitted twice.
        invoice = _require_invoice(store, tenant_id, invoice_id)
        if invoice.otr_submitted_at:
            return SubmissionOutcome(
                kind=SubmissionOutcomeKind.DELIVERED,
                invoice=invoice,
                delivery_status=current_delivery_status(store=store, tenant_id=tenant_id, invoice=invoice),
            )
        customer = _customer_for(store, tenant_id, invoice.customer_id or load.customer_id)
        outcome = _submit_to_factoring(store=store, provider=provider, tenant_id=tenant_id, invoice=invoice, load=load, customer=customer, user=user)
        _audit(
            store,
            tenant_id=tenant_id,
            entity_type="invoice",
            entity_id=invoice_id,
            action="otr_retry_submission",
            actor_uid=_actor(user),
            new_value={"invoice_number": invoice.invoice_number, "outcome": outcome.kind.value, "error": outcome.error},
        )
        return outcome
    finally:
        store.release_submission(tenant_id, key, owner=owner)


# ---------------------------------------------------------------------------
# Direct email
# ---------------------------------------------------------------------------


def _apply_email_attempt(store: FactStore, tenant_id: str, invoice: InvoiceRecord, attempt: EmailDeliveryAttempt) -> EmailDeliveryAttempt:
    store.add_email_attempt(attempt)
    if attempt.status != EmailAttemptStatus.SENT:
        return attempt
    patch: Dict[str, Any] = {"sent_at": attempt.created_at}
    if invoice.status == InvoiceStatus.DRAFT:
        patch["status"] = InvoiceStatus.SENT.value
    updated = store.update_invoice(tenant_id, invoice.invoice_id, patch)
    _mark_loads_invoiced(store, tenant_id, updated)
    return attempt


def record_email_attempt(
    *,
    store: FactStore,
    tenant_id: str,
    invoice_id: str,
    request: EmailAttemptCreateRequest,
    user: Optional[Dict[str, Any]] = None,
) -> EmailDeliveryAttempt:
    invoice = _require_invoice(store, tenant_id, invoice_id)
    if invoice.billing_method != BillingMethod.DIRECT_EMAIL:
        raise BillingError("Email attempts can only be recorded for direct_email invoices")
    if invoice.status in {InvoiceStatus.CANCELLED, InvoiceStatus.PAID}:
        raise BillingError(f'Invoice status is "{invoice.status.value}"')
    attempt = EmailDeliveryAttempt(
        attempt_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        invoice_id=invoice_id,
        status=request.status,
        created_at=now_ts(),
        to_email=request.to_email,
        cc_email=request.cc_email,
        subject=request.subject,
        error=request.error,
    )
    return _apply_email_attempt(store, tenant_id, invoice, attempt)


_EMAILABLE = {DeliveryStatus.READY, DeliveryStatus.FAILED}


def _emailable_view(store: FactStore, tenant_id: str, invoice: InvoiceRecord) -> InvoiceDeliveryView:
    view = build_delivery_view(gather_facts_for_invoice(store=store, tenant_id=tenant_id, invoice=invoice))
    if view.delivery_status not in _EMAILABLE:
        state = view.delivery_status.value if view.delivery_status else invoice.status.value
        missing = ", ".join(m.value for m in view.missing_info)
        raise BillingError(f"Invoice is not ready for email delivery ({state})" + (f"; missing: {missing}" if missing else ""))
    return view


def deliver_invoice_email(
    *,
    store: FactStore,
    tenant_id: str,
    invoice_id: str,
    user: Optional[Dict[str, Any]] = None,
    sender: Callable[..., None] = send_invoice_email,
) -> EmailDeliveryAttempt:
    """Email a direct-billing invoice to the customer, logging the attempt either way."""
    invoice = _require_invoice(store, tenant_id, invoice_id)
    if invoice.billing_method != BillingMethod.DIRECT_EMAIL:
        raise BillingError("Only direct_email invoices can be emailed")
    _emailable_view(store, tenant_id, invoice)

    owner = str(uuid.uuid4())
    key = f"email:{invoice_id}"
    if not store.claim_submission(tenant_id, key, owner=owner, ttl_seconds=float(settings.SUBMISSION_CLAIM_TTL_SECONDS)):
        raise SubmissionInProgress("This invoice is already being emailed")
    try:
        # Re-read under the claim so an email sent by a concurrent caller is not sent again.
        invoice = _require_invoice(store, tenant_id, invoice_id)
        view = _emailable_view(store, tenant_id, invoice)
        profile = store.get_tenant_profile(tenant_id)
        subject, body = build_invoice_email(invoice=invoice, profile=profile)
        status = EmailAttemptStatus.SENT
        error: Optional[str] = None
        try:
            sender(to_email=view.to_email or "", cc_email=view.cc_email, subject=subject, body=body)
        except Exception as e:
            logger.warning("Invoice email failed for %s: %s", invoice.invoice_number, e)
            status = EmailAttemptStatus.FAILED
            error = str(e) or e.__class__.__name__

        attempt = EmailDeliveryAttempt(
            attempt_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            status=status,
            created_at=now_ts(),
            to_email=view.to_email,
            cc_email=view.cc_email,
            subject=subject,
            error=error,
        )
        return _apply_email_attempt(store, tenant_id, invoice, attempt)
    finally:
        store.release_submission(tenant_id, key, owner=owner)


# ---------------------------------------------------------------------------
# Return to audit / overdue
# ---------------------------------------------------------------------------


def return_to_audit(
    *,
    store: FactStore,
    tenant_id: str,
    invoice_id: str,
    user: Optional[Dict[str, Any]] = None,
) -> InvoiceRecord:
    invoice = _require_invoice(store, tenant_id, invoice_id)
    attempt = latest_attempt(store.list_email_attempts(tenant_id, invoice_id=invoice_id))
    reason = return_to_audit_block_reason(invoice, attempt)
    if reason:
        raise ReturnToAuditBlocked(f"Cannot return to audit: {reason}. Use a void or credit memo instead.")

    load_ids = store.delete_invoice_links(tenant_id, invoice_id)
    for load_id in load_ids:
        try:
            store.update_load(
                tenant_id,
                load_id,
                {"financial_status": FinancialStatus.PENDING_INVOICE.value, "invoice_id": None, "invoice_number": None},
            )
        except LoadNotFound:
            logger.warning("Linked load %s missing while returning invoice %s to audit", load_id, invoice.invoice_number)

    updated = store.update_invoice(
        tenant_id,
        invoice_id,
        {
            "status": InvoiceStatus.CANCELLED.value,
            "notes": _append_note(invoice.notes, f"[RETURNED TO AUDIT] {today_iso()}"),
        },
    )
    _audit(
        store,
        tenant_id=tenant_id,
        entity_type="invoice",
        entity_id=invoice_id,
        action="return_to_audit",
        actor_uid=_actor(user),
        new_value={"invoice_number": invoice.invoice_number, "status": InvoiceStatus.CANCELLED.value, "load_ids": load_ids},
        notes="Invoice returned to audit queue",
    )
    logger.info("Invoice %s returned to audit (%d loads)", invoice.invoice_number, len(load_ids))
    return updated


def mark_overdue_invoices(*, store: FactStore, tenant_id: str, today: Optional[str] = None) -> int:
    """Flip sent invoices past due with a positive balance to overdue."""
    cutoff = parse_any_date(today or today_iso())
    updated = 0
    for inv in store.list_invoices(tenant_id):
        if inv.status != InvoiceStatus.SENT:
            continue
        due = parse_any_date(inv.due_date)
        if due is None or due >= cutoff:
            continue
        if float(inv.balance_due or 0) <= 0:
            continue
        try:
            store.update_invoice(tenant_id, inv.invoice_id, {"status": InvoiceStatus.OVERDUE.value})
        except InvoiceNotFound:
            continue
        updated += 1
    if updated:
        logger.info("Marked %d invoices overdue for tenant=%s", updated, tenant_id)
    return updated
