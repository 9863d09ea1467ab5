from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from ..auth import require_tenant_access, require_tenant_admin
from ..settings import settings
from ..storage import LocalFactStore
from .credit_check import CreditChecker, check_broker_credit, get_credit_checker
from .errors import (
    BillingError,
    InvoiceCreateError,
    InvoiceNotFound,
    InvoiceNumberAllocationError,
    LoadNotFound,
    SubmissionInProgress,
    VerificationRequired,
)
from .facts import build_delivery_view, gather_facts_for_invoice, list_invoice_views
from .factoring_provider import FactoringProvider, get_provider
from .models import (
    AccountingCounts,
    CreditCheckRequest,
    CreditCheckResponse,
    EmailAttemptCreateRequest,
    EmailDeliveryAttempt,
    InvoiceActionResponse,
    InvoiceBuckets,
    InvoiceDeliveryView,
    InvoiceListResponse,
    InvoiceSubmitRequest,
    PendingLoadListResponse,
    SubmissionResponse,
    VerificationReport,
)
from .orchestrator import (
    deliver_invoice_email,
    mark_overdue_invoices,
    record_email_attempt,
    retry_submission,
    return_to_audit,
    submit_pending_load,
    verify_pending_load,
)
from .repo import FirestoreFactStore
from .reporting import create_failure_message, submission_response
from .service import build_buckets, compute_counts, list_awaiting_invoice
from .store import FactStore


router = APIRouter(prefix="/tenants/{tenant_id}", tags=["Billing"])


_STORE: Optional[FactStore] = None


def _store() -> FactStore:
    global _STORE
    if _STORE is None:
        kind = (settings.BILLING_STORE or "firestore").strip().lower()
        _STORE = LocalFactStore(base_dir=settings.DATA_DIR) if kind == "local" else FirestoreFactStore()
    return _STORE


def _credit_checker() -> CreditChecker:
    return get_credit_checker()


def _provider() -> FactoringProvider:
    return get_provider()


def _http_error(e: BillingError) -> HTTPException:
    if isinstance(e, (InvoiceNotFound, LoadNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SubmissionInProgress):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (InvoiceNumberAllocationError, InvoiceCreateError)):
        return HTTPException(status_code=502, detail=create_failure_message(e))
    if isinstance(e, VerificationRequired):
        return HTTPException(status_code=400, detail={"message": str(e), "failed_items": e.failed_items})
    return HTTPException(status_code=400, detail=str(e))


@router.get("/invoices", response_model=InvoiceListResponse)
def invoices_list(
    tenant_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    items = list_invoice_views(store=store, tenant_id=tenant_id)
    return InvoiceListResponse(invoices=items, total=len(items))


@router.get("/invoices/{invoice_id}", response_model=InvoiceDeliveryView)
def invoices_get(
    tenant_id: str,
    invoice_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    invoice = store.get_invoice(tenant_id, invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return build_delivery_view(gather_facts_for_invoice(store=store, tenant_id=tenant_id, invoice=invoice))


@router.get("/billing/buckets", response_model=InvoiceBuckets)
def billing_buckets(
    tenant_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    return build_buckets(store=store, tenant_id=tenant_id)


@router.get("/billing/counts", response_model=AccountingCounts)
def billing_counts(
    tenant_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    return compute_counts(build_buckets(store=store, tenant_id=tenant_id))


@router.get("/pending-loads", response_model=PendingLoadListResponse)
def pending_loads_list(
    tenant_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    loads = list_awaiting_invoice(store=store, tenant_id=tenant_id)
    return PendingLoadListResponse(loads=loads, total=len(loads))


@router.get("/pending-loads/{load_id}/verification", response_model=VerificationReport)
def pending_load_verification(
    tenant_id: str,
    load_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    try:
        return verify_pending_load(store=store, tenant_id=tenant_id, load_id=load_id)
    except BillingError as e:
        raise _http_error(e)


@router.post("/pending-loads/{load_id}/invoice", response_model=SubmissionResponse)
def pending_load_submit(
    tenant_id: str,
    load_id: str,
    req: InvoiceSubmitRequest,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
    checker: CreditChecker = Depends(_credit_checker),
    provider: FactoringProvider = Depends(_provider),
):
    try:
        outcome = submit_pending_load(
            store=store,
            checker=checker,
            provider=provider,
            tenant_id=tenant_id,
            load_id=load_id,
            request=req,
            user=user,
        )
    except BillingError as e:
        raise _http_error(e)
    return submission_response(invoice=outcome.invoice, outcome=outcome.kind, delivery_status=outcome.delivery_status, error=outcome.error)


@router.post("/invoices/{invoice_id}/otr/retry", response_model=SubmissionResponse)
def invoice_retry_otr(
    tenant_id: str,
    invoice_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
    provider: FactoringProvider = Depends(_provider),
):
    try:
        outcome = retry_submission(store=store, provider=provider, tenant_id=tenant_id, invoice_id=invoice_id, user=user)
    except BillingError as e:
        raise _http_error(e)
    return submission_response(invoice=outcome.invoice, outcome=outcome.kind, delivery_status=outcome.delivery_status, error=outcome.error)


@router.post("/invoices/{invoice_id}/email", response_model=EmailDeliveryAttempt)
def invoice_send_email(
    tenant_id: str,
    invoice_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    try:
        return deliver_invoice_email(store=store, tenant_id=tenant_id, invoice_id=invoice_id, user=user)
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/email-attempts", response_model=EmailDeliveryAttempt)
def invoice_record_email_attempt(
    tenant_id: str,
    invoice_id: str,
    req: EmailAttemptCreateRequest,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    try:
        return record_email_attempt(store=store, tenant_id=tenant_id, invoice_id=invoice_id, request=req, user=user)
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/return-to-audit", response_model=InvoiceActionResponse)
def invoice_return_to_audit(
    tenant_id: str,
    invoice_id: str,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
):
    try:
        inv = return_to_audit(store=store, tenant_id=tenant_id, invoice_id=invoice_id, user=user)
    except BillingError as e:
        raise _http_error(e)
    return InvoiceActionResponse(invoice_id=inv.invoice_id, status=inv.status, message="Invoice returned to audit")


@router.post("/credit-check", response_model=CreditCheckResponse)
def credit_check(
    tenant_id: str,
    req: CreditCheckRequest,
    user: Dict[str, Any] = Depends(require_tenant_access),
    store: FactStore = Depends(_store),
    checker: CreditChecker = Depends(_credit_checker),
):
    mc_number = req.mc_number
    broker_name = req.broker_name
    if not mc_number and req.customer_id:
        customer = store.get_customer(tenant_id, req.customer_id)
        if customer is None:
            raise HTTPException(status_code=404, detail="Customer not found")
        mc_number = customer.mc_number
        broker_name = broker_name or customer.name
    if not mc_number:
        raise HTTPException(status_code=400, detail="MC number is required")

    verdict = check_broker_credit(
        checker=checker,
        store=store,
        tenant_id=tenant_id,
        mc_number=mc_number,
        customer_id=req.customer_id,
        broker_name=broker_name,
    )
    if verdict is None:
        return CreditCheckResponse(ok=False, broker_name=broker_name, message="Credit check unavailable; invoices will bill by direct email")
    status = verdict.approval_status.value if verdict.approval_status else "no verdict"
    return CreditCheckResponse(
        ok=True,
        approval_status=verdict.approval_status,
        credit_limit=verdict.credit_limit,
        broker_name=verdict.broker_name,
        message=f"Broker credit check: {status}",
    )


@router.post("/billing/overdue/run")
def billing_overdue_run(
    tenant_id: str,
    user: Dict[str, Any] = Depends(require_tenant_admin),
    store: FactStore = Depends(_store),
):
    updated = mark_overdue_invoices(store=store, tenant_id=tenant_id)
    return {"ok": True, "updated": updated}
