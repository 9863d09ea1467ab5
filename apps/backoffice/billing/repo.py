from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from firebase_admin import firestore
from google.api_core import exceptions as gexc

from ..database import db
from ..utils import now_ts
from .errors import InvoiceCreateError, InvoiceNotFound, InvoiceNumberAllocationError, LoadNotFound
from .models import (
    AuditLogEntry,
    CreditCheckRecord,
    CustomerFactoringFacts,
    EmailDeliveryAttempt,
    FactoringSubmissionRecord,
    FinancialStatus,
    InvoiceLoadRecord,
    InvoiceRecord,
    InvoiceStatus,
    LoadDocumentRecord,
    PendingLoad,
    TenantBillingProfile,
)

logger = logging.getLogger(__name__)


INVOICES = "invoices"
INVOICE_LOADS = "invoice_loads"
LOAD_DOCUMENTS = "load_documents"
EMAIL_LOG = "invoice_email_log"
CUSTOMERS = "customers"
LOADS = "loads"
COMPANY_PROFILES = "company_profiles"
AUDIT_LOGS = "audit_logs"
CREDIT_CHECKS = "broker_credit_checks"
OTR_SUBMISSIONS = "otr_invoice_submissions"
COUNTERS = "counters"
SUBMISSION_CLAIMS = "submission_claims"


def format_invoice_number(seq: int) -> str:
    return f"INV-{int(seq):06d}"


def _link_id(invoice_id: str, load_id: str) -> str:
    return f"{invoice_id}:{load_id}"


def _claim_id(tenant_id: str, key: str) -> str:
    return f"{tenant_id}:{key}"


def _tenant_query(collection: str, tenant_id: str):
    return db.collection(collection).where("tenant_id", "==", tenant_id)


def _stream(query) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for snap in query.stream():
        d = snap.to_dict() or {}
        d.setdefault("_id", snap.id)
        out.append(d)
    return out


def _tenant_doc(collection: str, doc_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
    snap = db.collection(collection).document(doc_id).get()
    if not snap.exists:
        return None
    d = snap.to_dict() or {}
    if str(d.get("tenant_id") or "") != tenant_id:
        return None
    return d


def _invoice_from(d: Dict[str, Any]) -> InvoiceRecord:
    d = dict(d)
    d.setdefault("invoice_id", d.get("_id"))
    d.pop("_id", None)
    return InvoiceRecord(**d)


def _load_from(d: Dict[str, Any]) -> PendingLoad:
    d = dict(d)
    d.setdefault("load_id", d.get("id") or d.get("_id"))
    d.pop("_id", None)
    return PendingLoad(**d)


def _customer_from(d: Dict[str, Any]) -> CustomerFactoringFacts:
    d = dict(d)
    d.setdefault("customer_id", d.get("id") or d.get("_id"))
    d.pop("_id", None)
    return CustomerFactoringFacts(**d)


def _strip_id(d: Dict[str, Any]) -> Dict[str, Any]:
    d = dict(d)
    d.pop("_id", None)
    return d


class FirestoreFactStore:
    """Fact store backed by top-level Firestore collections keyed by tenant_id."""

    name = "firestore"

    # Reads

    def list_invoices(self, tenant_id: str) -> List[InvoiceRecord]:
        return [_invoice_from(d) for d in _stream(_tenant_query(INVOICES, tenant_id))]

    def get_invoice(self, tenant_id: str, invoice_id: str) -> Optional[InvoiceRecord]:
        d = _tenant_doc(INVOICES, invoice_id, tenant_id)
        if d is None:
            return None
        d.setdefault("invoice_id", invoice_id)
        return InvoiceRecord(**d)

    def list_invoice_loads(self, tenant_id: str, invoice_id: Optional[str] = None, load_id: Optional[str] = None) -> List[InvoiceLoadRecord]:
        q = _tenant_query(INVOICE_LOADS, tenant_id)
        if invoice_id:
            q = q.where("invoice_id", "==", invoice_id)
        if load_id:
            q = q.where("load_id", "==", load_id)
        return [InvoiceLoadRecord(**_strip_id(d)) for d in _stream(q)]

    def list_load_documents(self, tenant_id: str, load_ids: Optional[List[str]] = None) -> List[LoadDocumentRecord]:
        # "in" filters cap at 30 values, so filter by load in Python.
        wanted = set(load_ids) if load_ids is not None else None
        out: List[LoadDocumentRecord] = []
        for d in _stream(_tenant_query(LOAD_DOCUMENTS, tenant_id)):
            if wanted is not None and d.get("load_id") not in wanted:
                continue
            d.setdefault("document_id", d.get("_id"))
            out.append(LoadDocumentRecord(**_strip_id(d)))
        return out

    def list_email_attempts(self, tenant_id: str, invoice_id: Optional[str] = None) -> List[EmailDeliveryAttempt]:
        q = _tenant_query(EMAIL_LOG, tenant_id)
        if invoice_id:
            q = q.where("invoice_id", "==", invoice_id)
        out: List[EmailDeliveryAttempt] = []
        for d in _stream(q):
            d.setdefault("attempt_id", d.get("_id"))
            out.append(EmailDeliveryAttempt(**_strip_id(d)))
        return out

    def list_customers(self, tenant_id: str) -> List[CustomerFactoringFacts]:
        return [_customer_from(d) for d in _stream(_tenant_query(CUSTOMERS, tenant_id))]

    def get_customer(self, tenant_id: str, customer_id: str) -> Optional[CustomerFactoringFacts]:
        d = _tenant_doc(CUSTOMERS, customer_id, tenant_id)
        if d is None:
            return None
        d.setdefault("customer_id", customer_id)
        return CustomerFactoringFacts(**d)

    def get_tenant_profile(self, tenant_id: str) -> TenantBillingProfile:
        snap = db.collection(COMPANY_PROFILES).document(tenant_id).get()
        d = (snap.to_dict() or {}) if snap.exists else {}
        d["tenant_id"] = tenant_id
        return TenantBillingProfile(**d)

    def list_pending_loads(self, tenant_id: str) -> List[PendingLoad]:
        q = _tenant_query(LOADS, tenant_id).where("financial_status", "==", FinancialStatus.PENDING_INVOICE.value)
        return [_load_from(d) for d in _stream(q)]

    def get_load(self, tenant_id: str, load_id: str) -> Optional[PendingLoad]:
        d = _tenant_doc(LOADS, load_id, tenant_id)
        if d is None:
            return None
        d.setdefault("load_id", load_id)
        return PendingLoad(**d)

    def list_tenant_ids(self) -> List[str]:
        ids = {snap.id for snap in db.collection(COMPANY_PROFILES).stream()}
        for snap in db.collection(INVOICES).where("status", "==", InvoiceStatus.SENT.value).stream():
            tid = (snap.to_dict() or {}).get("tenant_id")
            if tid:
                ids.add(str(tid))
        return sorted(ids)

    # Writes

    def next_invoice_number(self, tenant_id: str) -> str:
        if not hasattr(db, "transaction"):
            raise InvoiceNumberAllocationError("Invoice number counter unavailable")
        ref = db.collection(COUNTERS).document(f"invoice_number:{tenant_id}")
        now = now_ts()

        @firestore.transactional
        def txn_next(txn) -> int:
            snap = ref.get(transaction=txn)
            cur = 0
            if snap.exists:
                cur = int((snap.to_dict() or {}).get("value") or 0)
            nxt = cur + 1
            txn.set(ref, {"tenant_id": tenant_id, "value": nxt, "updated_at": now}, merge=True)
            return nxt

        try:
            seq = int(txn_next(db.transaction()))
        except Exception as e:
            logger.exception("Invoice number allocation failed for tenant=%s", tenant_id)
            raise InvoiceNumberAllocationError("Could not allocate an invoice number") from e
        return format_invoice_number(seq)

    def create_invoice(self, invoice: InvoiceRecord, link: InvoiceLoadRecord) -> InvoiceRecord:
        if link.tenant_id != invoice.tenant_id or link.invoice_id != invoice.invoice_id:
            raise InvoiceCreateError("Invoice link does not match invoice")
        try:
            batch = db.batch()
            batch.set(db.collection(INVOICES).document(invoice.invoice_id), invoice.model_dump(mode="json"))
            batch.set(db.collection(INVOICE_LOADS).document(_link_id(link.invoice_id, link.load_id)), link.model_dump(mode="json"))
            batch.commit()
        except Exception as e:
            logger.exception("Invoice create failed tenant=%s invoice=%s", invoice.tenant_id, invoice.invoice_number)
            raise InvoiceCreateError("Could not create invoice") from e
        return invoice

    def update_invoice(self, tenant_id: str, invoice_id: str, patch: Dict[str, Any]) -> InvoiceRecord:
        current = _tenant_doc(INVOICES, invoice_id, tenant_id)
        if current is None:
            raise InvoiceNotFound("Invoice not found")
        patch = {**patch, "updated_at": now_ts()}
        db.collection(INVOICES).document(invoice_id).set(patch, merge=True)
        current.update(patch)
        current.setdefault("invoice_id", invoice_id)
        return InvoiceRecord(**current)

    def update_load(self, tenant_id: str, load_id: str, patch: Dict[str, Any]) -> None:
        if _tenant_doc(LOADS, load_id, tenant_id) is None:
            raise LoadNotFound("Load not found")
        db.collection(LOADS).document(load_id).set({**patch, "updated_at": now_ts()}, merge=True)

    def delete_invoice_links(self, tenant_id: str, invoice_id: str) -> List[str]:
        snaps = list(_tenant_query(INVOICE_LOADS, tenant_id).where("invoice_id", "==", invoice_id).stream())
        if not snaps:
            return []
        batch = db.batch()
        load_ids: List[str] = []
        for s in snaps:
            load_ids.append(str((s.to_dict() or {}).get("load_id") or ""))
            batch.delete(db.collection(INVOICE_LOADS).document(s.id))
        batch.commit()
        return [l for l in load_ids if l]

    def add_email_attempt(self, attempt: EmailDeliveryAttempt) -> EmailDeliveryAttempt:
        db.collection(EMAIL_LOG).document(attempt.attempt_id).set(attempt.model_dump(mode="json"))
        return attempt

    def claim_submission(self, tenant_id: str, key: str, *, owner: str, ttl_seconds: float) -> bool:
        ref = db.collection(SUBMISSION_CLAIMS).document(_claim_id(tenant_id, key))
        now = now_ts()
        data = {"tenant_id": tenant_id, "key": key, "owner": owner, "claimed_at": now, "expires_at": now + float(ttl_seconds)}
        try:
            ref.create(data)
            return True
        except gexc.AlreadyExists:
            pass

        # A concurrent taker invalidates the read and forces a retry.
        @firestore.transactional
        def txn_take_over(txn) -> bool:
            snap = ref.get(transaction=txn)
            existing = (snap.to_dict() or {}) if snap.exists else {}
            if snap.exists and float(existing.get("expires_at") or 0) > now:
                return False
            if snap.exists:
                logger.warning("Taking over stale submission claim %s (owner=%s)", key, existing.get("owner"))
            txn.set(ref, data)
            return True

        return bool(txn_take_over(db.transaction()))

    def release_submission(self, tenant_id: str, key: str, *, owner: str) -> None:
        ref = db.collection(SUBMISSION_CLAIMS).document(_claim_id(tenant_id, key))

        @firestore.transactional
        def txn_release(txn) -> None:
            snap = ref.get(transaction=txn)
            if snap.exists and (snap.to_dict() or {}).get("owner") == owner:
                txn.delete(ref)

        txn_release(db.transaction())

    def add_audit_log(self, entry: AuditLogEntry) -> None:
        db.collection(AUDIT_LOGS).add(entry.model_dump(mode="json"))

    def add_credit_check(self, record: CreditCheckRecord) -> None:
        db.collection(CREDIT_CHECKS).document(record.check_id).set(record.model_dump(mode="json"))

    def add_factoring_submission(self, record: FactoringSubmissionRecord) -> None:
        db.collection(OTR_SUBMISSIONS).document(record.submission_id).set(record.model_dump(mode="json"))
