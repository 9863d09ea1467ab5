import json
import os
import threading
from typing import Any, Dict, List, Optional

from .billing.errors import InvoiceCreateError, InvoiceNotFound, InvoiceNumberAllocationError, LoadNotFound
from .billing.models import (
    AuditLogEntry,
    CreditCheckRecord,
    CustomerFactoringFacts,
    EmailDeliveryAttempt,
    FactoringSubmissionRecord,
    FinancialStatus,
    InvoiceLoadRecord,
    InvoiceRecord,
    LoadDocumentRecord,
    PendingLoad,
    TenantBillingProfile,
)
from .utils import now_ts


_EMPTY = {
    "invoices": {},
    "invoice_loads": {},
    "load_documents": [],
    "email_attempts": [],
    "customers": {},
    "loads": {},
    "company_profiles": {},
    "counters": {},
    "claims": {},
    "audit_logs": [],
    "credit_checks": [],
    "factoring_submissions": [],
}


def _fresh() -> Dict[str, Any]:
    return json.loads(json.dumps(_EMPTY))


class LocalFactStore:
    """JSON-file fact store for local development and tests.

    All mutations run under one process lock, which makes the invoice counter and
    submission claims atomic within a single process.
    """

    name = "local"

    def __init__(self, base_dir: str = "./data"):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)
        self.path = os.path.join(self.base_dir, "billing.json")
        self._lock = threading.RLock()
        if not os.path.exists(self.path):
            self._write(_fresh())

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return _fresh()
        for key, empty in _EMPTY.items():
            data.setdefault(key, type(empty)())
        return data

    def _write(self, data: Dict[str, Any]):
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    # Seeding (customer management, load audit and document upload live elsewhere)

    def save_customer(self, customer: CustomerFactoringFacts):
        with self._lock:
            data = self._read()
            data["customers"][customer.customer_id] = customer.model_dump(mode="json")
            self._write(data)

    def save_load(self, load: PendingLoad):
        with self._lock:
            data = self._read()
            data["loads"][load.load_id] = load.model_dump(mode="json")
            self._write(data)

    def save_document(self, document: LoadDocumentRecord):
        with self._lock:
            data = self._read()
            data["load_documents"].append(document.model_dump(mode="json"))
            self._write(data)

    def set_tenant_profile(self, profile: TenantBillingProfile):
        with self._lock:
            data = self._read()
            data["company_profiles"][profile.tenant_id] = profile.model_dump(mode="json")
            self._write(data)

    def save_invoice(self, invoice: InvoiceRecord):
        with self._lock:
            data = self._read()
            data["invoices"][invoice.invoice_id] = invoice.model_dump(mode="json")
            self._write(data)

    def list_audit_logs(self, tenant_id: str) -> List[AuditLogEntry]:
        return [AuditLogEntry(**e) for e in self._read()["audit_logs"] if e.get("tenant_id") == tenant_id]

    def list_credit_checks(self, tenant_id: str) -> List[CreditCheckRecord]:
        return [CreditCheckRecord(**e) for e in self._read()["credit_checks"] if e.get("tenant_id") == tenant_id]

    def list_factoring_submissions(self, tenant_id: str) -> List[FactoringSubmissionRecord]:
        return [FactoringSubmissionRecord(**e) for e in self._read()["factoring_submissions"] if e.get("tenant_id") == tenant_id]

    # Reads

    def list_invoices(self, tenant_id: str) -> List[InvoiceRecord]:
        return [InvoiceRecord(**d) for d in self._read()["invoices"].values() if d.get("tenant_id") == tenant_id]

    def get_invoice(self, tenant_id: str, invoice_id: str) -> Optional[InvoiceRecord]:
        d = self._read()["invoices"].get(invoice_id)
        if not d or d.get("tenant_id") != tenant_id:
            return None
        return InvoiceRecord(**d)

    def list_invoice_loads(self, tenant_id: str, invoice_id: Optional[str] = None, load_id: Optional[str] = None) -> List[InvoiceLoadRecord]:
        out: List[InvoiceLoadRecord] = []
        for d in self._read()["invoice_loads"].values():
            if d.get("tenant_id") != tenant_id:
                continue
            if invoice_id and d.get("invoice_id") != invoice_id:
                continue
            if load_id and d.get("load_id") != load_id:
                continue
            out.append(InvoiceLoadRecord(**d))
        return out

    def list_load_documents(self, tenant_id: str, load_ids: Optional[List[str]] = None) -> List[LoadDocumentRecord]:
        wanted = set(load_ids) if load_ids is not None else None
        return [
            LoadDocumentRecord(**d)
            for d in self._read()["load_documents"]
            if d.get("tenant_id") == tenant_id and (wanted is None or d.get("load_id") in wanted)
        ]

    def list_email_attempts(self, tenant_id: str, invoice_id: Optional[str] = None) -> List[EmailDeliveryAttempt]:
        return [
            EmailDeliveryAttempt(**d)
            for d in self._read()["email_attempts"]
            if d.get("tenant_id") == tenant_id and (not invoice_id or d.get("invoice_id") == invoice_id)
        ]

    def list_customers(self, tenant_id: str) -> List[CustomerFactoringFacts]:
        return [CustomerFactoringFacts(**d) for d in self._read()["customers"].values() if d.get("tenant_id") == tenant_id]

    def get_customer(self, tenant_id: str, customer_id: str) -> Optional[CustomerFactoringFacts]:
        d = self._read()["customers"].get(customer_id)
        if not d or d.get("tenant_id") != tenant_id:
            return None
        return CustomerFactoringFacts(**d)

    def get_tenant_profile(self, tenant_id: str) -> TenantBillingProfile:
        d = self._read()["company_profiles"].get(tenant_id) or {}
        return TenantBillingProfile(**{**d, "tenant_id": tenant_id})

    def list_pending_loads(self, tenant_id: str) -> List[PendingLoad]:
        return [
            PendingLoad(**d)
            for d in self._read()["loads"].values()
            if d.get("tenant_id") == tenant_id and d.get("financial_status") == FinancialStatus.PENDING_INVOICE.value
        ]

    def get_load(self, tenant_id: str, load_id: str) -> Optional[PendingLoad]:
        d = self._read()["loads"].get(load_id)
        if not d or d.get("tenant_id") != tenant_id:
            return None
        return PendingLoad(**d)

    def list_tenant_ids(self) -> List[str]:
        data = self._read()
        ids = set(data["company_profiles"].keys())
        ids.update(str(d.get("tenant_id")) for d in data["invoices"].values() if d.get("tenant_id"))
        return sorted(ids)

    # Writes

    def next_invoice_number(self, tenant_id: str) -> str:
        with self._lock:
            data = self._read()
            nxt = int(data["counters"].get(tenant_id) or 0) + 1
            data["counters"][tenant_id] = nxt
            try:
                self._write(data)
            except OSError as e:
                raise InvoiceNumberAllocationError("Could not allocate an invoice number") from e
        return f"INV-{nxt:06d}"

    def create_invoice(self, invoice: InvoiceRecord, link: InvoiceLoadRecord) -> InvoiceRecord:
        if link.tenant_id != invoice.tenant_id or link.invoice_id != invoice.invoice_id:
            raise InvoiceCreateError("Invoice link does not match invoice")
        with self._lock:
            data = self._read()
            if invoice.invoice_id in data["invoices"]:
                raise InvoiceCreateError("Invoice already exists")
            data["invoices"][invoice.invoice_id] = invoice.model_dump(mode="json")
            data["invoice_loads"][f"{link.invoice_id}:{link.load_id}"] = link.model_dump(mode="json")
            try:
                self._write(data)
            except OSError as e:
                raise InvoiceCreateError("Could not create invoice") from e
        return invoice

    def update_invoice(self, tenant_id: str, invoice_id: str, patch: Dict[str, Any]) -> InvoiceRecord:
        with self._lock:
            data = self._read()
            current = data["invoices"].get(invoice_id)
            if not current or current.get("tenant_id") != tenant_id:
                raise InvoiceNotFound("Invoice not found")
            # Validate before persisting so a bad patch leaves the record untouched.
            record = InvoiceRecord(**{**current, **patch, "updated_at": now_ts()})
            data["invoices"][invoice_id] = record.model_dump(mode="json")
            self._write(data)
        return record

    def update_load(self, tenant_id: str, load_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            data = self._read()
            current = data["loads"].get(load_id)
            if not current or current.get("tenant_id") != tenant_id:
                raise LoadNotFound("Load not found")
            record = PendingLoad(**{**current, **patch})
            data["loads"][load_id] = record.model_dump(mode="json")
            self._write(data)

    def delete_invoice_links(self, tenant_id: str, invoice_id: str) -> List[str]:
        with self._lock:
            data = self._read()
            removed: List[str] = []
            for key, d in list(data["invoice_loads"].items()):
                if d.get("tenant_id") == tenant_id and d.get("invoice_id") == invoice_id:
                    removed.append(d["load_id"])
                    del data["invoice_loads"][key]
            if removed:
                self._write(data)
        return removed

    def add_email_attempt(self, attempt: EmailDeliveryAttempt) -> EmailDeliveryAttempt:
        with self._lock:
            data = self._read()
            data["email_attempts"].append(attempt.model_dump(mode="json"))
            self._write(data)
        return attempt

    def claim_submission(self, tenant_id: str, key: str, *, owner: str, ttl_seconds: float) -> bool:
        with self._lock:
            data = self._read()
            claim_key = f"{tenant_id}:{key}"
            now = now_ts()
            existing = data["claims"].get(claim_key)
            if existing and float(existing.get("expires_at") or 0) > now and existing.get("owner") != owner:
                return False
            data["claims"][claim_key] = {"owner": owner, "claimed_at": now, "expires_at": now + float(ttl_seconds)}
            self._write(data)
        return True

    def release_submission(self, tenant_id: str, key: str, *, owner: str) -> None:
        with self._lock:
            data = self._read()
            claim_key = f"{tenant_id}:{key}"
            if (data["claims"].get(claim_key) or {}).get("owner") == owner:
                del data["claims"][claim_key]
                self._write(data)

    def add_audit_log(self, entry: AuditLogEntry) -> None:
        with self._lock:
            data = self._read()
            data["audit_logs"].append(entry.model_dump(mode="json"))
            self._write(data)

    def add_credit_check(self, record: CreditCheckRecord) -> None:
        with self._lock:
            data = self._read()
            data["credit_checks"].append(record.model_dump(mode="json"))
            self._write(data)

    def add_factoring_submission(self, record: FactoringSubmissionRecord) -> None:
        with self._lock:
            data = self._read()
            data["factoring_submissions"].append(record.model_dump(mode="json"))
            self._write(data)
