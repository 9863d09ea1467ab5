from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from .models import (
    AuditLogEntry,
    CreditCheckRecord,
    CustomerFactoringFacts,
    EmailDeliveryAttempt,
    FactoringSubmissionRecord,
    InvoiceLoadRecord,
    InvoiceRecord,
    LoadDocumentRecord,
    PendingLoad,
    TenantBillingProfile,
)


class FactStore(Protocol):
    """Tenant-scoped access to billing facts.

    Every call takes the tenant id explicitly; implementations must never return
    or touch a record belonging to another tenant.
    """

    # Reads

    def list_invoices(self, tenant_id: str) -> List[InvoiceRecord]:
        ...

    def get_invoice(self, tenant_id: str, invoice_id: str) -> Optional[InvoiceRecord]:
        ...

    def list_invoice_loads(self, tenant_id: str, invoice_id: Optional[str] = None, load_id: Optional[str] = None) -> List[InvoiceLoadRecord]:
        ...

    def list_load_documents(self, tenant_id: str, load_ids: Optional[List[str]] = None) -> List[LoadDocumentRecord]:
        ...

    def list_email_attempts(self, tenant_id: str, invoice_id: Optional[str] = None) -> List[EmailDeliveryAttempt]:
        ...

    def list_customers(self, tenant_id: str) -> List[CustomerFactoringFacts]:
        ...

    def get_customer(self, tenant_id: str, customer_id: str) -> Optional[CustomerFactoringFacts]:
        ...

    def get_tenant_profile(self, tenant_id: str) -> TenantBillingProfile:
        ...

    def list_pending_loads(self, tenant_id: str) -> List[PendingLoad]:
        ...

    def get_load(self, tenant_id: str, load_id: str) -> Optional[PendingLoad]:
        ...

    def list_tenant_ids(self) -> List[str]:
        ...

    # Writes

    def next_invoice_number(self, tenant_id: str) -> str:
        """Atomically allocate the tenant's next invoice number. Raises InvoiceNumberAllocationError."""
        ...

    def create_invoice(self, invoice: InvoiceRecord, link: InvoiceLoadRecord) -> InvoiceRecord:
        """Insert invoice and link together, or neither. Raises InvoiceCreateError."""
        ...

    def update_invoice(self, tenant_id: str, invoice_id: str, patch: Dict[str, Any]) -> InvoiceRecord:
        ...

    def update_load(self, tenant_id: str, load_id: str, patch: Dict[str, Any]) -> None:
        ...

    def delete_invoice_links(self, tenant_id: str, invoice_id: str) -> List[str]:
        """Remove the invoice's load links, returning the unlinked load ids."""
        ...

    def add_email_attempt(self, attempt: EmailDeliveryAttempt) -> EmailDeliveryAttempt:
        ...

    def claim_submission(self, tenant_id: str, key: str, *, owner: str, ttl_seconds: float) -> bool:
        """Take the exclusive submission claim for key; False if someone else holds a live claim."""
        ...

    def release_submission(self, tenant_id: str, key: str, *, owner: str) -> None:
        ...

    def add_audit_log(self, entry: AuditLogEntry) -> None:
        ...

    def add_credit_check(self, record: CreditCheckRecord) -> None:
        ...

    def add_factoring_submission(self, record: FactoringSubmissionRecord) -> None:
        ...
