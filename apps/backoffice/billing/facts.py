from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional

from .models import (
    CustomerFactoringFacts,
    EmailDeliveryAttempt,
    InvoiceDeliveryView,
    InvoiceLoadRecord,
    InvoiceRecord,
    LoadDocumentRecord,
)
from .state import InvoiceFacts, customer_email, derive_delivery_status, latest_attempt
from .store import FactStore


def _group_links(links: List[InvoiceLoadRecord]) -> Dict[str, List[InvoiceLoadRecord]]:
    out: Dict[str, List[InvoiceLoadRecord]] = defaultdict(list)
    for link in links:
        out[link.invoice_id].append(link)
    return out


def _group_attempts(attempts: List[EmailDeliveryAttempt]) -> Dict[str, List[EmailDeliveryAttempt]]:
    out: Dict[str, List[EmailDeliveryAttempt]] = defaultdict(list)
    for a in attempts:
        out[a.invoice_id].append(a)
    return out


def _facts_for(
    invoice: InvoiceRecord,
    *,
    links: List[InvoiceLoadRecord],
    documents: List[LoadDocumentRecord],
    attempts: List[EmailDeliveryAttempt],
    customers: Dict[str, CustomerFactoringFacts],
    accounting_email: Optional[str],
) -> InvoiceFacts:
    load_ids = {l.load_id for l in links}
    return InvoiceFacts(
        invoice=invoice,
        loads=tuple(links),
        documents=tuple(d for d in documents if d.load_id in load_ids),
        latest_attempt=latest_attempt(attempts),
        customer=customers.get(invoice.customer_id or ""),
        accounting_email=accounting_email,
    )


def gather_invoice_facts(*, store: FactStore, tenant_id: str) -> List[InvoiceFacts]:
    """Read every fact source for the tenant once and assemble per-invoice fact bundles."""
    invoices = store.list_invoices(tenant_id)
    links_by_invoice = _group_links(store.list_invoice_loads(tenant_id))
    attempts_by_invoice = _group_attempts(store.list_email_attempts(tenant_id))
    documents = store.list_load_documents(tenant_id)
    customers = {c.customer_id: c for c in store.list_customers(tenant_id)}
    accounting_email = store.get_tenant_profile(tenant_id).accounting_email

    return [
        _facts_for(
            inv,
            links=links_by_invoice.get(inv.invoice_id, []),
            documents=documents,
            attempts=attempts_by_invoice.get(inv.invoice_id, []),
            customers=customers,
            accounting_email=accounting_email,
        )
        for inv in invoices
    ]


def gather_facts_for_invoice(*, store: FactStore, tenant_id: str, invoice: InvoiceRecord) -> InvoiceFacts:
    links = store.list_invoice_loads(tenant_id, invoice_id=invoice.invoice_id)
    documents = store.list_load_documents(tenant_id, load_ids=[l.load_id for l in links]) if links else []
    customers: Dict[str, CustomerFactoringFacts] = {}
    if invoice.customer_id:
        customer = store.get_customer(tenant_id, invoice.customer_id)
        if customer is not None:
            customers[customer.customer_id] = customer
    return _facts_for(
        invoice,
        links=links,
        documents=documents,
        attempts=store.list_email_attempts(tenant_id, invoice_id=invoice.invoice_id),
        customers=customers,
        accounting_email=store.get_tenant_profile(tenant_id).accounting_email,
    )


def build_delivery_view(facts: InvoiceFacts) -> InvoiceDeliveryView:
    d = derive_delivery_status(facts)
    return InvoiceDeliveryView(
        invoice=facts.invoice,
        delivery_status=d.delivery_status,
        missing_info=list(d.missing_info),
        has_rate_confirmation=d.has_rate_confirmation,
        has_pod_or_bol=d.has_pod_or_bol,
        broker_approved=d.broker_approved,
        last_attempt=d.last_attempt,
        to_email=customer_email(facts.customer),
        cc_email=(str(facts.accounting_email or "").strip() or None),
    )


def list_invoice_views(*, store: FactStore, tenant_id: str) -> List[InvoiceDeliveryView]:
    views = [build_delivery_view(f) for f in gather_invoice_facts(store=store, tenant_id=tenant_id)]
    views.sort(key=lambda v: float(v.invoice.created_at or 0.0), reverse=True)
    return views
