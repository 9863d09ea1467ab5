from __future__ import annotations

from typing import Iterable, List, Set

from .facts import list_invoice_views
from .models import (
    AccountingCounts,
    DeliveryStatus,
    FinancialStatus,
    InvoiceBuckets,
    InvoiceDeliveryView,
    InvoiceStatus,
    PendingLoad,
)
from .store import FactStore


def open_linked_load_ids(*, store: FactStore, tenant_id: str) -> Set[str]:
    """Loads that already belong to a non-cancelled invoice."""
    open_ids = {i.invoice_id for i in store.list_invoices(tenant_id) if i.status != InvoiceStatus.CANCELLED}
    return {l.load_id for l in store.list_invoice_loads(tenant_id) if l.invoice_id in open_ids}


def list_awaiting_invoice(*, store: FactStore, tenant_id: str) -> List[PendingLoad]:
    linked = open_linked_load_ids(store=store, tenant_id=tenant_id)
    return [
        l
        for l in store.list_pending_loads(tenant_id)
        if l.financial_status == FinancialStatus.PENDING_INVOICE and l.load_id not in linked
    ]


def categorize(*, views: Iterable[InvoiceDeliveryView], pending: Iterable[PendingLoad] = ()) -> InvoiceBuckets:
    """Partition invoices into exactly one operational bucket each.

    Priority: paid, overdue, (cancelled dropped), then the derived delivery status.
    """
    buckets = InvoiceBuckets(pending=list(pending))
    for v in views:
        status = v.invoice.status
        if status == InvoiceStatus.PAID:
            buckets.paid.append(v)
        elif status == InvoiceStatus.OVERDUE:
            buckets.overdue.append(v)
        elif status == InvoiceStatus.CANCELLED:
            continue
        elif v.delivery_status == DeliveryStatus.DELIVERED:
            buckets.delivered.append(v)
        elif v.delivery_status == DeliveryStatus.READY:
            buckets.ready.append(v)
        elif v.delivery_status == DeliveryStatus.FAILED:
            buckets.failed.append(v)
        else:
            buckets.needs_setup.append(v)
    return buckets


def compute_counts(buckets: InvoiceBuckets) -> AccountingCounts:
    return AccountingCounts(
        pending=len(buckets.pending),
        needs_setup=len(buckets.needs_setup),
        ready=len(buckets.ready),
        delivered=len(buckets.delivered),
        failed=len(buckets.failed),
        paid=len(buckets.paid),
        overdue=len(buckets.overdue),
        invoices=buckets.invoice_total(),
    )


def build_buckets(*, store: FactStore, tenant_id: str) -> InvoiceBuckets:
    return categorize(
        views=list_invoice_views(store=store, tenant_id=tenant_id),
        pending=list_awaiting_invoice(store=store, tenant_id=tenant_id),
    )
