import itertools

from apps.backoffice.billing.models import (
    BillingMethod,
    DeliveryStatus,
    FinancialStatus,
    InvoiceDeliveryView,
    InvoiceRecord,
    InvoiceStatus,
    PendingLoad,
)
from apps.backoffice.billing.service import categorize, compute_counts


def _view(invoice_id: str, status: InvoiceStatus, delivery: DeliveryStatus | None) -> InvoiceDeliveryView:
    inv = InvoiceRecord(
        invoice_id=invoice_id,
        tenant_id="t1",
        invoice_number=f"INV-{invoice_id}",
        status=status,
        billing_method=BillingMethod.OTR,
        created_at=1.0,
        updated_at=1.0,
    )
    return InvoiceDeliveryView(invoice=inv, delivery_status=delivery)


def _bucket_ids(buckets):
    return {
        name: [v.invoice.invoice_id for v in getattr(buckets, name)]
        for name in ("needs_setup", "ready", "delivered", "failed", "paid", "overdue")
    }


def test_every_invoice_lands_in_exactly_one_bucket():
    combos = list(itertools.product(list(InvoiceStatus), [None, *DeliveryStatus]))
    views = [_view(str(i), status, delivery) for i, (status, delivery) in enumerate(combos)]

    buckets = categorize(views=views)
    placed = [i for ids in _bucket_ids(buckets).values() for i in ids]

    expected = [v.invoice.invoice_id for v in views if v.invoice.status != InvoiceStatus.CANCELLED]
    assert sorted(placed) == sorted(expected)
    assert len(placed) == len(set(placed))


def test_payment_states_take_priority_over_delivery():
    buckets = categorize(
        views=[
            _view("paid", InvoiceStatus.PAID, DeliveryStatus.DELIVERED),
            _view("late", InvoiceStatus.OVERDUE, DeliveryStatus.FAILED),
            _view("gone", InvoiceStatus.CANCELLED, DeliveryStatus.READY),
        ]
    )
    ids = _bucket_ids(buckets)
    assert ids["paid"] == ["paid"]
    assert ids["overdue"] == ["late"]
    assert buckets.invoice_total() == 2


def test_delivery_status_buckets_and_fallback():
    buckets = categorize(
        views=[
            _view("d", InvoiceStatus.SENT, DeliveryStatus.DELIVERED),
            _view("r", InvoiceStatus.DRAFT, DeliveryStatus.READY),
            _view("f", InvoiceStatus.DRAFT, DeliveryStatus.FAILED),
            _view("n", InvoiceStatus.DRAFT, DeliveryStatus.NEEDS_SETUP),
            _view("x", InvoiceStatus.DRAFT, None),
        ]
    )
    ids = _bucket_ids(buckets)
    assert ids["delivered"] == ["d"]
    assert ids["ready"] == ["r"]
    assert ids["failed"] == ["f"]
    assert ids["needs_setup"] == ["n", "x"]


def test_counts_include_pending_loads():
    pending = [PendingLoad(load_id=f"L{i}", tenant_id="t1", financial_status=FinancialStatus.PENDING_INVOICE) for i in range(3)]
    buckets = categorize(
        views=[_view("r", InvoiceStatus.DRAFT, DeliveryStatus.READY), _view("p", InvoiceStatus.PAID, None)],
        pending=pending,
    )
    counts = compute_counts(buckets)
    assert counts.pending == 3
    assert counts.ready == 1
    assert counts.paid == 1
    assert counts.invoices == 2
    assert counts.needs_setup == counts.delivered == counts.failed == counts.overdue == 0


def test_empty_input():
    counts = compute_counts(categorize(views=[]))
    assert counts.model_dump() == {
        "pending": 0,
        "needs_setup": 0,
        "ready": 0,
        "delivered": 0,
        "failed": 0,
        "paid": 0,
        "overdue": 0,
        "invoices": 0,
    }
