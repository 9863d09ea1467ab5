from apps.backoffice.billing import scheduler as billing_scheduler
from apps.backoffice.billing.models import InvoiceRecord, InvoiceStatus
from apps.backoffice.scheduler import SchedulerWrapper
from apps.backoffice.storage import LocalFactStore


def _overdue_candidate(invoice_id: str, tenant_id: str) -> InvoiceRecord:
    return InvoiceRecord(
        invoice_id=invoice_id,
        tenant_id=tenant_id,
        invoice_number=f"INV-{invoice_id}",
        due_date="2000-01-01",
        amount_total=50.0,
        balance_due=50.0,
        status=InvoiceStatus.SENT,
        created_at=1.0,
        updated_at=1.0,
    )


def test_sweep_covers_every_tenant(tmp_path):
    store = LocalFactStore(base_dir=str(tmp_path))
    store.save_invoice(_overdue_candidate("a", "t1"))
    store.save_invoice(_overdue_candidate("b", "t2"))

    assert billing_scheduler.run_overdue_sweep(store) == 2
    assert store.get_invoice("t1", "a").status == InvoiceStatus.OVERDUE
    assert store.get_invoice("t2", "b").status == InvoiceStatus.OVERDUE


def test_scheduler_disabled_by_default(monkeypatch, tmp_path):
    monkeypatch.setattr(billing_scheduler.settings, "ENABLE_OVERDUE_SCHEDULER", False)
    wrapper = SchedulerWrapper()
    assert billing_scheduler.init_billing_scheduler(wrapper, lambda: LocalFactStore(base_dir=str(tmp_path))) is False
    assert wrapper.get_job("invoice_overdue_marker") is None


def test_scheduler_registers_sweep(monkeypatch, tmp_path):
    monkeypatch.setattr(billing_scheduler.settings, "ENABLE_OVERDUE_SCHEDULER", True)
    monkeypatch.setattr(billing_scheduler.settings, "OVERDUE_CHECK_MINUTES", 15)
    wrapper = SchedulerWrapper()
    assert billing_scheduler.init_billing_scheduler(wrapper, lambda: LocalFactStore(base_dir=str(tmp_path))) is True
    job = wrapper.get_job("invoice_overdue_marker")
    assert job is not None
    assert job.trigger.interval.total_seconds() == 15 * 60
    assert wrapper.running is False
