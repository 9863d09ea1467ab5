from __future__ import annotations

import logging
from typing import Callable

from ..scheduler import SchedulerWrapper
from ..settings import settings
from .orchestrator import mark_overdue_invoices
from .store import FactStore

logger = logging.getLogger(__name__)


def run_overdue_sweep(store: FactStore) -> int:
    total = 0
    for tenant_id in store.list_tenant_ids():
        try:
            total += mark_overdue_invoices(store=store, tenant_id=tenant_id)
        except Exception:
            logger.exception("Overdue sweep failed for tenant=%s", tenant_id)
    return total


def init_billing_scheduler(scheduler: SchedulerWrapper, store_factory: Callable[[], FactStore]) -> bool:
    if not settings.ENABLE_OVERDUE_SCHEDULER:
        logger.info("Overdue invoice scheduler disabled")
        return False
    scheduler.add_interval_job(
        lambda: run_overdue_sweep(store_factory()),
        minutes=int(settings.OVERDUE_CHECK_MINUTES),
        id="invoice_overdue_marker",
    )
    return True
