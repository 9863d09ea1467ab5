from __future__ import annotations

# File: apps/backoffice/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .billing.router import _store, router as billing_router
from .billing.scheduler import init_billing_scheduler
from .scheduler import SchedulerWrapper
from .settings import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# --- FastAPI App ---

app = FastAPI(title="HaulBill Back-Office API")

app.add_middleware(
    CORSMiddleware,
    # Explicit origins are required when using credentials (Authorization headers).
    allow_origins=list({
        str(settings.FRONTEND_BASE_URL or "").rstrip("/"),
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    } - {""}),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


scheduler = SchedulerWrapper()


@app.get("/health")
def health():
    return {"status": "ok", "store": settings.BILLING_STORE}


app.include_router(billing_router)


@app.on_event("startup")
def startup_events():
    if init_billing_scheduler(scheduler, _store):
        scheduler.start()
        logger.info("Overdue invoice sweep every %s minutes", settings.OVERDUE_CHECK_MINUTES)


@app.on_event("shutdown")
def shutdown_events():
    scheduler.shutdown()
