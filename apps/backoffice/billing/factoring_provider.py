from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..settings import settings
from ..utils import clean_mc_number, parse_any_date, today_iso
from .models import InvoiceRecord, OtrStatus, PendingLoad, TenantBillingProfile
from .otr import OtrAuthError, OtrSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionResult:
    success: bool
    otr_status: OtrStatus
    otr_invoice_id: Optional[str] = None
    error: Optional[str] = None
    raw_request: Dict[str, Any] = field(default_factory=dict)
    raw_response: Dict[str, Any] = field(default_factory=dict)


def _failed(error: str, *, request: Optional[Dict[str, Any]] = None, response: Optional[Dict[str, Any]] = None) -> SubmissionResult:
    return SubmissionResult(
        success=False,
        otr_status=OtrStatus.FAILED,
        error=error,
        raw_request=dict(request or {}),
        raw_response=dict(response or {}),
    )


class FactoringProvider(Protocol):
    name: str

    def submit_invoice(
        self,
        *,
        invoice: InvoiceRecord,
        load: PendingLoad,
        profile: TenantBillingProfile,
        broker_mc: Optional[str],
    ) -> SubmissionResult:
        ...


def build_otr_payload(
    *,
    invoice: InvoiceRecord,
    load: PendingLoad,
    profile: TenantBillingProfile,
    broker_mc: Optional[str],
) -> Dict[str, Any]:
    """Build the OTR PostInvoices body. Raises ValueError when a required field is missing."""
    mc = clean_mc_number(broker_mc)
    if not mc:
        raise ValueError("Broker MC number required. Add MC number to customer record first.")
    dot = str(profile.dot_number or "").strip()
    if not dot:
        raise ValueError("Company DOT number not configured in company profile")
    if not (load.pickup_city and load.pickup_state):
        raise ValueError("Pickup city and state are required")
    if not (load.delivery_city and load.delivery_state):
        raise ValueError("Delivery city and state are required")

    amount = float(invoice.amount_total or 0)
    if amount <= 0:
        raise ValueError("Invoice amount must be greater than 0")

    invoice_date = parse_any_date(invoice.invoice_date)
    payload: Dict[str, Any] = {
        "BrokerMC": int(mc),
        "ClientDOT": dot,
        "FromCity": load.pickup_city.strip().upper(),
        "FromState": load.pickup_state.strip().upper()[:2],
        "ToCity": load.delivery_city.strip().upper(),
        "ToState": load.delivery_state.strip().upper()[:2],
        "PoNumber": str(load.reference_number or load.po_number or load.load_number or invoice.invoice_number),
        "InvoiceNo": invoice.invoice_number,
        "InvoiceDate": invoice_date.isoformat() if invoice_date else today_iso(),
        "InvoiceAmount": round(amount, 2),
    }
    if load.weight:
        payload["Weight"] = load.weight
    if load.miles:
        payload["Miles"] = load.miles
    return payload


def _error_message(resp: httpx.Response, data: Dict[str, Any]) -> str:
    message = str(data.get("message") or data.get("Message") or data.get("error") or "").strip()
    if resp.status_code == 401:
        if "not authorized" in message.lower():
            return f"OTR account not authorized: {message}"
        return "Invalid or missing subscription key"
    if resp.status_code == 400:
        errors = data.get("errors")
        detail = message or (", ".join(str(e) for e in errors) if isinstance(errors, list) and errors else "") or "Invalid Request"
        return f"Validation error: {detail}"
    return f"OTR API error: {resp.status_code}" + (f" - {message}" if message else "")


def _response_body(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {"message": resp.text}
    return data if isinstance(data, dict) else {"raw": data}


class OtrFactoringClient:
    name = "otr"

    def __init__(self, session: Optional[OtrSession] = None):
        self.session = session or OtrSession()

    def submit_invoice(
        self,
        *,
        invoice: InvoiceRecord,
        load: PendingLoad,
        profile: TenantBillingProfile,
        broker_mc: Optional[str],
    ) -> SubmissionResult:
        if not self.session.configured:
            return _failed("OTR Solutions subscription key not configured (OTR_API_KEY)")
        try:
            payload = build_otr_payload(invoice=invoice, load=load, profile=profile, broker_mc=broker_mc)
        except ValueError as e:
            return _failed(str(e))

        logger.info("Submitting invoice %s to OTR (%s)", invoice.invoice_number, self.session.describe())
        try:
            token = self.session.get_token()
            resp = self.session.post_json("/invoices", payload, token=token)
        except OtrAuthError as e:
            return _failed(str(e), request=payload)
        except httpx.TimeoutException:
            return _failed("timeout", request=payload)
        except httpx.HTTPError as e:
            return _failed(f"Failed to submit invoice: {e}", request=payload)

        data = _response_body(resp)
        if resp.status_code >= 400:
            logger.warning("OTR rejected invoice %s: HTTP %s", invoice.invoice_number, resp.status_code)
            return _failed(_error_message(resp, data), request=payload, response=data)

        otr_id = data.get("invoicePkey") or data.get("invoiceId")
        status = str(data.get("status") or "submitted").strip().lower()
        return SubmissionResult(
            success=True,
            otr_status=OtrStatus.RECEIVED if status == "received" else OtrStatus.SUBMITTED,
            otr_invoice_id=(str(otr_id) if otr_id is not None else None),
            raw_request=payload,
            raw_response=data,
        )


class MockFactoringProvider:
    """Accepts every well-formed submission unless told to fail with a given error."""

    name = "mock"

    def __init__(self, *, fail_with: Optional[str] = None):
        self.fail_with = fail_with
        self.submitted: List[str] = []

    def submit_invoice(
        self,
        *,
        invoice: InvoiceRecord,
        load: PendingLoad,
        profile: TenantBillingProfile,
        broker_mc: Optional[str],
    ) -> SubmissionResult:
        self.submitted.append(invoice.invoice_id)
        if self.fail_with:
            return _failed(self.fail_with)
        return SubmissionResult(
            success=True,
            otr_status=OtrStatus.SUBMITTED,
            otr_invoice_id=f"MOCK-{invoice.invoice_number}",
            raw_response={"status": "submitted"},
        )


def get_provider(name: Optional[str] = None) -> FactoringProvider:
    n = (name if name is not None else settings.FACTORING_PROVIDER or "").strip().lower()
    if n == "mock":
        return MockFactoringProvider()
    if n == "otr":
        return OtrFactoringClient()
    raise ValueError(f"Unknown factoring provider: {n}")
