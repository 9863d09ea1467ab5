import json

import httpx
import pytest

from apps.backoffice.billing.factoring_provider import (
    MockFactoringProvider,
    OtrFactoringClient,
    build_otr_payload,
    get_provider,
)
from apps.backoffice.billing.models import (
    BillingMethod,
    InvoiceRecord,
    OtrStatus,
    PendingLoad,
    TenantBillingProfile,
)
from apps.backoffice.billing.otr import OtrSession


PROFILE = TenantBillingProfile(tenant_id="t1", company_name="Red Rock Freight", dot_number="3141592")


def _inv(**overrides) -> InvoiceRecord:
    data = dict(
        invoice_id="inv1",
        tenant_id="t1",
        invoice_number="INV-000007",
        invoice_date="2024-03-01",
        amount_total=1200.0,
        balance_due=1200.0,
        billing_method=BillingMethod.OTR,
        created_at=1.0,
        updated_at=1.0,
    )
    data.update(overrides)
    return InvoiceRecord(**data)


def _load(**overrides) -> PendingLoad:
    data = dict(
        load_id="L1",
        tenant_id="t1",
        load_number="1001",
        reference_number="PO-55",
        pickup_city="Dallas",
        pickup_state="tx",
        delivery_city="Denver ",
        delivery_state="Colorado",
        weight=42000.0,
    )
    data.update(overrides)
    return PendingLoad(**data)


def _client(handler) -> OtrFactoringClient:
    session = OtrSession(
        base_url="https://otr.test",
        api_key="sub-key-123456789",
        username="",
        password="",
        is_test=True,
        timeout=5,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    return OtrFactoringClient(session)


def _submit(client, **kwargs):
    opts = dict(invoice=_inv(), load=_load(), profile=PROFILE, broker_mc="MC-123456")
    opts.update(kwargs)
    return client.submit_invoice(**opts)


def test_build_otr_payload():
    payload = build_otr_payload(invoice=_inv(), load=_load(), profile=PROFILE, broker_mc="MC-123456")
    assert payload == {
        "BrokerMC": 123456,
        "ClientDOT": "3141592",
        "FromCity": "DALLAS",
        "FromState": "TX",
        "ToCity": "DENVER",
        "ToState": "CO",
        "PoNumber": "PO-55",
        "InvoiceNo": "INV-000007",
        "InvoiceDate": "2024-03-01",
        "InvoiceAmount": 1200.0,
        "Weight": 42000.0,
    }


@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"broker_mc": None}, "Broker MC number required"),
        ({"profile": TenantBillingProfile(tenant_id="t1")}, "DOT number"),
        ({"load": _load(pickup_city=None)}, "Pickup city"),
        ({"load": _load(delivery_state="")}, "Delivery city"),
        ({"invoice": _inv(amount_total=0)}, "greater than 0"),
    ],
)
def test_build_otr_payload_validation(kwargs, message):
    opts = dict(invoice=_inv(), load=_load(), profile=PROFILE, broker_mc="123456")
    opts.update(kwargs)
    with pytest.raises(ValueError, match=message):
        build_otr_payload(**opts)


def test_submit_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"invoicePkey": 98765, "status": "Received"})

    result = _submit(_client(handler))

    assert result.success is True
    assert result.otr_status == OtrStatus.RECEIVED
    assert result.otr_invoice_id == "98765"
    assert seen["path"] == "/invoices"
    assert seen["body"]["InvoiceNo"] == "INV-000007"
    assert result.raw_request == seen["body"]


@pytest.mark.parametrize(
    "status,body,error",
    [
        (401, {"message": "Client not authorized for factoring"}, "OTR account not authorized: Client not authorized for factoring"),
        (401, {}, "Invalid or missing subscription key"),
        (400, {"errors": ["BrokerMC invalid", "InvoiceDate missing"]}, "Validation error: BrokerMC invalid, InvoiceDate missing"),
        (400, {}, "Validation error: Invalid Request"),
        (503, {"message": "maintenance"}, "OTR API error: 503 - maintenance"),
        (500, {}, "OTR API error: 500"),
    ],
)
def test_submit_error_mapping(status, body, error):
    result = _submit(_client(lambda r: httpx.Response(status, json=body)))
    assert result.success is False
    assert result.otr_status == OtrStatus.FAILED
    assert result.error == error


def test_submit_timeout():
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    result = _submit(_client(handler))
    assert result.success is False
    assert result.error == "timeout"


def test_submit_validation_failure_makes_no_request():
    calls = []
    result = _submit(_client(lambda r: calls.append(r) or httpx.Response(200, json={})), broker_mc=None)
    assert result.success is False
    assert "Broker MC" in result.error
    assert calls == []


def test_unconfigured_client_fails_without_request():
    session = OtrSession(base_url="https://otr.test", api_key="", client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500))))
    result = _submit(OtrFactoringClient(session))
    assert result.success is False
    assert "not configured" in result.error


def test_mock_provider():
    ok = MockFactoringProvider()
    result = _submit(ok)
    assert result.success and result.otr_invoice_id == "MOCK-INV-000007"
    assert ok.submitted == ["inv1"]

    bad = MockFactoringProvider(fail_with="timeout")
    assert _submit(bad).error == "timeout"
    assert get_provider("mock").name == "mock"
    with pytest.raises(ValueError):
        get_provider("unknown")
