from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest
from google.api_core import exceptions as gexc

from apps.backoffice.billing import repo
from apps.backoffice.billing.errors import InvoiceCreateError, InvoiceNotFound, InvoiceNumberAllocationError, LoadNotFound
from apps.backoffice.billing.models import (
    AuditLogEntry,
    BillingMethod,
    EmailAttemptStatus,
    EmailDeliveryAttempt,
    FinancialStatus,
    InvoiceLoadRecord,
    InvoiceRecord,
    InvoiceStatus,
)


@dataclass
class _Snap:
    id: str
    _data: Optional[Dict[str, Any]]

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data or {})


class _DocRef:
    def __init__(self, col: "_Collection", doc_id: str):
        self._col = col
        self.id = doc_id

    @property
    def version(self) -> int:
        return self._col._versions.get(self.id, 0)

    def _bump(self):
        self._col._versions[self.id] = self.version + 1

    def get(self, transaction=None):
        snap = _Snap(self.id, self._col._docs.get(self.id))
        if transaction is not None:
            transaction._read(self)
        return snap

    def set(self, data: Dict[str, Any], merge: bool = False):
        self._bump()
        if not merge or self.id not in self._col._docs:
            self._col._docs[self.id] = dict(data)
            return
        merged = dict(self._col._docs[self.id])
        merged.update(dict(data))
        self._col._docs[self.id] = merged

    def create(self, data: Dict[str, Any]):
        if self.id in self._col._docs:
            raise gexc.AlreadyExists(f"Document already exists: {self.id}")
        self._bump()
        self._col._docs[self.id] = dict(data)

    def delete(self):
        self._bump()
        self._col._docs.pop(self.id, None)


class _Query:
    def __init__(self, col: "_Collection", filters: List[Tuple[str, str, Any]]):
        self._col = col
        self._filters = filters

    def where(self, field: str, op: str, value: Any):
        return _Query(self._col, [*self._filters, (field, op, value)])

    def stream(self) -> Iterable[_Snap]:
        return [_Snap(doc_id, data) for doc_id, data in list(self._col._docs.items()) if self._matches(data)]

    def _matches(self, data: Dict[str, Any]) -> bool:
        for field, op, value in self._filters:
            if op != "==":
                raise AssertionError(f"Unsupported op in fake db: {op}")
            if data.get(field) != value:
                return False
        return True


_ids = itertools.count(1)


class _Collection(_Query):
    def __init__(self, docs: Dict[str, Dict[str, Any]], versions: Dict[str, int]):
        self._docs = docs
        self._versions = versions
        super().__init__(self, [])

    def document(self, doc_id: str) -> _DocRef:
        return _DocRef(self, doc_id)

    def add(self, data: Dict[str, Any]):
        ref = _DocRef(self, f"auto-{next(_ids)}")
        ref.set(data)
        return None, ref


class _Batch:
    def __init__(self, fail: bool = False):
        self._ops: List[Tuple[str, _DocRef, Optional[Dict[str, Any]]]] = []
        self._fail = fail

    def set(self, ref: _DocRef, data: Dict[str, Any]):
        self._ops.append(("set", ref, data))

    def delete(self, ref: _DocRef):
        self._ops.append(("delete", ref, None))

    def commit(self):
        if self._fail:
            raise gexc.ServiceUnavailable("backend unavailable")
        for op, ref, data in self._ops:
            if op == "set":
                ref.set(data)
            else:
                ref.delete()


class _Txn:
    """Buffers writes and commits only if nothing it read has changed, like Firestore."""

    def __init__(self, db: "_FakeDB"):
        self._db = db
        self._reads: List[Tuple[_DocRef, int]] = []
        self._writes: List[Tuple[str, _DocRef, Optional[Dict[str, Any]], bool]] = []

    def _begin(self):
        self._reads = []
        self._writes = []

    def _read(self, ref: _DocRef):
        self._reads.append((ref, ref.version))
        hook, self._db.on_txn_read = self._db.on_txn_read, None
        if hook is not None:
            hook()

    def set(self, ref: _DocRef, data: Dict[str, Any], merge: bool = False):
        self._writes.append(("set", ref, data, merge))

    def delete(self, ref: _DocRef):
        self._writes.append(("delete", ref, None, False))

    def _commit(self) -> bool:
        if any(ref.version != seen for ref, seen in self._reads):
            return False
        for op, ref, data, merge in self._writes:
            if op == "set":
                ref.set(data, merge=merge)
            else:
                ref.delete()
        return True


def _transactional(fn):
    def run(txn: _Txn):
        for _ in range(5):
            txn._begin()
            result = fn(txn)
            if txn._commit():
                return result
        raise gexc.Aborted("too much contention")

    return run


class _FakeDB:
    def __init__(self, *, fail_batch: bool = False):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, Dict[str, int]] = {}
        self._fail_batch = fail_batch
        # Runs once, right after the next transactional read, to interleave a rival writer.
        self.on_txn_read = None

    def collection(self, name: str) -> _Collection:
        return _Collection(self._collections.setdefault(name, {}), self._versions.setdefault(name, {}))

    def batch(self) -> _Batch:
        return _Batch(fail=self._fail_batch)

    def transaction(self) -> _Txn:
        return _Txn(self)

    def docs(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})


@pytest.fixture()
def fake_db(monkeypatch):
    db = _FakeDB()
    monkeypatch.setattr(repo, "db", db)
    monkeypatch.setattr(repo.firestore, "transactional", _transactional)
    return db


def _inv(invoice_id: str = "inv1", tenant_id: str = "t1", **overrides) -> InvoiceRecord:
    data = dict(
        invoice_id=invoice_id,
        tenant_id=tenant_id,
        invoice_number="INV-000001",
        amount_total=500.0,
        balance_due=500.0,
        created_at=1.0,
        updated_at=1.0,
    )
    data.update(overrides)
    return InvoiceRecord(**data)


def _link(invoice_id: str = "inv1", load_id: str = "L1", tenant_id: str = "t1") -> InvoiceLoadRecord:
    return InvoiceLoadRecord(invoice_id=invoice_id, load_id=load_id, tenant_id=tenant_id, amount=500.0)


def test_invoice_numbers_are_sequential_per_tenant(fake_db):
    store = repo.FirestoreFactStore()
    assert store.next_invoice_number("t1") == "INV-000001"
    assert store.next_invoice_number("t1") == "INV-000002"
    assert store.next_invoice_number("t2") == "INV-000001"
    assert fake_db.docs(repo.COUNTERS)["invoice_number:t1"]["value"] == 2


def test_invoice_number_allocation_failure_raises(monkeypatch, fake_db):
    def broken():
        raise gexc.ServiceUnavailable("down")

    monkeypatch.setattr(fake_db, "transaction", broken)
    with pytest.raises(InvoiceNumberAllocationError):
        repo.FirestoreFactStore().next_invoice_number("t1")


def test_create_invoice_writes_invoice_and_link_together(fake_db):
    store = repo.FirestoreFactStore()
    store.create_invoice(_inv(), _link())

    assert fake_db.docs(repo.INVOICES)["inv1"]["invoice_number"] == "INV-000001"
    assert "inv1:L1" in fake_db.docs(repo.INVOICE_LOADS)
    got = store.get_invoice("t1", "inv1")
    assert got.billing_method == BillingMethod.UNKNOWN
    assert [l.load_id for l in store.list_invoice_loads("t1", invoice_id="inv1")] == ["L1"]
    assert store.list_invoice_loads("t1", load_id="other") == []


def test_create_invoice_failure_writes_nothing(monkeypatch):
    db = _FakeDB(fail_batch=True)
    monkeypatch.setattr(repo, "db", db)
    with pytest.raises(InvoiceCreateError):
        repo.FirestoreFactStore().create_invoice(_inv(), _link())
    assert db.docs(repo.INVOICES) == {}
    assert db.docs(repo.INVOICE_LOADS) == {}


def test_create_invoice_rejects_mismatched_link(fake_db):
    with pytest.raises(InvoiceCreateError):
        repo.FirestoreFactStore().create_invoice(_inv(), _link(invoice_id="other"))


def test_reads_are_tenant_scoped(fake_db):
    store = repo.FirestoreFactStore()
    store.create_invoice(_inv(), _link())
    store.create_invoice(_inv("inv2", tenant_id="t2"), _link("inv2", tenant_id="t2"))

    assert store.get_invoice("t2", "inv1") is None
    assert [i.invoice_id for i in store.list_invoices("t1")] == ["inv1"]
    assert [i.invoice_id for i in store.list_invoices("t2")] == ["inv2"]


def test_update_invoice_merges_patch(fake_db):
    store = repo.FirestoreFactStore()
    store.create_invoice(_inv(), _link())
    updated = store.update_invoice("t1", "inv1", {"status": InvoiceStatus.SENT.value, "otr_status": "submitted"})

    assert updated.status == InvoiceStatus.SENT
    assert updated.amount_total == 500.0
    assert fake_db.docs(repo.INVOICES)["inv1"]["status"] == "sent"
    with pytest.raises(InvoiceNotFound):
        store.update_invoice("t2", "inv1", {"status": "paid"})


def test_loads_pending_and_update(fake_db):
    loads = fake_db.docs(repo.LOADS)
    loads["L1"] = {"tenant_id": "t1", "financial_status": "pending_invoice", "rate": 900}
    loads["L2"] = {"tenant_id": "t1", "financial_status": "invoiced"}
    loads["L3"] = {"tenant_id": "t2", "financial_status": "pending_invoice"}
    store = repo.FirestoreFactStore()

    assert [l.load_id for l in store.list_pending_loads("t1")] == ["L1"]
    store.update_load("t1", "L1", {"financial_status": FinancialStatus.INVOICED.value})
    assert store.get_load("t1", "L1").financial_status == FinancialStatus.INVOICED
    assert store.list_pending_loads("t1") == []
    with pytest.raises(LoadNotFound):
        store.update_load("t1", "L3", {"financial_status": "invoiced"})


def test_delete_invoice_links(fake_db):
    store = repo.FirestoreFactStore()
    store.create_invoice(_inv(), _link())
    assert store.delete_invoice_links("t1", "inv1") == ["L1"]
    assert fake_db.docs(repo.INVOICE_LOADS) == {}
    assert store.delete_invoice_links("t1", "inv1") == []


def test_submission_claims(fake_db):
    store = repo.FirestoreFactStore()
    assert store.claim_submission("t1", "load:L1", owner="a", ttl_seconds=300) is True
    assert store.claim_submission("t1", "load:L1", owner="b", ttl_seconds=300) is False

    store.release_submission("t1", "load:L1", owner="b")
    assert "t1:load:L1" in fake_db.docs(repo.SUBMISSION_CLAIMS)
    store.release_submission("t1", "load:L1", owner="a")
    assert fake_db.docs(repo.SUBMISSION_CLAIMS) == {}


def test_stale_claim_is_taken_over(fake_db):
    fake_db.docs(repo.SUBMISSION_CLAIMS)["t1:load:L1"] = {"owner": "crashed", "expires_at": 1.0}
    store = repo.FirestoreFactStore()
    assert store.claim_submission("t1", "load:L1", owner="b", ttl_seconds=300) is True
    assert fake_db.docs(repo.SUBMISSION_CLAIMS)["t1:load:L1"]["owner"] == "b"


def test_concurrent_stale_claim_takeover_has_one_winner(fake_db):
    fake_db.docs(repo.SUBMISSION_CLAIMS)["t1:load:L1"] = {"owner": "crashed", "expires_at": 1.0}
    store = repo.FirestoreFactStore()
    results = {}

    def rival_takes_over():
        results["a"] = store.claim_submission("t1", "load:L1", owner="a", ttl_seconds=300)

    # "a" takes over after "b" has already read the stale claim inside its transaction.
    fake_db.on_txn_read = rival_takes_over
    results["b"] = store.claim_submission("t1", "load:L1", owner="b", ttl_seconds=300)

    assert results == {"a": True, "b": False}
    assert fake_db.docs(repo.SUBMISSION_CLAIMS)["t1:load:L1"]["owner"] == "a"


def test_release_does_not_drop_a_claim_taken_over_meanwhile(fake_db):
    fake_db.docs(repo.SUBMISSION_CLAIMS)["t1:load:L1"] = {"owner": "a", "expires_at": 1.0}
    store = repo.FirestoreFactStore()

    fake_db.on_txn_read = lambda: store.claim_submission("t1", "load:L1", owner="b", ttl_seconds=300)
    store.release_submission("t1", "load:L1", owner="a")

    assert fake_db.docs(repo.SUBMISSION_CLAIMS)["t1:load:L1"]["owner"] == "b"


def test_email_attempts_and_audit_log(fake_db):
    store = repo.FirestoreFactStore()
    store.add_email_attempt(
        EmailDeliveryAttempt(attempt_id="a1", tenant_id="t1", invoice_id="inv1", status=EmailAttemptStatus.FAILED, created_at=5.0, error="smtp down")
    )
    store.add_audit_log(AuditLogEntry(tenant_id="t1", entity_type="invoice", entity_id="inv1", action="return_to_audit", created_at=6.0))

    attempts = store.list_email_attempts("t1", invoice_id="inv1")
    assert [(a.attempt_id, a.status) for a in attempts] == [("a1", EmailAttemptStatus.FAILED)]
    logs = list(fake_db.docs(repo.AUDIT_LOGS).values())
    assert logs[0]["action"] == "return_to_audit"


def test_customer_profile_and_tenant_ids(fake_db):
    fake_db.docs(repo.CUSTOMERS)["c1"] = {"tenant_id": "t1", "name": "Acme", "otr_approval_status": "Approved", "billing_email": "ap@acme.test"}
    fake_db.docs(repo.COMPANY_PROFILES)["t1"] = {"company_name": "Red Rock", "accounting_email": "billing@redrock.test"}
    fake_db.docs(repo.INVOICES)["x"] = {"tenant_id": "t9", "invoice_number": "INV-9", "status": "sent", "created_at": 1.0, "updated_at": 1.0}
    store = repo.FirestoreFactStore()

    customer = store.get_customer("t1", "c1")
    assert customer.otr_approval_status is not None and customer.otr_approval_status.value == "approved"
    assert store.get_customer("t2", "c1") is None
    assert store.get_tenant_profile("t1").accounting_email == "billing@redrock.test"
    assert store.get_tenant_profile("t5").accounting_email is None
    assert store.list_tenant_ids() == ["t1", "t9"]
