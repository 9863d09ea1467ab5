from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx

from ..settings import settings
from ..utils import clean_mc_number, now_ts
from .errors import CreditCheckError
from .models import ApprovalStatus, CreditCheckRecord
from .otr import OtrAuthError, OtrSession
from .store import FactStore

logger = logging.getLogger(__name__)


_NOT_APPROVED_WORDS = {"declined", "denied", "not_approved", "no"}


def normalize_otr_status(raw: Any) -> Optional[ApprovalStatus]:
    """Map a raw OTR status word onto the fixed approval vocabulary.

    Only an exact (case-insensitive) "approved" counts as approved.
    """
    s = str(raw or "").strip().lower()
    if not s:
        return None
    if s == "approved":
        return ApprovalStatus.APPROVED
    if s in _NOT_APPROVED_WORDS:
        return ApprovalStatus.NOT_APPROVED
    if s == "not_found":
        return ApprovalStatus.NOT_FOUND
    return ApprovalStatus.CALL_OTR


@dataclass(frozen=True)
class CreditVerdict:
    approval_status: Optional[ApprovalStatus]
    credit_limit: Optional[float] = None
    broker_name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED


class CreditChecker(Protocol):
    name: str

    def check(self, *, tenant_id: str, mc_number: Optional[str], customer_id: Optional[str] = None, broker_name: Optional[str] = None) -> CreditVerdict:
        ...


class OtrCreditClient:
    name = "otr"

    def __init__(self, session: Optional[OtrSession] = None):
        self.session = session or OtrSession()

    def check(self, *, tenant_id: str, mc_number: Optional[str], customer_id: Optional[str] = None, broker_name: Optional[str] = None) -> CreditVerdict:
        mc = clean_mc_number(mc_number)
        if not mc:
            raise CreditCheckError("MC number is required for an OTR broker check")
        if not self.session.configured:
            raise CreditCheckError("OTR credentials not configured")

        try:
            token = self.session.get_token()
            resp = self.session.get(f"/broker-check/{mc}", token=token)
        except OtrAuthError as e:
            raise CreditCheckError(str(e)) from e
        except httpx.TimeoutException as e:
            raise CreditCheckError("timeout") from e
        except httpx.HTTPError as e:
            raise CreditCheckError(f"Failed to connect to OTR API: {e}") from e

        if resp.status_code == 404:
            return CreditVerdict(approval_status=ApprovalStatus.NOT_FOUND, broker_name=broker_name)
        if resp.status_code in {401, 403}:
            raise CreditCheckError("Invalid OTR credentials or access denied")
        if resp.status_code >= 400:
            raise CreditCheckError(f"OTR API error: {resp.status_code}")

        data = resp.json() or {}
        raw_status = data.get("approvalStatus") or data.get("status")
        limit = data.get("creditLimit")
        return CreditVerdict(
            approval_status=normalize_otr_status(raw_status),
            credit_limit=(float(limit) if limit is not None else None),
            broker_name=data.get("brokerName") or broker_name,
            raw=data,
        )


class MockCreditChecker:
    """Static MC -> raw status table, normalized exactly like the live client."""

    name = "mock"

    def __init__(self, table: Optional[Dict[str, Any]] = None, *, fail: bool = False):
        self.table = {clean_mc_number(k) or k: v for k, v in (table or {}).items()}
        self.fail = fail
        self.calls = 0

    def check(self, *, tenant_id: str, mc_number: Optional[str], customer_id: Optional[str] = None, broker_name: Optional[str] = None) -> CreditVerdict:
        self.calls += 1
        if self.fail:
            raise CreditCheckError("Mock credit check unavailable")
        mc = clean_mc_number(mc_number)
        if not mc or mc not in self.table:
            return CreditVerdict(approval_status=ApprovalStatus.NOT_FOUND, broker_name=broker_name)
        return CreditVerdict(approval_status=normalize_otr_status(self.table[mc]), credit_limit=25_000.0, broker_name=broker_name)


def get_credit_checker(name: Optional[str] = None) -> CreditChecker:
    n = (name if name is not None else settings.CREDIT_CHECK_PROVIDER or "").strip().lower()
    if n == "mock":
        return MockCreditChecker()
    if n == "otr":
        return OtrCreditClient()
    raise ValueError(f"Unknown credit check provider: {n}")


def check_broker_credit(
    *,
    checker: CreditChecker,
    store: Optional[FactStore],
    tenant_id: str,
    mc_number: Optional[str],
    customer_id: Optional[str] = None,
    broker_name: Optional[str] = None,
) -> Optional[CreditVerdict]:
    """Run a credit check, returning None instead of raising on any failure.

    A missing verdict routes the invoice to direct email, which is the expected
    degraded path rather than an error.
    """
    try:
        verdict = checker.check(tenant_id=tenant_id, mc_number=mc_number, customer_id=customer_id, broker_name=broker_name)
    except Exception as e:
        logger.warning("Credit check failed for tenant=%s mc=%s via %s: %s", tenant_id, mc_number, getattr(checker, "name", "?"), e)
        return None

    if store is not None:
        try:
            store.add_credit_check(
                CreditCheckRecord(
                    check_id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    customer_id=customer_id,
                    mc_number=clean_mc_number(mc_number),
                    broker_name=verdict.broker_name or broker_name,
                    approval_status=verdict.approval_status,
                    credit_limit=verdict.credit_limit,
                    checked_at=now_ts(),
                )
            )
        except Exception as e:
            logger.warning("Could not record credit check history for tenant=%s: %s", tenant_id, e)

    logger.info(
        "Credit check tenant=%s mc=%s -> %s",
        tenant_id,
        mc_number,
        verdict.approval_status.value if verdict.approval_status else "no verdict",
    )
    return verdict
