from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class BillingMethod(str, Enum):
    UNKNOWN = "unknown"
    OTR = "otr"
    DIRECT_EMAIL = "direct_email"


class OtrStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    RECEIVED = "received"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    APPROVED = "approved"
    NOT_APPROVED = "not_approved"
    CALL_OTR = "call_otr"
    NOT_FOUND = "not_found"

    @classmethod
    def parse(cls, value: Any) -> Optional["ApprovalStatus"]:
        """Case-insensitive exact match; anything else (None, 'unchecked', 'approved_pending') is no verdict."""
        if isinstance(value, ApprovalStatus):
            return value
        s = str(value or "").strip().lower()
        for member in cls:
            if member.value == s:
                return member
        return None


class EmailAttemptStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    PENDING = "pending"


class DeliveryStatus(str, Enum):
    NEEDS_SETUP = "needs_setup"
    READY = "ready"
    DELIVERED = "delivered"
    FAILED = "failed"


class MissingInfo(str, Enum):
    BILLING_METHOD = "billing_method"
    TO_EMAIL = "to_email"
    CC_EMAIL = "cc_email"
    RATE_CONFIRMATION = "rate_confirmation"
    BOL_POD = "bol_pod"


class FinancialStatus(str, Enum):
    READY_FOR_AUDIT = "ready_for_audit"
    PENDING_INVOICE = "pending_invoice"
    INVOICED = "invoiced"


class InvoiceBucket(str, Enum):
    PENDING = "pending"
    NEEDS_SETUP = "needs_setup"
    READY = "ready"
    DELIVERED = "delivered"
    FAILED = "failed"
    PAID = "paid"
    OVERDUE = "overdue"


class VerificationResult(str, Enum):
    MATCH = "match"
    FAIL = "fail"


class SubmissionOutcomeKind(str, Enum):
    CREATED = "created"
    DELIVERED = "delivered"
    SUBMISSION_FAILED = "submission_failed"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


# ---------------------------------------------------------------------------
# Fact records (as stored)
# ---------------------------------------------------------------------------


class InvoiceRecord(BaseModel):
    invoice_id: str
    tenant_id: str
    invoice_number: str

    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    # Who the invoice is addressed to: the factoring company (otr) or the customer/broker.
    billing_party: Optional[str] = None

    invoice_date: Optional[str] = None  # YYYY-MM-DD
    due_date: Optional[str] = None  # YYYY-MM-DD
    payment_terms: Optional[str] = None

    amount_total: float = 0.0
    amount_paid: float = 0.0
    balance_due: float = 0.0
    currency: str = "USD"

    status: InvoiceStatus = InvoiceStatus.DRAFT
    billing_method: BillingMethod = BillingMethod.UNKNOWN

    otr_status: Optional[OtrStatus] = None
    otr_submitted_at: Optional[float] = None
    otr_invoice_id: Optional[str] = None
    otr_error: Optional[str] = None

    sent_at: Optional[float] = None
    notes: Optional[str] = None

    created_at: float
    updated_at: float

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("billing_method", mode="before")
    @classmethod
    def _coerce_billing_method(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return BillingMethod.UNKNOWN
        return value

    @field_validator("otr_status", mode="before")
    @classmethod
    def _coerce_otr_status(cls, value: Any) -> Any:
        return _blank_to_none(value)


class InvoiceLoadRecord(BaseModel):
    invoice_id: str
    load_id: str
    tenant_id: str
    description: Optional[str] = None
    amount: float = 0.0
    created_at: Optional[float] = None


class LoadDocumentRecord(BaseModel):
    load_id: str
    document_type: str
    tenant_id: Optional[str] = None
    document_id: Optional[str] = None
    uploaded_at: Optional[float] = None


class EmailDeliveryAttempt(BaseModel):
    attempt_id: str
    tenant_id: str
    invoice_id: str
    status: EmailAttemptStatus
    created_at: float
    to_email: Optional[str] = None
    cc_email: Optional[str] = None
    subject: Optional[str] = None
    error: Optional[str] = None


class CustomerFactoringFacts(BaseModel):
    customer_id: str
    tenant_id: Optional[str] = None
    name: Optional[str] = None
    mc_number: Optional[str] = None
    email: Optional[str] = None
    billing_email: Optional[str] = None
    otr_approval_status: Optional[ApprovalStatus] = None

    @field_validator("otr_approval_status", mode="before")
    @classmethod
    def _coerce_approval(cls, value: Any) -> Optional[ApprovalStatus]:
        return ApprovalStatus.parse(value)

    @property
    def usable_email(self) -> Optional[str]:
        for candidate in (self.billing_email, self.email):
            s = str(candidate or "").strip()
            if s:
                return s
        return None


class PendingLoad(BaseModel):
    load_id: str
    tenant_id: str
    load_number: Optional[str] = None
    reference_number: Optional[str] = None
    po_number: Optional[str] = None

    customer_id: Optional[str] = None
    broker_name: Optional[str] = None
    broker_mc: Optional[str] = None

    rate: Optional[float] = None
    pickup_city: Optional[str] = None
    pickup_state: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_state: Optional[str] = None
    weight: Optional[float] = None
    miles: Optional[float] = None

    status: Optional[str] = None
    financial_status: Optional[FinancialStatus] = None
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None

    @field_validator("financial_status", mode="before")
    @classmethod
    def _coerce_financial_status(cls, value: Any) -> Any:
        return _blank_to_none(value)

    def route_description(self) -> str:
        origin = ", ".join(p for p in (self.pickup_city, self.pickup_state) if p)
        dest = ", ".join(p for p in (self.delivery_city, self.delivery_state) if p)
        return f"Load {self.load_number or self.load_id}: {origin} -> {dest}".strip()


class TenantBillingProfile(BaseModel):
    tenant_id: str
    company_name: Optional[str] = None
    accounting_email: Optional[str] = None
    dot_number: Optional[str] = None


class CreditCheckRecord(BaseModel):
    check_id: str
    tenant_id: str
    customer_id: Optional[str] = None
    mc_number: Optional[str] = None
    broker_name: Optional[str] = None
    approval_status: Optional[ApprovalStatus] = None
    credit_limit: Optional[float] = None
    error: Optional[str] = None
    checked_at: float


class FactoringSubmissionRecord(BaseModel):
    submission_id: str
    tenant_id: str
    invoice_id: str
    load_id: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_amount: float = 0.0
    broker_mc: Optional[str] = None
    broker_name: Optional[str] = None
    status: OtrStatus
    otr_invoice_id: Optional[str] = None
    error_message: Optional[str] = None
    submitted_at: float
    submitted_by: Optional[str] = None
    raw_request: Dict[str, Any] = Field(default_factory=dict)
    raw_response: Dict[str, Any] = Field(default_factory=dict)


class AuditLogEntry(BaseModel):
    tenant_id: str
    entity_type: str
    entity_id: str
    action: str
    actor_uid: Optional[str] = None
    new_value: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    created_at: float


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------


class InvoiceDeliveryView(BaseModel):
    """An invoice plus its freshly derived delivery state. Never persisted."""

    invoice: InvoiceRecord
    delivery_status: Optional[DeliveryStatus] = None
    missing_info: List[MissingInfo] = Field(default_factory=list)
    has_rate_confirmation: bool = False
    has_pod_or_bol: bool = False
    broker_approved: bool = False
    last_attempt: Optional[EmailDeliveryAttempt] = None
    to_email: Optional[str] = None
    cc_email: Optional[str] = None


class InvoiceBuckets(BaseModel):
    pending: List[PendingLoad] = Field(default_factory=list)
    needs_setup: List[InvoiceDeliveryView] = Field(default_factory=list)
    ready: List[InvoiceDeliveryView] = Field(default_factory=list)
    delivered: List[InvoiceDeliveryView] = Field(default_factory=list)
    failed: List[InvoiceDeliveryView] = Field(default_factory=list)
    paid: List[InvoiceDeliveryView] = Field(default_factory=list)
    overdue: List[InvoiceDeliveryView] = Field(default_factory=list)

    def invoice_total(self) -> int:
        return (
            len(self.needs_setup)
            + len(self.ready)
            + len(self.delivered)
            + len(self.failed)
            + len(self.paid)
            + len(self.overdue)
        )


class AccountingCounts(BaseModel):
    pending: int = 0
    needs_setup: int = 0
    ready: int = 0
    delivered: int = 0
    failed: int = 0
    paid: int = 0
    overdue: int = 0
    invoices: int = 0


class VerificationItem(BaseModel):
    id: str
    label: str
    status: VerificationResult


class VerificationReport(BaseModel):
    load_id: str
    items: List[VerificationItem] = Field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(i.status == VerificationResult.MATCH for i in self.items)

    def failed_labels(self) -> List[str]:
        return [i.label for i in self.items if i.status == VerificationResult.FAIL]


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------


class InvoiceSubmitRequest(BaseModel):
    invoice_date: Optional[str] = None
    due_date: Optional[str] = None
    notes: Optional[str] = None

    # Run the pre-flight checklist; failures block unless an override reason is given.
    verify: bool = True
    override_reason: Optional[str] = None


class EmailAttemptCreateRequest(BaseModel):
    status: EmailAttemptStatus
    to_email: Optional[str] = None
    cc_email: Optional[str] = None
    subject: Optional[str] = None
    error: Optional[str] = None


class CreditCheckRequest(BaseModel):
    mc_number: Optional[str] = None
    customer_id: Optional[str] = None
    broker_name: Optional[str] = None


class CreditCheckResponse(BaseModel):
    ok: bool
    approval_status: Optional[ApprovalStatus] = None
    credit_limit: Optional[float] = None
    broker_name: Optional[str] = None
    message: str


class SubmissionResponse(BaseModel):
    ok: bool
    outcome: SubmissionOutcomeKind
    invoice_id: str
    invoice_number: str
    billing_method: BillingMethod
    status: InvoiceStatus
    delivery_status: Optional[DeliveryStatus] = None
    error: Optional[str] = None
    message: str


class InvoiceActionResponse(BaseModel):
    ok: bool = True
    invoice_id: str
    status: InvoiceStatus
    message: str


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceDeliveryView]
    total: int


class PendingLoadListResponse(BaseModel):
    loads: List[PendingLoad]
    total: int
