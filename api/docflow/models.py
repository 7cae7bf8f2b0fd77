from typing import Optional
from datetime import date, datetime
from sqlalchemy import UniqueConstraint
from sqlalchemy import event as sa_event
from sqlmodel import SQLModel, Field as ORMField
from .errors import ImmutableEventError
from .utils import utcnow

CONTRACT = "contract"
INVOICE = "invoice"
DOCUMENT_KINDS = (CONTRACT, INVOICE)


class Tenant(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    token_ttl_days: Optional[int] = None
    contract_number_prefix: str = "CNT"
    invoice_number_prefix: str = "INV"
    # numbering counters, reset each calendar year
    contract_seq: int = 0
    contract_seq_year: Optional[int] = None
    invoice_seq: int = 0
    invoice_seq_year: Optional[int] = None
    currency: str = "usd"


class User(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int = ORMField(index=True)
    email: str
    name: str
    role: str = "member"


class Contact(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int = ORMField(index=True)
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    organization: Optional[str] = None


class Project(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int = ORMField(index=True)
    name: str
    description: Optional[str] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    budget_cents: Optional[int] = None
    status: str = "active"


class Template(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int = ORMField(index=True)
    name: str
    description: Optional[str] = None
    document_type: str = CONTRACT
    sections_json: str = "[]"
    edit_history_json: str = "{}"
    clickwrap_text: str = ""
    default_contract_type: str = "fixed_price"
    default_terms: str = "Net 30"
    default_notes: Optional[str] = None
    default_tax_rate: float = 0.0
    is_active: bool = True
    deleted_at: Optional[datetime] = None
    created_by: Optional[int] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)


class Contract(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("tenant_id", "contract_number"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int = ORMField(index=True)
    template_id: Optional[int] = None
    contact_id: Optional[int] = None
    project_id: Optional[int] = None
    title: str
    contract_number: str = ORMField(index=True)
    contract_type: str = "fixed_price"
    pricing_json: str = "{}"
    sections_json: str = "[]"
    edit_history_json: str = "{}"
    rendered_sections_json: Optional[str] = None
    merge_values_json: Optional[str] = None
    clickwrap_text: str = ""
    notes: Optional[str] = None
    status: str = ORMField(default="draft", index=True)
    version: int = 1
    token_expires_at: Optional[datetime] = None
    client_signed_by: Optional[str] = None
    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
    artifact_path: Optional[str] = None
    artifact_sha256: Optional[str] = None
    pdf_generated_at: Optional[datetime] = None
    sent_by: Optional[int] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)


class Invoice(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("tenant_id", "invoice_number"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int = ORMField(index=True)
    template_id: Optional[int] = None
    contact_id: Optional[int] = None
    project_id: Optional[int] = None
    contract_id: Optional[int] = None
    invoice_number: str = ORMField(index=True)
    title: str
    issue_date: date = ORMField(default_factory=lambda: utcnow().date())
    due_date: Optional[date] = None
    currency: str = "usd"
    payment_terms: str = "Net 30"
    notes: Optional[str] = None
    tax_rate: float = 0.0
    discount_rate: float = 0.0
    subtotal_cents: int = 0
    tax_cents: int = 0
    discount_cents: int = 0
    total_cents: int = 0
    amount_paid_cents: int = 0
    amount_due_cents: int = 0
    status: str = ORMField(default="draft", index=True)
    version: int = 1
    token_expires_at: Optional[datetime] = None
    artifact_path: Optional[str] = None
    artifact_sha256: Optional[str] = None
    pdf_generated_at: Optional[datetime] = None
    sent_by: Optional[int] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    overdue_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)


class InvoiceLineItem(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    description: str
    quantity: float = 1.0
    unit_price_cents: int = 0
    amount_cents: int = 0
    order: int = 0


class Payment(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int
    invoice_id: int = ORMField(index=True)
    amount_cents: int
    currency: str = "usd"
    status: str = "pending"  # pending|succeeded|failed
    gateway_intent_id: Optional[str] = ORMField(default=None, index=True)
    gateway_transaction_id: Optional[str] = ORMField(default=None, unique=True)
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)


class ProcessedGatewayEvent(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    gateway_event_id: str = ORMField(unique=True, index=True)
    invoice_id: int
    transaction_id: Optional[str] = None
    processed_at: datetime = ORMField(default_factory=utcnow)


class AccessGrant(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("document_kind", "document_id", "epoch"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    document_kind: str
    document_id: int = ORMField(index=True)
    token_hash: str = ORMField(unique=True, index=True)
    epoch: int = 1
    issued_at: datetime = ORMField(default_factory=utcnow)
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    ip_first: Optional[str] = None
    ua_first: Optional[str] = None


class Event(SQLModel, table=True):
    # one successor per chain link
    __table_args__ = (UniqueConstraint("document_kind", "document_id", "prev_hash"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int
    document_kind: str
    document_id: int = ORMField(index=True)
    event_type: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    payload_json: str = "{}"
    actor_type: str = "system"  # operator|counterpart|system
    actor_id: Optional[int] = None
    ip: Optional[str] = None
    ua: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None


class EffectJob(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    tenant_id: int
    kind: str  # render|notify|settle
    document_kind: str
    document_id: int = ORMField(index=True)
    payload_json: str = "{}"
    idempotency_key: str = ORMField(unique=True, index=True)
    status: str = ORMField(default="pending", index=True)  # pending|running|done|dead
    attempts: int = 0
    max_attempts: int = 3
    available_at: datetime = ORMField(default_factory=utcnow)
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@sa_event.listens_for(Event, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ImmutableEventError(f"event {target.id} is append-only")


@sa_event.listens_for(Event, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ImmutableEventError(f"event {target.id} is append-only")
