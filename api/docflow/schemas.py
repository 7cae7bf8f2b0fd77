from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .lifecycle import MACHINES
from .utils import from_cents, load_json


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    document_type: str = "contract"
    sections: List[dict] = []
    clickwrap_text: str = ""
    default_contract_type: str = "fixed_price"
    default_terms: str = "Net 30"
    default_notes: Optional[str] = None
    default_tax_rate: float = Field(default=0.0, ge=0, le=100)


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    sections: Optional[List[dict]] = None
    clickwrap_text: Optional[str] = None
    default_contract_type: Optional[str] = None
    default_terms: Optional[str] = None
    default_notes: Optional[str] = None
    default_tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    is_active: Optional[bool] = None


class ContractCreate(BaseModel):
    title: Optional[str] = None
    template_id: Optional[int] = None
    contact_id: Optional[int] = None
    project_id: Optional[int] = None
    contract_type: Optional[str] = None
    pricing: Optional[Dict[str, Any]] = None
    sections: Optional[List[dict]] = None
    clickwrap_text: Optional[str] = None
    notes: Optional[str] = None


class ContractUpdate(BaseModel):
    title: Optional[str] = None
    contact_id: Optional[int] = None
    project_id: Optional[int] = None
    contract_type: Optional[str] = None
    pricing: Optional[Dict[str, Any]] = None
    clickwrap_text: Optional[str] = None
    notes: Optional[str] = None


class LineItemCreate(BaseModel):
    description: str
    quantity: float = 1.0
    unit_price: Decimal = Decimal("0")


class LineItemUpdate(BaseModel):
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[Decimal] = None


class InvoiceCreate(BaseModel):
    title: Optional[str] = None
    template_id: Optional[int] = None
    contact_id: Optional[int] = None
    project_id: Optional[int] = None
    contract_id: Optional[int] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: str = "usd"
    payment_terms: Optional[str] = None
    notes: Optional[str] = None
    tax_rate: Optional[float] = None
    discount_rate: Optional[float] = None
    items: List[LineItemCreate] = []


class InvoiceUpdate(BaseModel):
    title: Optional[str] = None
    contact_id: Optional[int] = None
    project_id: Optional[int] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    payment_terms: Optional[str] = None
    notes: Optional[str] = None
    tax_rate: Optional[float] = None
    discount_rate: Optional[float] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class SectionInsert(BaseModel):
    after_id: Optional[str] = None
    type: str


class SectionMove(BaseModel):
    index: int


class SectionTypeChange(BaseModel):
    type: str


class SignRequest(BaseModel):
    agreed: bool
    signer_name: str


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


# ---------- response bodies ----------

def money(cents: Optional[int]) -> Optional[str]:
    return None if cents is None else str(from_cents(cents))


def _ts(value):
    return value.isoformat() if value else None


def template_out(template) -> dict:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "document_type": template.document_type,
        "sections": load_json(template.sections_json, []),
        "clickwrap_text": template.clickwrap_text,
        "default_contract_type": template.default_contract_type,
        "default_terms": template.default_terms,
        "default_notes": template.default_notes,
        "default_tax_rate": template.default_tax_rate,
        "is_active": template.is_active,
        "deleted_at": _ts(template.deleted_at),
        "created_at": _ts(template.created_at),
        "updated_at": _ts(template.updated_at),
    }


def history_out(owner) -> dict:
    history = load_json(owner.edit_history_json, {}) or {}
    return {"can_undo": bool(history.get("undo")), "can_redo": bool(history.get("redo"))}


def contract_out(contract) -> dict:
    return {
        "id": contract.id,
        "template_id": contract.template_id,
        "contact_id": contract.contact_id,
        "project_id": contract.project_id,
        "title": contract.title,
        "contract_number": contract.contract_number,
        "contract_type": contract.contract_type,
        "pricing": load_json(contract.pricing_json, {}),
        "sections": load_json(contract.sections_json, []),
        "rendered_sections": load_json(contract.rendered_sections_json),
        "merge_values": load_json(contract.merge_values_json),
        "clickwrap_text": contract.clickwrap_text,
        "notes": contract.notes,
        "status": contract.status,
        "allowed_actions": MACHINES["contract"].allowed_actions(contract.status),
        "token_expires_at": _ts(contract.token_expires_at),
        "client_signed_by": contract.client_signed_by,
        "artifact_sha256": contract.artifact_sha256,
        "has_pdf": bool(contract.artifact_path),
        "sent_at": _ts(contract.sent_at),
        "viewed_at": _ts(contract.viewed_at),
        "signed_at": _ts(contract.signed_at),
        "declined_at": _ts(contract.declined_at),
        "expired_at": _ts(contract.expired_at),
        "cancelled_at": _ts(contract.cancelled_at),
        "created_at": _ts(contract.created_at),
        "updated_at": _ts(contract.updated_at),
        "history": history_out(contract),
    }


def public_contract_out(contract, company_name: str) -> dict:
    """What an anonymous counterpart may see: the sent snapshot, never the draft."""
    return {
        "title": contract.title,
        "contract_number": contract.contract_number,
        "company_name": company_name,
        "contract_type": contract.contract_type,
        "pricing": load_json(contract.pricing_json, {}),
        "sections": load_json(contract.rendered_sections_json, []),
        "clickwrap_text": contract.clickwrap_text,
        "status": contract.status,
        "can_sign": contract.status == "viewed",
        "client_signed_by": contract.client_signed_by,
        "signed_at": _ts(contract.signed_at),
        "has_pdf": bool(contract.artifact_path),
    }


def line_item_out(item) -> dict:
    return {
        "id": item.id,
        "description": item.description,
        "quantity": item.quantity,
        "unit_price": money(item.unit_price_cents),
        "amount": money(item.amount_cents),
        "order": item.order,
    }


def _invoice_amounts(invoice) -> dict:
    return {
        "currency": invoice.currency,
        "subtotal": money(invoice.subtotal_cents),
        "tax_rate": invoice.tax_rate,
        "tax_amount": money(invoice.tax_cents),
        "discount_rate": invoice.discount_rate,
        "discount_amount": money(invoice.discount_cents),
        "total": money(invoice.total_cents),
        "amount_paid": money(invoice.amount_paid_cents),
        "amount_due": money(invoice.amount_due_cents),
    }


def invoice_out(invoice, items) -> dict:
    return {
        "id": invoice.id,
        "template_id": invoice.template_id,
        "contact_id": invoice.contact_id,
        "project_id": invoice.project_id,
        "contract_id": invoice.contract_id,
        "invoice_number": invoice.invoice_number,
        "title": invoice.title,
        "issue_date": _ts(invoice.issue_date),
        "due_date": _ts(invoice.due_date),
        "payment_terms": invoice.payment_terms,
        "notes": invoice.notes,
        **_invoice_amounts(invoice),
        "items": [line_item_out(item) for item in items],
        "status": invoice.status,
        "allowed_actions": MACHINES["invoice"].allowed_actions(invoice.status),
        "token_expires_at": _ts(invoice.token_expires_at),
        "artifact_sha256": invoice.artifact_sha256,
        "has_pdf": bool(invoice.artifact_path),
        "sent_at": _ts(invoice.sent_at),
        "viewed_at": _ts(invoice.viewed_at),
        "paid_at": _ts(invoice.paid_at),
        "overdue_at": _ts(invoice.overdue_at),
        "cancelled_at": _ts(invoice.cancelled_at),
        "created_at": _ts(invoice.created_at),
    }


def public_invoice_out(invoice, items, company_name: str) -> dict:
    return {
        "invoice_number": invoice.invoice_number,
        "title": invoice.title,
        "company_name": company_name,
        "issue_date": _ts(invoice.issue_date),
        "due_date": _ts(invoice.due_date),
        "payment_terms": invoice.payment_terms,
        "notes": invoice.notes,
        **_invoice_amounts(invoice),
        "items": [line_item_out(item) for item in items],
        "status": invoice.status,
        "can_pay": invoice.status not in ("paid", "cancelled") and invoice.amount_due_cents > 0,
        "has_pdf": bool(invoice.artifact_path),
    }


def event_out(event) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "from_status": event.from_status,
        "to_status": event.to_status,
        "payload": load_json(event.payload_json, {}),
        "actor_type": event.actor_type,
        "actor_id": event.actor_id,
        "ip": event.ip,
        "ua": event.ua,
        "created_at": _ts(event.created_at),
        "hash": event.hash,
    }
