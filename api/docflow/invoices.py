import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlmodel import Session, select

from . import access, effects, payments
from .documents import ensure_editable, get_contact, get_project, get_template, next_number
from .errors import InvalidArgument, InvalidTransition, NotFound, ValidationError
from .lifecycle import INVOICE_MACHINE, Actor, InvoiceStatus, append_event, load_document, record_event, transition
from .models import INVOICE, Contact, Invoice, InvoiceLineItem
from .notifications import RESENT, SENT
from .utils import percent_of, to_cents, utcnow

logger = logging.getLogger(__name__)


def line_amount(quantity: float, unit_price_cents: int) -> int:
    value = (Decimal(str(quantity)) * Decimal(unit_price_cents)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(value)


def line_items(session: Session, invoice_id: int):
    return session.exec(
        select(InvoiceLineItem).where(InvoiceLineItem.invoice_id == invoice_id).order_by(InvoiceLineItem.order, InvoiceLineItem.id)
    ).all()


def recalculate(invoice: Invoice, items) -> Invoice:
    """subtotal, tax and discount as percentages of the subtotal, total and balance."""
    subtotal = sum(item.amount_cents for item in items)
    invoice.subtotal_cents = subtotal
    invoice.tax_cents = percent_of(subtotal, invoice.tax_rate)
    invoice.discount_cents = percent_of(subtotal, invoice.discount_rate)
    invoice.total_cents = subtotal + invoice.tax_cents - invoice.discount_cents
    invoice.amount_due_cents = max(invoice.total_cents - invoice.amount_paid_cents, 0)
    return invoice


def _save_totals(session: Session, invoice: Invoice) -> Invoice:
    recalculate(invoice, line_items(session, invoice.id))
    invoice.updated_at = utcnow()
    session.add(invoice)
    session.commit()
    session.refresh(invoice)
    return invoice


def _check_rate(name: str, value):
    if value is not None and not 0 <= value <= 100:
        raise InvalidArgument(f"{name} must be between 0 and 100")


def _item(invoice_id: int, data: dict, order: int) -> InvoiceLineItem:
    description = (data.get("description") or "").strip()
    if not description:
        raise ValidationError("line item description is required")
    quantity = float(data.get("quantity", 1))
    if quantity <= 0:
        raise InvalidArgument("quantity must be positive")
    unit_price_cents = to_cents(data.get("unit_price", 0))
    if unit_price_cents < 0:
        raise InvalidArgument("unit price must not be negative")
    return InvoiceLineItem(
        invoice_id=invoice_id,
        description=description,
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        amount_cents=line_amount(quantity, unit_price_cents),
        order=order,
    )


def get_invoice(session: Session, tenant_id: int, invoice_id: int) -> Invoice:
    return load_document(session, INVOICE, invoice_id, tenant_id)


def list_invoices(session: Session, tenant_id: int, status: Optional[str] = None):
    query = select(Invoice).where(Invoice.tenant_id == tenant_id)
    if status:
        if status not in InvoiceStatus.__members__:
            raise InvalidArgument(f"unknown invoice status: {status}")
        query = query.where(Invoice.status == status)
    return session.exec(query.order_by(Invoice.created_at.desc(), Invoice.id.desc())).all()


def create_invoice(session: Session, tenant_id: int, actor: Actor, data: dict) -> Invoice:
    template = None
    if data.get("template_id"):
        template = get_template(session, tenant_id, data["template_id"])
        if template.document_type != INVOICE or not template.is_active:
            raise ValidationError("template is not an active invoice template")
    get_contact(session, tenant_id, data.get("contact_id"))
    get_project(session, tenant_id, data.get("project_id"))
    tax_rate = data.get("tax_rate") if data.get("tax_rate") is not None else (template.default_tax_rate if template else 0.0)
    discount_rate = data.get("discount_rate") or 0.0
    _check_rate("tax_rate", tax_rate)
    _check_rate("discount_rate", discount_rate)
    title = (data.get("title") or (template.name if template else "Invoice")).strip()

    invoice = Invoice(
        tenant_id=tenant_id,
        template_id=template.id if template else None,
        contact_id=data.get("contact_id"),
        project_id=data.get("project_id"),
        contract_id=data.get("contract_id"),
        invoice_number=next_number(session, tenant_id, INVOICE),
        title=title,
        due_date=data.get("due_date"),
        currency=(data.get("currency") or "usd").lower(),
        payment_terms=data.get("payment_terms") or (template.default_terms if template else "Net 30"),
        notes=data.get("notes") if data.get("notes") is not None else (template.default_notes if template else None),
        tax_rate=tax_rate,
        discount_rate=discount_rate,
    )
    if data.get("issue_date"):
        invoice.issue_date = data["issue_date"]
    session.add(invoice)
    session.flush()
    items = [_item(invoice.id, item, i) for i, item in enumerate(data.get("items") or [])]
    for item in items:
        session.add(item)
    recalculate(invoice, items)
    append_event(session, invoice, "created", actor, {"template_id": invoice.template_id, "items": len(items)})
    session.commit()
    session.refresh(invoice)
    logger.info("created invoice id=%s number=%s total=%s", invoice.id, invoice.invoice_number, invoice.total_cents)
    return invoice


_EDITABLE = ("title", "contact_id", "project_id", "due_date", "issue_date", "payment_terms", "notes", "tax_rate", "discount_rate")


def update_invoice(session: Session, invoice: Invoice, data: dict) -> Invoice:
    ensure_editable(invoice)
    if data.get("contact_id") is not None:
        get_contact(session, invoice.tenant_id, data["contact_id"])
    if data.get("project_id") is not None:
        get_project(session, invoice.tenant_id, data["project_id"])
    _check_rate("tax_rate", data.get("tax_rate"))
    _check_rate("discount_rate", data.get("discount_rate"))
    for key in _EDITABLE:
        if data.get(key) is not None:
            setattr(invoice, key, data[key])
    return _save_totals(session, invoice)


def add_item(session: Session, invoice: Invoice, data: dict) -> InvoiceLineItem:
    ensure_editable(invoice)
    item = _item(invoice.id, data, len(line_items(session, invoice.id)))
    session.add(item)
    session.flush()
    _save_totals(session, invoice)
    session.refresh(item)
    return item


def _get_item(session: Session, invoice: Invoice, item_id: int) -> InvoiceLineItem:
    item = session.get(InvoiceLineItem, item_id)
    if not item or item.invoice_id != invoice.id:
        raise NotFound(f"line item {item_id} not found")
    return item


def update_item(session: Session, invoice: Invoice, item_id: int, data: dict) -> InvoiceLineItem:
    ensure_editable(invoice)
    item = _get_item(session, invoice, item_id)
    merged = {
        "description": item.description,
        "quantity": item.quantity,
        "unit_price": str(Decimal(item.unit_price_cents) / 100),
        **{k: v for k, v in data.items() if v is not None},
    }
    fresh = _item(invoice.id, merged, item.order)
    item.description = fresh.description
    item.quantity = fresh.quantity
    item.unit_price_cents = fresh.unit_price_cents
    item.amount_cents = fresh.amount_cents
    session.add(item)
    session.flush()
    _save_totals(session, invoice)
    session.refresh(item)
    return item


def delete_item(session: Session, invoice: Invoice, item_id: int) -> Invoice:
    ensure_editable(invoice)
    session.delete(_get_item(session, invoice, item_id))
    session.flush()
    for i, item in enumerate(line_items(session, invoice.id)):
        item.order = i
        session.add(item)
    return _save_totals(session, invoice)


def _client_email(session: Session, invoice: Invoice) -> str:
    contact = session.get(Contact, invoice.contact_id) if invoice.contact_id else None
    if not contact or not contact.email:
        raise ValidationError("an invoice needs a client with an email address before it can be sent")
    return contact.email


def send_invoice(session: Session, invoice: Invoice, actor: Actor) -> str:
    INVOICE_MACHINE.rule("send", invoice.status)
    if not line_items(session, invoice.id):
        raise ValidationError("an invoice needs at least one line item before it can be sent")
    if invoice.total_cents <= 0:
        raise ValidationError("an invoice total must be positive before it can be sent")
    email = _client_email(session, invoice)
    token = access.issue(session, invoice, commit=False)
    transition(session, invoice, "send", actor, payload={"to": email}, changes={"sent_by": actor.id})
    url = access.public_url(INVOICE, token)
    effects.enqueue_render(session, invoice, "sent")
    effects.enqueue_notify(session, invoice, SENT, email, url)
    return url


def resend_invoice(session: Session, invoice: Invoice, actor: Actor) -> str:
    if invoice.status == "draft" or INVOICE_MACHINE.is_terminal(invoice.status):
        raise InvalidTransition(f"cannot resend an invoice that is {invoice.status}", invoice.status, "resend")
    email = _client_email(session, invoice)
    token = access.issue(session, invoice, commit=False)
    grant = access.current_grant(session, invoice)
    append_event(session, invoice, "resent", actor, {"to": email, "epoch": grant.epoch})
    session.commit()
    session.refresh(invoice)
    url = access.public_url(INVOICE, token)
    effects.enqueue_notify(session, invoice, RESENT, email, url, key=f"notify:invoice:{invoice.id}:resent:{grant.epoch}")
    return url


def cancel_invoice(session: Session, invoice: Invoice, actor: Actor, reason: Optional[str] = None):
    INVOICE_MACHINE.rule("cancel", invoice.status)
    access.revoke_all(session, invoice)
    return transition(session, invoice, "cancel", actor, payload={"reason": reason} if reason else None)


def request_render(session: Session, invoice: Invoice, actor: Actor):
    record_event(session, invoice, "render_requested", actor)
    return effects.enqueue_render(session, invoice, f"manual:{utcnow():%Y%m%d%H%M%S%f}")


def start_payment(session: Session, token: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
    invoice = access.validate(session, token, INVOICE, ip=ip, user_agent=user_agent, record_view=False)
    if INVOICE_MACHINE.is_terminal(invoice.status):
        raise InvalidTransition(f"cannot pay an invoice that is {invoice.status}", invoice.status, "pay")
    return payments.create_payment_intent(session, invoice)
