from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlmodel import Session

from .. import invoices as service
from ..auth import OperatorContext, resolve_operator
from ..db import get_session
from ..lifecycle import list_events
from ..models import INVOICE
from ..schemas import (
    CancelRequest,
    InvoiceCreate,
    InvoiceUpdate,
    LineItemCreate,
    LineItemUpdate,
    event_out,
    invoice_out,
    line_item_out,
)
from ..storage import get_bytes

router = APIRouter()


def _out(session: Session, invoice) -> dict:
    return invoice_out(invoice, service.line_items(session, invoice.id))


@router.post("", status_code=201)
def create(
    data: InvoiceCreate,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.create_invoice(session, ctx.tenant_id, ctx.actor, data.model_dump())
    return _out(session, invoice)


@router.get("")
def list_all(
    status: Optional[str] = None,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    return [_out(session, i) for i in service.list_invoices(session, ctx.tenant_id, status)]


@router.get("/{invoice_id}")
def get_one(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    return _out(session, service.get_invoice(session, ctx.tenant_id, invoice_id))


@router.patch("/{invoice_id}")
def update(
    invoice_id: int,
    data: InvoiceUpdate,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    return _out(session, service.update_invoice(session, invoice, data.model_dump(exclude_unset=True)))


@router.post("/{invoice_id}/items", status_code=201)
def add_item(
    invoice_id: int,
    data: LineItemCreate,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    item = service.add_item(session, invoice, data.model_dump())
    return {"item": line_item_out(item), "invoice": _out(session, invoice)}


@router.patch("/{invoice_id}/items/{item_id}")
def update_item(
    invoice_id: int,
    item_id: int,
    data: LineItemUpdate,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    item = service.update_item(session, invoice, item_id, data.model_dump(exclude_unset=True))
    return {"item": line_item_out(item), "invoice": _out(session, invoice)}


@router.delete("/{invoice_id}/items/{item_id}")
def delete_item(
    invoice_id: int,
    item_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    return _out(session, service.delete_item(session, invoice, item_id))


@router.post("/{invoice_id}/send")
def send(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    url = service.send_invoice(session, invoice, ctx.actor)
    return {**_out(session, invoice), "public_url": url}


@router.post("/{invoice_id}/resend")
def resend(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    url = service.resend_invoice(session, invoice, ctx.actor)
    return {**_out(session, invoice), "public_url": url}


@router.post("/{invoice_id}/cancel")
def cancel(
    invoice_id: int,
    data: Optional[CancelRequest] = None,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    service.cancel_invoice(session, invoice, ctx.actor, data.reason if data else None)
    return _out(session, invoice)


@router.post("/{invoice_id}/render", status_code=202)
def render(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    job = service.request_render(session, invoice, ctx.actor)
    return {"job_id": job.id, "status": job.status}


@router.get("/{invoice_id}/events")
def events(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    return [event_out(e) for e in list_events(session, INVOICE, invoice.id)]


@router.get("/{invoice_id}/pdf")
def pdf(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    invoice = service.get_invoice(session, ctx.tenant_id, invoice_id)
    if not invoice.artifact_path:
        raise HTTPException(404, "pdf not ready")
    return Response(
        content=get_bytes(invoice.artifact_path),
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{invoice.invoice_number}.pdf"'},
    )
