from fastapi import APIRouter, Depends, Request, Response
from sqlmodel import Session

from .. import access, contracts, invoices
from ..db import get_session
from ..errors import AccessNotFound
from ..models import CONTRACT, INVOICE, Tenant
from ..schemas import DeclineRequest, SignRequest, public_contract_out, public_invoice_out
from ..storage import get_bytes

router = APIRouter()


def _origin(request: Request):
    return (request.client.host if request.client else None), request.headers.get("user-agent")


def _company(session: Session, tenant_id: int) -> str:
    tenant = session.get(Tenant, tenant_id)
    return tenant.name if tenant else ""


def _pdf(doc, filename: str) -> Response:
    if not doc.artifact_path:
        raise AccessNotFound("pdf not ready")
    return Response(
        content=get_bytes(doc.artifact_path),
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}.pdf"'},
    )


# ---------- contracts ----------

@router.get("/contracts/{token}")
def view_contract(token: str, request: Request, session: Session = Depends(get_session)):
    ip, ua = _origin(request)
    contract = access.validate(session, token, CONTRACT, ip=ip, user_agent=ua)
    return public_contract_out(contract, _company(session, contract.tenant_id))


@router.post("/contracts/{token}/sign")
def sign_contract(token: str, payload: SignRequest, request: Request, session: Session = Depends(get_session)):
    ip, ua = _origin(request)
    contract = contracts.sign_contract(session, token, payload.agreed, payload.signer_name, ip=ip, user_agent=ua)
    return public_contract_out(contract, _company(session, contract.tenant_id))


@router.post("/contracts/{token}/decline")
def decline_contract(token: str, request: Request, payload: DeclineRequest = None, session: Session = Depends(get_session)):
    ip, ua = _origin(request)
    contract = contracts.decline_contract(session, token, payload.reason if payload else None, ip=ip, user_agent=ua)
    return public_contract_out(contract, _company(session, contract.tenant_id))


@router.get("/contracts/{token}/pdf")
def contract_pdf(token: str, request: Request, session: Session = Depends(get_session)):
    ip, ua = _origin(request)
    contract = access.validate(session, token, CONTRACT, ip=ip, user_agent=ua, record_view=False)
    return _pdf(contract, contract.contract_number)


# ---------- invoices ----------

@router.get("/invoices/{token}")
def view_invoice(token: str, request: Request, session: Session = Depends(get_session)):
    ip, ua = _origin(request)
    invoice = access.validate(session, token, INVOICE, ip=ip, user_agent=ua)
    items = invoices.line_items(session, invoice.id)
    return public_invoice_out(invoice, items, _company(session, invoice.tenant_id))


@router.post("/invoices/{token}/payment-intent")
def create_payment_intent(token: str, request: Request, session: Session = Depends(get_session)):
    ip, ua = _origin(request)
    return invoices.start_payment(session, token, ip=ip, user_agent=ua)


@router.get("/invoices/{token}/pdf")
def invoice_pdf(token: str, request: Request, session: Session = Depends(get_session)):
    ip, ua = _origin(request)
    invoice = access.validate(session, token, INVOICE, ip=ip, user_agent=ua, record_view=False)
    return _pdf(invoice, invoice.invoice_number)
