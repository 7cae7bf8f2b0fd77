from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlmodel import Session

from .. import contracts as service
from ..auth import OperatorContext, resolve_operator
from ..db import get_session
from ..lifecycle import list_events
from ..models import CONTRACT
from ..schemas import CancelRequest, ContractCreate, ContractUpdate, contract_out, event_out
from ..storage import get_bytes
from .sections import build_section_router

router = APIRouter()


@router.post("", status_code=201)
def create(
    data: ContractCreate,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    return contract_out(service.create_contract(session, ctx.tenant_id, ctx.actor, data.model_dump()))


@router.get("")
def list_all(
    status: Optional[str] = None,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    return [contract_out(c) for c in service.list_contracts(session, ctx.tenant_id, status)]


@router.get("/{contract_id}")
def get_one(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    return contract_out(service.get_contract(session, ctx.tenant_id, contract_id))


@router.patch("/{contract_id}")
def update(
    contract_id: int,
    data: ContractUpdate,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    contract = service.get_contract(session, ctx.tenant_id, contract_id)
    return contract_out(service.update_contract(session, contract, data.model_dump(exclude_unset=True)))


@router.get("/{contract_id}/preview")
def preview(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    contract = service.get_contract(session, ctx.tenant_id, contract_id)
    rendered, resolution = service.preview(session, contract)
    return {
        "sections": [s.model_dump(mode="json") for s in rendered],
        "values": resolution.values,
        "warnings": resolution.warnings,
    }


@router.post("/{contract_id}/send")
def send(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    contract = service.get_contract(session, ctx.tenant_id, contract_id)
    url = service.send_contract(session, contract, ctx.actor)
    return {**contract_out(contract), "public_url": url}


@router.post("/{contract_id}/resend")
def resend(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    contract = service.get_contract(session, ctx.tenant_id, contract_id)
    url = service.resend_contract(session, contract, ctx.actor)
    return {**contract_out(contract), "public_url": url}


@router.post("/{contract_id}/cancel")
def cancel(
    contract_id: int,
    data: Optional[CancelRequest] = None,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    contract = service.get_contract(session, ctx.tenant_id, contract_id)
    service.cancel_contract(session, contract, ctx.actor, data.reason if data else None)
    return contract_out(contract)


@router.post("/{contract_id}/render", status_code=202)
def render(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    contract = service.get_contract(session, ctx.tenant_id, contract_id)
    job = service.request_render(session, contract, ctx.actor)
    return {"job_id": job.id, "status": job.status}


@router.get("/{contract_id}/events")
def events(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    contract = service.get_contract(session, ctx.tenant_id, contract_id)
    return [event_out(e) for e in list_events(session, CONTRACT, contract.id)]


@router.get("/{contract_id}/pdf")
def pdf(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    contract = service.get_contract(session, ctx.tenant_id, contract_id)
    if not contract.artifact_path:
        raise HTTPException(404, "pdf not ready")
    return Response(
        content=get_bytes(contract.artifact_path),
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{contract.contract_number}.pdf"'},
    )


router.include_router(build_section_router(service.get_contract), prefix="/{owner_id}/sections")
