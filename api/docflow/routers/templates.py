from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from ..auth import OperatorContext, resolve_operator
from ..db import get_session
from ..documents import create_template, delete_template, get_template, list_templates, update_template
from ..merge_fields import available_fields, validate_syntax
from ..schemas import TemplateCreate, TemplateUpdate, template_out
from .sections import build_section_router

router = APIRouter()


@router.post("", status_code=201)
def create(
    data: TemplateCreate,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    return template_out(create_template(session, ctx.tenant_id, ctx.user_id, data.model_dump()))


@router.get("")
def list_all(
    document_type: Optional[str] = None,
    include_inactive: bool = False,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    return [template_out(t) for t in list_templates(session, ctx.tenant_id, document_type, include_inactive)]


@router.get("/merge-fields")
def merge_fields(ctx: OperatorContext = Depends(resolve_operator)):
    return [
        {"key": f.key, "label": f.label, "category": f.category, "type": f.type}
        for f in available_fields()
    ]


@router.post("/merge-fields/validate")
def validate_merge_fields(payload: dict, ctx: OperatorContext = Depends(resolve_operator)):
    errors = validate_syntax(str(payload.get("text") or ""))
    return {"valid": not errors, "errors": errors}


@router.get("/{template_id}")
def get_one(
    template_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    return template_out(get_template(session, ctx.tenant_id, template_id))


@router.put("/{template_id}")
def update(
    template_id: int,
    data: TemplateUpdate,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    template = get_template(session, ctx.tenant_id, template_id)
    return template_out(update_template(session, template, data.model_dump(exclude_unset=True)))


@router.delete("/{template_id}")
def delete(
    template_id: int,
    session: Session = Depends(get_session),
    ctx: OperatorContext = Depends(resolve_operator),
):
    mode = delete_template(session, get_template(session, ctx.tenant_id, template_id))
    return {"ok": True, "deleted": mode}


router.include_router(build_section_router(get_template), prefix="/{owner_id}/sections")
