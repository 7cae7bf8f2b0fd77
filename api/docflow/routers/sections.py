from typing import Callable

from fastapi import APIRouter, Depends
from sqlmodel import Session

from ..auth import OperatorContext, resolve_operator
from ..db import get_session
from ..documents import edit_sections
from ..schemas import SectionInsert, SectionMove, SectionTypeChange, history_out
from ..utils import load_json


def _body(owner, section=None) -> dict:
    body = {"sections": load_json(owner.sections_json, []), "history": history_out(owner)}
    if section is not None:
        body["section"] = section.model_dump(mode="json")
    return body


def build_section_router(load_owner: Callable[[Session, int, int], object]) -> APIRouter:
    """
    Section editing routes for any owner of a section list. Mounted under
    ``/{owner_id}/sections``; ``load_owner(session, tenant_id, owner_id)``
    returns the Template or Contract.
    """
    router = APIRouter()

    def _run(session, ctx, owner_id, operation, *args):
        owner = load_owner(session, ctx.tenant_id, owner_id)
        result, _ = edit_sections(session, owner, operation, *args, actor=ctx.actor)
        return owner, result

    @router.post("")
    def insert_section(
        owner_id: int,
        data: SectionInsert,
        session: Session = Depends(get_session),
        ctx: OperatorContext = Depends(resolve_operator),
    ):
        owner, section = _run(session, ctx, owner_id, "insert_after", data.after_id, data.type)
        return _body(owner, section)

    @router.patch("/{section_id}")
    def update_section(
        owner_id: int,
        section_id: str,
        patch: dict,
        session: Session = Depends(get_session),
        ctx: OperatorContext = Depends(resolve_operator),
    ):
        owner, section = _run(session, ctx, owner_id, "update_content", section_id, patch)
        return _body(owner, section)

    @router.delete("/{section_id}")
    def delete_section(
        owner_id: int,
        section_id: str,
        session: Session = Depends(get_session),
        ctx: OperatorContext = Depends(resolve_operator),
    ):
        owner, _ = _run(session, ctx, owner_id, "delete", section_id)
        return _body(owner)

    @router.post("/{section_id}/move")
    def move_section(
        owner_id: int,
        section_id: str,
        data: SectionMove,
        session: Session = Depends(get_session),
        ctx: OperatorContext = Depends(resolve_operator),
    ):
        owner, section = _run(session, ctx, owner_id, "move", section_id, data.index)
        return _body(owner, section)

    @router.post("/{section_id}/type")
    def change_section_type(
        owner_id: int,
        section_id: str,
        data: SectionTypeChange,
        session: Session = Depends(get_session),
        ctx: OperatorContext = Depends(resolve_operator),
    ):
        owner, section = _run(session, ctx, owner_id, "change_type", section_id, data.type)
        return _body(owner, section)

    @router.post("/undo")
    def undo(
        owner_id: int,
        session: Session = Depends(get_session),
        ctx: OperatorContext = Depends(resolve_operator),
    ):
        owner, changed = _run(session, ctx, owner_id, "undo")
        return {**_body(owner), "changed": changed}

    @router.post("/redo")
    def redo(
        owner_id: int,
        session: Session = Depends(get_session),
        ctx: OperatorContext = Depends(resolve_operator),
    ):
        owner, changed = _run(session, ctx, owner_id, "redo")
        return {**_body(owner), "changed": changed}

    return router
