"""
Shared document operations: templates, numbering, merge context and
section editing for any row that owns a section list.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, update
from sqlmodel import Session, select

from .config import EDIT_HISTORY_LIMIT
from .errors import InvalidArgument, InvalidTransition, NotFound
from .lifecycle import Actor, kind_of, record_event
from .merge_fields import MergeContext
from .models import CONTRACT, DOCUMENT_KINDS, INVOICE, Contact, Contract, Invoice, Project, Template, Tenant
from .sections import EditHistory, SectionEditor, clone_sections, dump_sections, load_sections
from .utils import canonical_json, load_json, utcnow

logger = logging.getLogger(__name__)


# ---------- numbering ----------

def next_number(session: Session, tenant_id: int, kind: str, now: Optional[datetime] = None) -> str:
    """
    ``<prefix>-<YYYY>-<NNNN>``, counting per tenant and year.

    The counter lives on the tenant row and is bumped with a single UPDATE, so
    concurrent creates queue on the row lock and never share a number. The
    sequence widens past four digits instead of wrapping.
    """
    now = now or utcnow()
    if kind == CONTRACT:
        seq_col, year_col, prefix_col = Tenant.contract_seq, Tenant.contract_seq_year, Tenant.contract_number_prefix
    else:
        seq_col, year_col, prefix_col = Tenant.invoice_seq, Tenant.invoice_seq_year, Tenant.invoice_number_prefix
    bumped = session.exec(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values({seq_col: case((year_col == now.year, seq_col + 1), else_=1), year_col: now.year})
    ).rowcount
    if bumped != 1:
        raise NotFound(f"tenant {tenant_id} not found")
    seq, prefix = session.exec(select(seq_col, prefix_col).where(Tenant.id == tenant_id)).one()
    return f"{prefix}-{now.year}-{seq:04d}"


# ---------- lookups ----------

def get_contact(session: Session, tenant_id: int, contact_id: Optional[int]) -> Optional[Contact]:
    if contact_id is None:
        return None
    contact = session.get(Contact, contact_id)
    if not contact or contact.tenant_id != tenant_id:
        raise NotFound(f"contact {contact_id} not found")
    return contact


def get_project(session: Session, tenant_id: int, project_id: Optional[int]) -> Optional[Project]:
    if project_id is None:
        return None
    project = session.get(Project, project_id)
    if not project or project.tenant_id != tenant_id:
        raise NotFound(f"project {project_id} not found")
    return project


def merge_context_for(session: Session, doc, today=None) -> MergeContext:
    kind = kind_of(doc)
    return MergeContext(
        tenant=session.get(Tenant, doc.tenant_id),
        contact=session.get(Contact, doc.contact_id) if doc.contact_id else None,
        project=session.get(Project, doc.project_id) if doc.project_id else None,
        contract=doc if kind == CONTRACT else None,
        invoice=doc if kind == INVOICE else None,
        today=today or utcnow().date(),
    )


# ---------- templates ----------

def get_template(session: Session, tenant_id: int, template_id: int, include_deleted: bool = False) -> Template:
    template = session.get(Template, template_id)
    if not template or template.tenant_id != tenant_id or (template.deleted_at and not include_deleted):
        raise NotFound(f"template {template_id} not found")
    return template


def list_templates(session: Session, tenant_id: int, document_type: Optional[str] = None, include_inactive: bool = False):
    query = select(Template).where(Template.tenant_id == tenant_id, Template.deleted_at.is_(None))
    if document_type:
        query = query.where(Template.document_type == document_type)
    if not include_inactive:
        query = query.where(Template.is_active.is_(True))
    return session.exec(query.order_by(Template.name)).all()


def create_template(session: Session, tenant_id: int, user_id: Optional[int], data: dict) -> Template:
    document_type = data.get("document_type") or CONTRACT
    if document_type not in DOCUMENT_KINDS:
        raise InvalidArgument(f"unknown document type: {document_type}")
    sections = load_sections(data.get("sections") or [])
    template = Template(
        tenant_id=tenant_id,
        created_by=user_id,
        name=data["name"],
        description=data.get("description"),
        document_type=document_type,
        sections_json=canonical_json(dump_sections(sections)),
        clickwrap_text=data.get("clickwrap_text") or "",
        default_contract_type=data.get("default_contract_type") or "fixed_price",
        default_terms=data.get("default_terms") or "Net 30",
        default_notes=data.get("default_notes"),
        default_tax_rate=data.get("default_tax_rate") or 0.0,
    )
    session.add(template)
    session.commit()
    session.refresh(template)
    logger.info("created template id=%s type=%s", template.id, document_type)
    return template


_TEMPLATE_FIELDS = (
    "name", "description", "clickwrap_text", "default_contract_type",
    "default_terms", "default_notes", "default_tax_rate", "is_active",
)


def update_template(session: Session, template: Template, data: dict) -> Template:
    for key in _TEMPLATE_FIELDS:
        if key in data and data[key] is not None:
            setattr(template, key, data[key])
    if data.get("sections") is not None:
        template.sections_json = canonical_json(dump_sections(load_sections(data["sections"])))
        # a wholesale replace invalidates the recorded edits
        template.edit_history_json = "{}"
    template.updated_at = utcnow()
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


def delete_template(session: Session, template: Template) -> str:
    """Hard delete when no document points at the template, otherwise soft delete."""
    referenced = session.exec(select(Contract.id).where(Contract.template_id == template.id)).first() or \
        session.exec(select(Invoice.id).where(Invoice.template_id == template.id)).first()
    if referenced:
        template.is_active = False
        template.deleted_at = utcnow()
        session.add(template)
        session.commit()
        logger.info("soft-deleted template id=%s", template.id)
        return "soft"
    session.delete(template)
    session.commit()
    logger.info("deleted template id=%s", template.id)
    return "hard"


def template_sections(template: Template) -> list:
    return load_sections(load_json(template.sections_json, []))


def clone_template_sections(template: Template) -> list:
    return clone_sections(template_sections(template))


# ---------- section editing ----------

def ensure_editable(owner):
    if isinstance(owner, Contract) and owner.status != "draft":
        raise InvalidTransition(f"cannot edit a contract that is {owner.status}", owner.status, "edit")
    if isinstance(owner, Invoice) and owner.status != "draft":
        raise InvalidTransition(f"cannot edit an invoice that is {owner.status}", owner.status, "edit")


def section_editor(owner) -> SectionEditor:
    history = EditHistory.from_dict(load_json(owner.edit_history_json, {}), limit=EDIT_HISTORY_LIMIT)
    # a contract must keep one section to render; templates may be empty
    min_sections = 1 if isinstance(owner, Contract) else 0
    return SectionEditor(load_sections(load_json(owner.sections_json, [])), history, min_sections=min_sections)


def save_sections(session: Session, owner, editor: SectionEditor):
    owner.sections_json = canonical_json(dump_sections(editor.sections))
    owner.edit_history_json = canonical_json(editor.history.to_dict())
    owner.updated_at = utcnow()
    session.add(owner)
    session.commit()
    session.refresh(owner)


def edit_sections(session: Session, owner, operation: str, *args, actor: Optional[Actor] = None):
    """
    Run one editor operation against ``owner`` (a Template or a draft
    Contract) and persist the result. Returns the operation's return value.
    """
    ensure_editable(owner)
    editor = section_editor(owner)
    result = getattr(editor, operation)(*args)
    save_sections(session, owner, editor)
    if isinstance(owner, Contract) and actor is not None and operation in ("insert_after", "delete", "move", "change_type"):
        record_event(session, owner, "sections_edited", actor, {"operation": operation})
    return result, editor
