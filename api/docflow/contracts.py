import logging
from datetime import date
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session, select

from . import access, effects
from .documents import (
    clone_template_sections,
    ensure_editable,
    get_contact,
    get_project,
    get_template,
    merge_context_for,
    next_number,
)
from .errors import InvalidArgument, InvalidTransition, ValidationError
from .lifecycle import (
    CONTRACT_MACHINE,
    Actor,
    ActorType,
    ContractStatus,
    append_event,
    load_document,
    record_event,
    transition,
)
from .merge_fields import resolve_and_render
from .models import CONTRACT, Contact, Contract, User
from .notifications import DECLINED_NOTICE, RESENT, SENT, SIGNED_RECEIPT
from .sections import dump_sections, load_sections
from .utils import canonical_json, load_json, utcnow

logger = logging.getLogger(__name__)

PRICING_MONEY = dict(ge=0, max_digits=12, decimal_places=2)


class FixedPricing(BaseModel):
    amount: Decimal = Field(**PRICING_MONEY)
    currency: str = "usd"


class Milestone(BaseModel):
    name: str = Field(min_length=1)
    amount: Decimal = Field(**PRICING_MONEY)
    due_date: Optional[date] = None


class MilestonePricing(BaseModel):
    milestones: List[Milestone] = Field(min_length=1)
    currency: str = "usd"


class SubscriptionPricing(BaseModel):
    amount: Decimal = Field(**PRICING_MONEY)
    interval: Literal["week", "month", "quarter", "year"] = "month"
    period: int = Field(default=12, ge=1, le=120)
    currency: str = "usd"


PRICING_MODELS = {
    "fixed_price": FixedPricing,
    "milestone": MilestonePricing,
    "subscription": SubscriptionPricing,
}
CONTRACT_TYPES = tuple(PRICING_MODELS)


def _check_type(contract_type: str):
    if contract_type not in CONTRACT_TYPES:
        raise InvalidArgument(f"unknown contract type: {contract_type}")


def check_pricing(contract_type: str, pricing) -> dict:
    """Validate a pricing block against its contract type and return it normalized."""
    if not pricing:
        return {}
    try:
        parsed = PRICING_MODELS[contract_type].model_validate(pricing)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"invalid {contract_type} pricing",
            {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        )
    return parsed.model_dump(mode="json", exclude_none=True)


def get_contract(session: Session, tenant_id: int, contract_id: int) -> Contract:
    return load_document(session, CONTRACT, contract_id, tenant_id)


def list_contracts(session: Session, tenant_id: int, status: Optional[str] = None):
    query = select(Contract).where(Contract.tenant_id == tenant_id)
    if status:
        if status not in ContractStatus.__members__:
            raise InvalidArgument(f"unknown contract status: {status}")
        query = query.where(Contract.status == status)
    return session.exec(query.order_by(Contract.created_at.desc(), Contract.id.desc())).all()


def create_contract(session: Session, tenant_id: int, actor: Actor, data: dict) -> Contract:
    """
    Create a draft contract, cloning the template body when one is given.

    The clone owns fresh section ids; later template edits do not reach it.
    """
    template = None
    sections = []
    if data.get("template_id"):
        template = get_template(session, tenant_id, data["template_id"])
        if template.document_type != CONTRACT or not template.is_active:
            raise ValidationError("template is not an active contract template")
        sections = clone_template_sections(template)
    elif data.get("sections"):
        sections = load_sections(data["sections"])
    get_contact(session, tenant_id, data.get("contact_id"))
    get_project(session, tenant_id, data.get("project_id"))
    contract_type = data.get("contract_type") or (template.default_contract_type if template else "fixed_price")
    _check_type(contract_type)
    pricing = check_pricing(contract_type, data.get("pricing"))
    title = (data.get("title") or (template.name if template else "")).strip()
    if not title:
        raise ValidationError("title is required")

    contract = Contract(
        tenant_id=tenant_id,
        template_id=template.id if template else None,
        contact_id=data.get("contact_id"),
        project_id=data.get("project_id"),
        title=title,
        contract_number=next_number(session, tenant_id, CONTRACT),
        contract_type=contract_type,
        pricing_json=canonical_json(pricing),
        sections_json=canonical_json(dump_sections(sections)),
        clickwrap_text=data.get("clickwrap_text") or (template.clickwrap_text if template else ""),
        notes=data.get("notes"),
    )
    session.add(contract)
    session.flush()
    append_event(session, contract, "created", actor, {"template_id": contract.template_id})
    session.commit()
    session.refresh(contract)
    logger.info("created contract id=%s number=%s template=%s", contract.id, contract.contract_number, contract.template_id)
    return contract


_EDITABLE = ("title", "contact_id", "project_id", "contract_type", "clickwrap_text", "notes")


def update_contract(session: Session, contract: Contract, data: dict) -> Contract:
    ensure_editable(contract)
    if data.get("contact_id") is not None:
        get_contact(session, contract.tenant_id, data["contact_id"])
    if data.get("project_id") is not None:
        get_project(session, contract.tenant_id, data["project_id"])
    contract_type = data.get("contract_type") or contract.contract_type
    _check_type(contract_type)
    # a type change re-checks the stored pricing against the new type
    pricing = data["pricing"] if data.get("pricing") is not None else load_json(contract.pricing_json, {})
    pricing_json = canonical_json(check_pricing(contract_type, pricing))
    for key in _EDITABLE:
        if data.get(key) is not None:
            setattr(contract, key, data[key])
    contract.pricing_json = pricing_json
    contract.updated_at = utcnow()
    session.add(contract)
    session.commit()
    session.refresh(contract)
    return contract


def preview(session: Session, contract: Contract):
    """Rendered sections and merge warnings for the current draft; nothing is stored."""
    sections = load_sections(load_json(contract.sections_json, []))
    return resolve_and_render(sections, merge_context_for(session, contract))


def _client_email(session: Session, contract: Contract) -> str:
    contact = session.get(Contact, contract.contact_id) if contract.contact_id else None
    if not contact or not contact.email:
        raise ValidationError("a contract needs a client with an email address before it can be sent")
    return contact.email


def _operator_email(session: Session, contract: Contract) -> Optional[str]:
    user = session.get(User, contract.sent_by) if contract.sent_by else None
    return user.email if user else None


def send_contract(session: Session, contract: Contract, actor: Actor) -> str:
    """
    Send a draft: snapshot the rendered body, issue the public token and move
    to ``sent`` in one transaction, then queue the PDF and the email.

    Returns the public URL.
    """
    CONTRACT_MACHINE.rule("send", contract.status)
    sections = load_sections(load_json(contract.sections_json, []))
    if not sections:
        raise ValidationError("a contract needs at least one section before it can be sent")
    email = _client_email(session, contract)

    rendered, resolution = resolve_and_render(sections, merge_context_for(session, contract))
    token = access.issue(session, contract, commit=False)
    transition(
        session, contract, "send", actor,
        payload={"to": email, "warnings": resolution.warnings},
        changes={
            "rendered_sections_json": canonical_json(dump_sections(rendered)),
            "merge_values_json": canonical_json(resolution.values),
            "sent_by": actor.id,
        },
    )
    url = access.public_url(CONTRACT, token)
    effects.enqueue_render(session, contract, "sent")
    effects.enqueue_notify(session, contract, SENT, email, url)
    return url


def resend_contract(session: Session, contract: Contract, actor: Actor) -> str:
    """Issue a new link, which revokes the old one, and email it again."""
    if contract.status not in ("sent", "viewed"):
        raise InvalidTransition(f"cannot resend a contract that is {contract.status}", contract.status, "resend")
    email = _client_email(session, contract)
    token = access.issue(session, contract, commit=False)
    grant = access.current_grant(session, contract)
    append_event(session, contract, "resent", actor, {"to": email, "epoch": grant.epoch})
    session.commit()
    session.refresh(contract)
    url = access.public_url(CONTRACT, token)
    effects.enqueue_notify(session, contract, RESENT, email, url, key=f"notify:contract:{contract.id}:resent:{grant.epoch}")
    return url


def cancel_contract(session: Session, contract: Contract, actor: Actor, reason: Optional[str] = None):
    CONTRACT_MACHINE.rule("cancel", contract.status)
    access.revoke_all(session, contract)
    return transition(session, contract, "cancel", actor, payload={"reason": reason} if reason else None)


def sign_contract(
    session: Session,
    token: str,
    agreed: bool,
    signer_name: str,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Contract:
    contract = access.validate(session, token, CONTRACT, ip=ip, user_agent=user_agent, record_view=False)
    if not agreed:
        raise ValidationError("you must agree to the terms to sign")
    name = (signer_name or "").strip()
    if not name:
        raise ValidationError("signer name is required")
    actor = Actor(ActorType.counterpart, ip=ip, user_agent=user_agent)
    transition(
        session, contract, "sign", actor,
        payload={"signer_name": name, "agreement": contract.clickwrap_text},
        changes={"client_signed_by": name, "client_ip_address": ip, "client_user_agent": user_agent},
    )
    effects.enqueue_render(session, contract, "signed")
    contact = session.get(Contact, contract.contact_id) if contract.contact_id else None
    if contact and contact.email:
        effects.enqueue_notify(session, contract, SIGNED_RECEIPT, contact.email, key=f"notify:contract:{contract.id}:signed:client")
    operator = _operator_email(session, contract)
    if operator:
        effects.enqueue_notify(session, contract, SIGNED_RECEIPT, operator, key=f"notify:contract:{contract.id}:signed:operator")
    return contract


def decline_contract(
    session: Session,
    token: str,
    reason: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Contract:
    contract = access.validate(session, token, CONTRACT, ip=ip, user_agent=user_agent, record_view=False)
    actor = Actor(ActorType.counterpart, ip=ip, user_agent=user_agent)
    transition(session, contract, "decline", actor, payload={"reason": reason} if reason else None)
    operator = _operator_email(session, contract)
    if operator:
        effects.enqueue_notify(session, contract, DECLINED_NOTICE, operator)
    return contract


def request_render(session: Session, contract: Contract, actor: Actor):
    record_event(session, contract, "render_requested", actor)
    return effects.enqueue_render(session, contract, f"manual:{utcnow():%Y%m%d%H%M%S%f}")
