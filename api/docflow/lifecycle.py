"""
Lifecycle state machines for contracts and invoices.

Each document type has a closed status enum and an explicit transition table
(action -> allowed source statuses -> target status). Tables are checked when
the machine is built, so a typo in a status is an import-time error.

``transition()`` is the only code path that changes ``status`` or the
lifecycle timestamps. It performs a version-checked UPDATE and appends exactly
one Event in the same database transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Type

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import InvalidTransition, NotFound, StaleDocument
from .models import CONTRACT, INVOICE, AccessGrant, Contract, Event, Invoice
from .utils import canonical_json, sha256_bytes, utcnow

logger = logging.getLogger(__name__)


class ContractStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    viewed = "viewed"
    signed = "signed"
    declined = "declined"
    expired = "expired"
    cancelled = "cancelled"


class InvoiceStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    viewed = "viewed"
    partially_paid = "partially_paid"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


class ActorType(str, Enum):
    operator = "operator"
    counterpart = "counterpart"
    system = "system"


@dataclass(frozen=True)
class Actor:
    type: ActorType
    id: Optional[int] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


SYSTEM = Actor(ActorType.system)


@dataclass(frozen=True)
class Rule:
    sources: FrozenSet[Enum]
    target: Enum
    event_type: str
    actors: FrozenSet[ActorType]
    timestamp: Optional[str] = None


class StateMachine:
    def __init__(self, kind: str, states: Type[Enum], terminal: Iterable, rules: Dict[str, Rule]):
        self.kind = kind
        self.states = states
        self.terminal = frozenset(terminal)
        self.rules = rules
        for action, rule in rules.items():
            for status in set(rule.sources) | {rule.target} | self.terminal:
                if not isinstance(status, states):
                    raise ValueError(f"{kind}.{action}: {status!r} is not a {states.__name__}")
            if self.terminal & set(rule.sources):
                raise ValueError(f"{kind}.{action}: transitions out of a terminal status")

    def status(self, value) -> Enum:
        return self.states(value)

    def is_terminal(self, value) -> bool:
        return self.status(value) in self.terminal

    def rule(self, action: str, current) -> Rule:
        rule = self.rules.get(action)
        current = self.status(current)
        if rule is None:
            raise InvalidTransition(f"unknown {self.kind} action: {action}", current.value, action)
        if current not in rule.sources:
            raise InvalidTransition(
                f"cannot {action} a {self.kind} that is {current.value}", current.value, action
            )
        return rule

    def allowed_actions(self, current) -> list:
        current = self.status(current)
        return [action for action, rule in self.rules.items() if current in rule.sources]


C = ContractStatus
_OP = frozenset({ActorType.operator})
_CP = frozenset({ActorType.counterpart})
_SYS = frozenset({ActorType.system})

CONTRACT_MACHINE = StateMachine(
    CONTRACT,
    ContractStatus,
    terminal=[C.signed, C.declined, C.expired, C.cancelled],
    rules={
        "send": Rule(frozenset({C.draft}), C.sent, "sent", _OP, "sent_at"),
        "view": Rule(frozenset({C.sent}), C.viewed, "viewed", _CP, "viewed_at"),
        "sign": Rule(frozenset({C.viewed}), C.signed, "signed", _CP, "signed_at"),
        "decline": Rule(frozenset({C.sent, C.viewed}), C.declined, "declined", _CP, "declined_at"),
        "expire": Rule(frozenset({C.sent, C.viewed}), C.expired, "expired", _SYS, "expired_at"),
        "cancel": Rule(frozenset({C.draft, C.sent, C.viewed}), C.cancelled, "cancelled", _OP, "cancelled_at"),
    },
)

IS = InvoiceStatus
_PAYABLE = frozenset({IS.draft, IS.sent, IS.viewed, IS.partially_paid, IS.overdue})

INVOICE_MACHINE = StateMachine(
    INVOICE,
    InvoiceStatus,
    terminal=[IS.paid, IS.cancelled],
    rules={
        "send": Rule(frozenset({IS.draft}), IS.sent, "sent", _OP, "sent_at"),
        "view": Rule(frozenset({IS.sent}), IS.viewed, "viewed", _CP, "viewed_at"),
        "record_partial_payment": Rule(_PAYABLE, IS.partially_paid, "payment_succeeded", _SYS),
        "record_full_payment": Rule(_PAYABLE, IS.paid, "payment_succeeded", _SYS, "paid_at"),
        "mark_overdue": Rule(frozenset({IS.sent, IS.viewed, IS.partially_paid}), IS.overdue, "overdue", _SYS, "overdue_at"),
        "cancel": Rule(_PAYABLE, IS.cancelled, "cancelled", _OP, "cancelled_at"),
    },
)

MACHINES = {CONTRACT: CONTRACT_MACHINE, INVOICE: INVOICE_MACHINE}
MODELS = {CONTRACT: Contract, INVOICE: Invoice}


def kind_of(doc) -> str:
    if isinstance(doc, Contract):
        return CONTRACT
    if isinstance(doc, Invoice):
        return INVOICE
    raise TypeError(f"not a document: {type(doc).__name__}")


def machine_for(doc) -> StateMachine:
    return MACHINES[kind_of(doc)]


def load_document(session: Session, kind: str, document_id: int, tenant_id: Optional[int] = None):
    model = MODELS.get(kind)
    doc = session.get(model, document_id) if model else None
    if not doc or (tenant_id is not None and doc.tenant_id != tenant_id):
        raise NotFound(f"{kind} {document_id} not found")
    return doc


def lock_document(session: Session, doc):
    """
    Take the document's row lock for the rest of the transaction.

    Writers that touch per-document sequences (the event chain, grant epochs)
    call this first so they queue behind each other. SQLite has no row locks
    and serializes writers on its own.
    """
    model = MODELS[kind_of(doc)]
    session.exec(select(model.id).where(model.id == doc.id).with_for_update()).first()


def revoke_all(session: Session, doc, now: Optional[datetime] = None):
    now = now or utcnow()
    session.exec(
        update(AccessGrant)
        .where(
            AccessGrant.document_kind == kind_of(doc),
            AccessGrant.document_id == doc.id,
            AccessGrant.revoked_at.is_(None),
        )
        .values(revoked_at=now)
    )


# ---------- audit events ----------

def _last_hash(session: Session, kind: str, document_id: int) -> str:
    last = session.exec(
        select(Event)
        .where(Event.document_kind == kind, Event.document_id == document_id)
        .order_by(Event.id.desc())
    ).first()
    return last.hash if last and last.hash else "0" * 64


def append_event(
    session: Session,
    doc,
    event_type: str,
    actor: Actor = SYSTEM,
    payload: Optional[dict] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    """
    Add an audit Event to the session. The caller owns the commit.

    The chain head is read under the document's row lock. A writer that still
    loses the race fails on the unique (document, prev_hash) constraint at
    commit instead of forking the chain.
    """
    kind = kind_of(doc)
    now = now or utcnow()
    from_status = from_status or doc.status
    to_status = to_status or from_status
    lock_document(session, doc)
    prev_hash = _last_hash(session, kind, doc.id)
    record = {
        "document": f"{kind}:{doc.id}",
        "type": event_type,
        "from": from_status,
        "to": to_status,
        "actor": actor.type.value,
        "actor_id": actor.id,
        "payload": payload or {},
        "at": now,
    }
    event = Event(
        tenant_id=doc.tenant_id,
        document_kind=kind,
        document_id=doc.id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        payload_json=canonical_json(payload or {}),
        actor_type=actor.type.value,
        actor_id=actor.id,
        ip=actor.ip,
        ua=actor.user_agent,
        created_at=now,
        prev_hash=prev_hash,
    )
    event.hash = sha256_bytes((prev_hash + canonical_json(record)).encode())
    session.add(event)
    return event


def record_event(session: Session, doc, event_type: str, actor: Actor = SYSTEM, payload: Optional[dict] = None, now=None) -> Event:
    """
    Log a notable action that does not change status.

    Commits on its own; if another writer took the chain head first the
    event is rebuilt once on top of the new head.
    """
    for attempt in range(2):
        event = append_event(session, doc, event_type, actor, payload, now=now)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if attempt:
                raise
            logger.info("event chain moved kind=%s id=%s, retrying %s", kind_of(doc), doc.id, event_type)
            continue
        session.refresh(event)
        return event


def list_events(session: Session, kind: str, document_id: int) -> list:
    return session.exec(
        select(Event)
        .where(Event.document_kind == kind, Event.document_id == document_id)
        .order_by(Event.id.desc())
    ).all()


def verify_chain(events) -> bool:
    """Check oldest-first events link by prev_hash."""
    previous = "0" * 64
    for event in events:
        if event.prev_hash != previous:
            return False
        previous = event.hash
    return True


# ---------- transitions ----------

def transition(
    session: Session,
    doc,
    action: str,
    actor: Actor,
    payload: Optional[dict] = None,
    changes: Optional[dict] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Event:
    """
    Apply ``action`` to ``doc``.

    ``changes`` are extra column values written in the same UPDATE (signer
    name, balances). With ``commit=False`` the caller commits, which lets the
    payment settlement add its dedup row to the same transaction.

    Raises InvalidTransition (no mutation) or StaleDocument when another
    writer changed the document first.
    """
    machine = machine_for(doc)
    kind = machine.kind
    model = MODELS[kind]
    now = now or utcnow()
    old_status = machine.status(doc.status)
    rule = machine.rule(action, old_status)
    if actor.type not in rule.actors:
        raise InvalidTransition(
            f"{actor.type.value} may not {action} a {kind}", old_status.value, action
        )

    values = dict(changes or {})
    values.update(status=rule.target.value, version=doc.version + 1, updated_at=now)
    if rule.timestamp:
        values[rule.timestamp] = now
    result = session.exec(
        update(model)
        .where(model.id == doc.id, model.version == doc.version, model.status == old_status.value)
        .values(**values)
    )
    if result.rowcount != 1:
        session.rollback()
        session.refresh(doc)
        raise StaleDocument(f"{kind} {doc.id} changed concurrently", doc.status, action)

    event = append_event(
        session,
        doc,
        rule.event_type,
        actor,
        payload,
        from_status=old_status.value,
        to_status=rule.target.value,
        now=now,
    )
    if commit:
        session.commit()
        session.refresh(doc)
        session.refresh(event)
    else:
        session.flush()
    logger.info(
        "transition kind=%s id=%s action=%s %s->%s actor=%s",
        kind, doc.id, action, old_status.value, rule.target.value, actor.type.value,
    )
    return event


def try_transition(session: Session, doc, action: str, actor: Actor, **kwargs) -> Optional[Event]:
    """
    Transition if the action is still legal after re-reading on a lost race.

    Used for idempotent system/counterpart actions (first view, expiry) where
    another worker may already have done the job.
    """
    for _ in range(2):
        if action not in machine_for(doc).allowed_actions(doc.status):
            return None
        try:
            return transition(session, doc, action, actor, **kwargs)
        except StaleDocument:
            continue
    return None


# ---------- time-based sweeps ----------

def expire_contract_if_due(session: Session, contract: Contract, now: Optional[datetime] = None) -> Optional[Event]:
    """Expire an unsigned contract whose link has run out and revoke its links with it."""
    now = now or utcnow()
    if contract.token_expires_at is None or now <= contract.token_expires_at:
        return None
    event = try_transition(
        session, contract, "expire", SYSTEM,
        payload={"token_expires_at": contract.token_expires_at}, now=now, commit=False,
    )
    if event is not None:
        revoke_all(session, contract, now)
        session.commit()
        session.refresh(contract)
    return event


def expire_stale_contracts(session: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    candidates = session.exec(
        select(Contract).where(
            Contract.status.in_([C.sent.value, C.viewed.value]),
            Contract.token_expires_at.is_not(None),
            Contract.token_expires_at < now,
        )
    ).all()
    return sum(1 for contract in candidates if expire_contract_if_due(session, contract, now))


def mark_overdue_invoices(session: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    candidates = session.exec(
        select(Invoice).where(
            Invoice.status.in_([IS.sent.value, IS.viewed.value, IS.partially_paid.value]),
            Invoice.due_date.is_not(None),
            Invoice.due_date < now.date(),
        )
    ).all()
    count = 0
    for invoice in candidates:
        if try_transition(session, invoice, "mark_overdue", SYSTEM, payload={"due_date": invoice.due_date}, now=now):
            count += 1
    return count
