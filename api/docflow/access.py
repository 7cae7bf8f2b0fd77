"""
Public access gateway.

A counterpart reaches exactly one document through an opaque token. Only the
SHA-256 of the token is stored, so lookup is a single indexed equality match
on a fixed-length digest. Each issue starts a new epoch; issuing again revokes
every earlier grant for the document in the same transaction.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .config import PUBLIC_BASE_URL, TOKEN_TTL_DAYS
from .errors import AccessExpired, AccessNotFound, AccessRevoked
from .lifecycle import (
    Actor,
    ActorType,
    ContractStatus,
    expire_contract_if_due,
    kind_of,
    load_document,
    lock_document,
    record_event,
    revoke_all,
    try_transition,
)
from .models import AccessGrant, Contract, Tenant
from .utils import sha256_bytes, utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32  # 256 bits


def hash_token(token: str) -> str:
    return sha256_bytes(token.encode())


def public_url(kind: str, token: str) -> str:
    return f"{PUBLIC_BASE_URL}/public/{kind}s/{token}"


def token_ttl(session: Session, tenant_id: int) -> timedelta:
    tenant = session.get(Tenant, tenant_id)
    days = tenant.token_ttl_days if tenant and tenant.token_ttl_days else TOKEN_TTL_DAYS
    return timedelta(days=days)


def issue(session: Session, doc, now: Optional[datetime] = None, commit: bool = True) -> str:
    """
    Create a fresh token for ``doc`` and revoke any earlier one.

    Returns the raw token; only its digest is persisted.
    """
    kind = kind_of(doc)
    now = now or utcnow()
    # concurrent issues queue here, so each sees the epoch the other wrote
    lock_document(session, doc)
    previous = session.exec(
        select(AccessGrant)
        .where(AccessGrant.document_kind == kind, AccessGrant.document_id == doc.id)
        .order_by(AccessGrant.epoch.desc())
    ).first()
    revoke_all(session, doc, now)
    token = secrets.token_urlsafe(TOKEN_BYTES)
    expires_at = now + token_ttl(session, doc.tenant_id)
    grant = AccessGrant(
        document_kind=kind,
        document_id=doc.id,
        token_hash=hash_token(token),
        epoch=(previous.epoch + 1) if previous else 1,
        issued_at=now,
        expires_at=expires_at,
    )
    session.add(grant)
    doc.token_expires_at = expires_at
    session.add(doc)
    if commit:
        session.commit()
        session.refresh(doc)
    else:
        session.flush()
    logger.info("issued access token kind=%s id=%s epoch=%s", kind, doc.id, grant.epoch)
    return token


def _find_grant(session: Session, token: str) -> AccessGrant:
    if not token or len(token) > 256:
        raise AccessNotFound("unknown token")
    try:
        grant = session.exec(
            select(AccessGrant).where(AccessGrant.token_hash == hash_token(token))
        ).first()
    except SQLAlchemyError:
        # fail closed
        logger.exception("access token lookup failed")
        session.rollback()
        raise AccessNotFound("lookup failed")
    if grant is None:
        raise AccessNotFound("unknown token")
    return grant


def validate(
    session: Session,
    token: str,
    kind: str,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
    record_view: bool = True,
):
    """
    Resolve a public token to its document.

    The first successful validation of a grant moves a ``sent`` document to
    ``viewed``; later ones only add a repeat ``viewed`` Event. An expired
    token on a contract still awaiting signature expires the contract and
    revokes its links.
    """
    now = now or utcnow()
    grant = _find_grant(session, token)
    if grant.document_kind != kind:
        raise AccessNotFound("token is for another document type")
    if grant.revoked_at is not None:
        raise AccessRevoked("token was replaced")
    doc = load_document(session, grant.document_kind, grant.document_id)
    if now > grant.expires_at:
        if isinstance(doc, Contract):
            expire_contract_if_due(session, doc, now)
        raise AccessExpired("token expired")
    if isinstance(doc, Contract) and doc.status == ContractStatus.expired.value:
        raise AccessExpired("contract expired")

    actor = Actor(ActorType.counterpart, ip=ip, user_agent=user_agent)
    first_open = session.exec(
        update(AccessGrant)
        .where(AccessGrant.id == grant.id, AccessGrant.opened_at.is_(None))
        .values(opened_at=now, ip_first=ip, ua_first=user_agent)
    ).rowcount == 1
    if first_open:
        session.commit()
        event = try_transition(session, doc, "view", actor, payload={"epoch": grant.epoch}, now=now)
        if event is None:
            record_event(session, doc, "viewed", actor, {"epoch": grant.epoch, "first_in_epoch": True}, now=now)
    elif record_view:
        record_event(session, doc, "viewed", actor, {"epoch": grant.epoch, "repeat": True}, now=now)
    session.refresh(doc)
    return doc


def current_grant(session: Session, doc) -> Optional[AccessGrant]:
    return session.exec(
        select(AccessGrant)
        .where(
            AccessGrant.document_kind == kind_of(doc),
            AccessGrant.document_id == doc.id,
            AccessGrant.revoked_at.is_(None),
        )
        .order_by(AccessGrant.epoch.desc())
    ).first()

