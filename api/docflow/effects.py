"""
Async effects pipeline.

Side effects of transitions (render the PDF, email the counterpart, apply a
payment result) are stored as ``EffectJob`` rows after the transition has
committed, then handed to a Celery worker. The worker drains one document's
jobs in enqueue order; a job that fails with ``TransientIOFailure`` is retried
with exponential backoff and blocks the jobs behind it until it either
succeeds or is dead-lettered with a ``<kind>_failed`` Event.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import JOB_BACKOFF_SECONDS, JOB_LEASE_SECONDS, JOB_MAX_ATTEMPTS, WORKER_QUEUE
from .documents import merge_context_for
from .errors import DocflowError, NotFound, PermanentFailure, StaleDocument, TransientIOFailure
from .lifecycle import (
    SYSTEM,
    append_event,
    expire_stale_contracts,
    kind_of,
    load_document,
    machine_for,
    mark_overdue_invoices,
    transition,
)
from .merge_fields import resolve_and_render
from .models import CONTRACT, Contact, EffectJob, Event, InvoiceLineItem, Payment, ProcessedGatewayEvent, Tenant
from .notifications import PAYMENT_RECEIPT, SIGNED_RECEIPT, build_message
from .payments import GatewayResult
from .rendering import append_certificate, render_contract_pdf, render_invoice_pdf
from .sections import load_sections
from .utils import canonical_json, load_json, sha256_bytes, utcnow
from . import email, storage

logger = logging.getLogger(__name__)

RENDER = "render"
NOTIFY = "notify"
SETTLE = "settle"
JOB_KINDS = (RENDER, NOTIFY, SETTLE)

PENDING = "pending"
RUNNING = "running"
DONE = "done"
DEAD = "dead"


# ---------- enqueue ----------

def dispatch(document_kind: str, document_id: int, countdown: Optional[int] = None):
    """Wake a worker for this document. Lost dispatches are picked up by the sweep."""
    from .tasks import run_document_jobs_task

    try:
        run_document_jobs_task.apply_async(args=[document_kind, document_id], countdown=countdown, queue=WORKER_QUEUE)
    except (BrokerError, OSError) as exc:
        logger.warning("dispatch failed kind=%s id=%s: %s", document_kind, document_id, exc)


def enqueue(
    session: Session,
    kind: str,
    document_kind: str,
    document_id: int,
    tenant_id: int,
    idempotency_key: str,
    payload: Optional[dict] = None,
) -> EffectJob:
    """
    Store a job and dispatch it. Enqueueing the same key twice returns the
    existing job.
    """
    if kind not in JOB_KINDS:
        raise ValueError(f"unknown job kind: {kind}")
    existing = session.exec(select(EffectJob).where(EffectJob.idempotency_key == idempotency_key)).first()
    if existing:
        logger.info("job %s already queued as %s", idempotency_key, existing.id)
        return existing
    job = EffectJob(
        tenant_id=tenant_id,
        kind=kind,
        document_kind=document_kind,
        document_id=document_id,
        payload_json=canonical_json(payload or {}),
        idempotency_key=idempotency_key,
        max_attempts=JOB_MAX_ATTEMPTS,
    )
    session.add(job)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return session.exec(select(EffectJob).where(EffectJob.idempotency_key == idempotency_key)).one()
    session.refresh(job)
    logger.info("queued job=%s kind=%s doc=%s:%s", job.id, kind, document_kind, document_id)
    dispatch(document_kind, document_id)
    return job


def enqueue_render(session: Session, doc, reason: str) -> EffectJob:
    kind = kind_of(doc)
    return enqueue(
        session, RENDER, kind, doc.id, doc.tenant_id,
        f"render:{kind}:{doc.id}:v{doc.version}:{reason}",
        {"reason": reason},
    )


def enqueue_notify(session: Session, doc, template: str, to: str, url: Optional[str] = None, key: Optional[str] = None) -> EffectJob:
    kind = kind_of(doc)
    return enqueue(
        session, NOTIFY, kind, doc.id, doc.tenant_id,
        key or f"notify:{kind}:{doc.id}:v{doc.version}:{template}",
        {"template": template, "to": to, "url": url},
    )


def enqueue_settle(session: Session, tenant_id: int, result: GatewayResult) -> EffectJob:
    return enqueue(session, SETTLE, "invoice", result.invoice_id, tenant_id, result.idempotency_key, result.to_dict())


# ---------- handlers ----------

def _tenant_name(session: Session, tenant_id: int) -> str:
    tenant = session.get(Tenant, tenant_id)
    return tenant.name if tenant else ""


def _contract_sections(session: Session, contract):
    stored = load_json(contract.rendered_sections_json)
    if stored is not None:
        return load_sections(stored)
    # drafts have no snapshot yet; resolve against current data
    rendered, _ = resolve_and_render(load_sections(load_json(contract.sections_json, [])), merge_context_for(session, contract))
    return rendered


def _certificate_info(session: Session, contract) -> dict:
    signed = session.exec(
        select(Event)
        .where(Event.document_kind == CONTRACT, Event.document_id == contract.id, Event.event_type == "signed")
        .order_by(Event.id.desc())
    ).first()
    return {
        "contract": contract.contract_number,
        "title": contract.title,
        "signed_by": contract.client_signed_by,
        "signed_at": contract.signed_at.isoformat() + "Z" if contract.signed_at else "",
        "ip_address": contract.client_ip_address or "",
        "user_agent": contract.client_user_agent or "",
        "sent_at": contract.sent_at.isoformat() + "Z" if contract.sent_at else "",
        "viewed_at": contract.viewed_at.isoformat() + "Z" if contract.viewed_at else "",
        "event_hash": signed.hash if signed else "",
    }


def render_document(session: Session, doc) -> bytes:
    company = _tenant_name(session, doc.tenant_id)
    if kind_of(doc) == CONTRACT:
        pdf = render_contract_pdf(doc, _contract_sections(session, doc), company, load_json(doc.pricing_json, {}))
        if doc.status == "signed":
            pdf = append_certificate(pdf, _certificate_info(session, doc))
        return pdf
    items = session.exec(
        select(InvoiceLineItem).where(InvoiceLineItem.invoice_id == doc.id).order_by(InvoiceLineItem.order)
    ).all()
    contact = session.get(Contact, doc.contact_id) if doc.contact_id else None
    return render_invoice_pdf(doc, items, company, contact.full_name if contact else "")


def handle_render(session: Session, job: EffectJob, now: datetime):
    doc = load_document(session, job.document_kind, job.document_id)
    pdf = render_document(session, doc)
    key = storage.artifact_key(doc.tenant_id, job.document_kind, doc.id)
    storage.put_bytes(key, pdf, content_type="application/pdf")
    digest = sha256_bytes(pdf)
    doc.artifact_path = key
    doc.artifact_sha256 = digest
    doc.pdf_generated_at = now
    session.add(doc)
    append_event(session, doc, "pdf_generated", SYSTEM, {"path": key, "sha256": digest, "job_id": job.id}, now=now)
    session.commit()


def handle_notify(session: Session, job: EffectJob, now: datetime):
    if job.delivered_at is not None:
        logger.info("job %s already delivered, skipping send", job.id)
        return
    payload = load_json(job.payload_json, {})
    doc = load_document(session, job.document_kind, job.document_id)
    company = _tenant_name(session, doc.tenant_id)
    subject, text_body, html_body = build_message(payload["template"], job.document_kind, doc, company, payload.get("url"))
    attachments = []
    if payload["template"] in (SIGNED_RECEIPT, PAYMENT_RECEIPT) and doc.artifact_path:
        try:
            attachments.append({
                "filename": f"{job.document_kind}-{doc.id}.pdf",
                "content": storage.get_bytes(doc.artifact_path),
                "maintype": "application",
                "subtype": "pdf",
            })
        except NotFound:
            logger.warning("artifact %s missing, sending receipt without attachment", doc.artifact_path)
    email.send_email(
        payload["to"],
        subject,
        text_body,
        html_body=html_body,
        attachments=attachments,
        sender_name=email.format_sender_name(company),
    )
    job.delivered_at = now
    session.add(job)
    append_event(session, doc, "email_sent", SYSTEM, {"template": payload["template"], "to": payload["to"], "job_id": job.id}, now=now)
    session.commit()


def handle_settle(session: Session, job: EffectJob, now: datetime):
    """
    Apply one gateway result to its invoice.

    The processed-event row, the payment row and the transition share one
    database transaction, so a duplicate delivery either sees the row and
    stops or loses the unique-key race and rolls back.
    """
    try:
        result = GatewayResult(**load_json(job.payload_json, {}))
    except TypeError as exc:
        raise PermanentFailure(f"malformed settle payload on job {job.id}") from exc
    seen = session.exec(
        select(ProcessedGatewayEvent).where(ProcessedGatewayEvent.gateway_event_id == result.event_id)
    ).first()
    if seen:
        logger.info("gateway event %s already processed", result.event_id)
        return
    invoice = load_document(session, "invoice", result.invoice_id)
    payment = session.exec(select(Payment).where(Payment.gateway_intent_id == result.transaction_id)).first()
    if payment is None:
        payment = Payment(
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            amount_cents=result.amount_cents,
            currency=result.currency,
            gateway_intent_id=result.transaction_id,
        )
    payment.processed_at = now
    applied = False
    if not result.succeeded:
        payment.status = "failed"
        payment.failure_reason = result.failure_reason
        append_event(session, invoice, "payment_failed", SYSTEM, {"transaction_id": result.transaction_id, "reason": result.failure_reason}, now=now)
    elif machine_for(invoice).is_terminal(invoice.status):
        payment.status = "succeeded"
        payment.gateway_transaction_id = result.transaction_id
        payment.amount_cents = result.amount_cents
        logger.warning("payment %s received for %s invoice %s", result.transaction_id, invoice.status, invoice.id)
        append_event(session, invoice, "payment_unapplied", SYSTEM, {"transaction_id": result.transaction_id, "amount_cents": result.amount_cents}, now=now)
    else:
        paid = invoice.amount_paid_cents + result.amount_cents
        due = max(invoice.total_cents - paid, 0)
        action = "record_full_payment" if due == 0 else "record_partial_payment"
        try:
            transition(
                session, invoice, action, SYSTEM,
                payload={"transaction_id": result.transaction_id, "amount_cents": result.amount_cents, "amount_due_cents": due},
                changes={"amount_paid_cents": paid, "amount_due_cents": due},
                now=now,
                commit=False,
            )
        except StaleDocument as exc:
            raise TransientIOFailure(f"invoice {invoice.id} changed during settlement") from exc
        payment.status = "succeeded"
        payment.gateway_transaction_id = result.transaction_id
        payment.amount_cents = result.amount_cents
        applied = True
    session.add(payment)
    session.add(ProcessedGatewayEvent(
        gateway_event_id=result.event_id,
        invoice_id=invoice.id,
        transaction_id=result.transaction_id,
        processed_at=now,
    ))
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info("gateway event %s settled concurrently", result.event_id)
        return
    logger.info("settled event=%s invoice=%s applied=%s", result.event_id, invoice.id, applied)
    if applied:
        session.refresh(invoice)
        enqueue_render(session, invoice, "payment")
        contact = session.get(Contact, invoice.contact_id) if invoice.contact_id else None
        if contact and contact.email:
            enqueue_notify(session, invoice, PAYMENT_RECEIPT, contact.email, key=f"notify:invoice:{invoice.id}:receipt:{result.event_id}")


HANDLERS = {RENDER: handle_render, NOTIFY: handle_notify, SETTLE: handle_settle}


# ---------- runner ----------

def backoff(attempts: int) -> timedelta:
    return timedelta(seconds=JOB_BACKOFF_SECONDS * 2 ** max(attempts - 1, 0))


def _next_job(session: Session, document_kind: str, document_id: int) -> Optional[EffectJob]:
    return session.exec(
        select(EffectJob)
        .where(
            EffectJob.document_kind == document_kind,
            EffectJob.document_id == document_id,
            EffectJob.status.in_([PENDING, RUNNING]),
        )
        .order_by(EffectJob.id)
    ).first()


def _claim(session: Session, job: EffectJob, now: datetime) -> bool:
    claimed = session.exec(
        update(EffectJob)
        .where(EffectJob.id == job.id, EffectJob.status == PENDING)
        .values(status=RUNNING, attempts=EffectJob.attempts + 1, available_at=now + timedelta(seconds=JOB_LEASE_SECONDS))
    ).rowcount == 1
    session.commit()
    if claimed:
        session.refresh(job)
    return claimed


def _dead_letter(session: Session, job: EffectJob, error: str, now: datetime):
    job.status = DEAD
    job.last_error = error
    job.completed_at = now
    session.add(job)
    try:
        doc = load_document(session, job.document_kind, job.document_id)
    except NotFound:
        doc = None
    if doc is not None:
        append_event(session, doc, f"{job.kind}_failed", SYSTEM, {"job_id": job.id, "attempts": job.attempts, "error": error}, now=now)
    session.commit()
    logger.error("job=%s kind=%s dead after %s attempts: %s", job.id, job.kind, job.attempts, error)


def _fail(session: Session, job: EffectJob, exc: Exception, now: datetime, retryable: bool) -> Optional[int]:
    """Record a failed attempt. Returns the retry delay in seconds, or None when the job is dead."""
    session.rollback()
    session.refresh(job)
    error = f"{type(exc).__name__}: {exc}"
    if not retryable or job.attempts >= job.max_attempts:
        _dead_letter(session, job, error, now)
        return None
    delay = backoff(job.attempts)
    job.status = PENDING
    job.last_error = error
    job.available_at = now + delay
    session.add(job)
    session.commit()
    logger.warning("job=%s kind=%s attempt %s failed, retry in %ss: %s", job.id, job.kind, job.attempts, int(delay.total_seconds()), error)
    return int(delay.total_seconds())


def run_document_jobs(session: Session, document_kind: str, document_id: int, now: Optional[datetime] = None) -> dict:
    """
    Drain the queue for one document in enqueue order.

    Stops at a job that is not due yet or that another worker holds, and
    returns ``{"done": n, "dead": n, "retry_in": seconds|None}``.
    """
    summary = {"done": 0, "dead": 0, "retry_in": None}
    while True:
        now_ = now or utcnow()
        job = _next_job(session, document_kind, document_id)
        if job is None:
            return summary
        if job.status == RUNNING or job.available_at > now_:
            if job.status == PENDING:
                summary["retry_in"] = max(int((job.available_at - now_).total_seconds()), 1)
            return summary
        if not _claim(session, job, now_):
            return summary
        handler = HANDLERS.get(job.kind)
        try:
            if handler is None:
                raise PermanentFailure(f"no handler for job kind {job.kind}")
            handler(session, job, now_)
        except TransientIOFailure as exc:
            delay = _fail(session, job, exc, now_, retryable=True)
            if delay is None:
                summary["dead"] += 1
                continue
            summary["retry_in"] = delay
            return summary
        except DocflowError as exc:
            _fail(session, job, exc, now_, retryable=False)
            summary["dead"] += 1
            continue
        except Exception as exc:
            logger.exception("job=%s kind=%s crashed", job.id, job.kind)
            delay = _fail(session, job, exc, now_, retryable=True)
            if delay is None:
                summary["dead"] += 1
                continue
            summary["retry_in"] = delay
            return summary
        job.status = DONE
        job.completed_at = now_
        job.last_error = None
        session.add(job)
        session.commit()
        summary["done"] += 1
        logger.info("job=%s kind=%s done", job.id, job.kind)


# ---------- periodic sweep ----------

def requeue_expired_leases(session: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = session.exec(
        update(EffectJob)
        .where(EffectJob.status == RUNNING, EffectJob.available_at < now)
        .values(status=PENDING, available_at=now)
    )
    session.commit()
    return result.rowcount


def pending_documents(session: Session, now: Optional[datetime] = None) -> list:
    now = now or utcnow()
    rows = session.exec(
        select(EffectJob.document_kind, EffectJob.document_id)
        .where(EffectJob.status == PENDING, EffectJob.available_at <= now)
        .distinct()
    ).all()
    return [(kind, document_id) for kind, document_id in rows]


def sweep(session: Session, now: Optional[datetime] = None) -> dict:
    """Time-based transitions plus recovery of jobs whose dispatch or worker was lost."""
    now = now or utcnow()
    summary = {
        "expired_contracts": expire_stale_contracts(session, now),
        "overdue_invoices": mark_overdue_invoices(session, now),
        "requeued": requeue_expired_leases(session, now),
    }
    documents = pending_documents(session, now)
    for document_kind, document_id in documents:
        dispatch(document_kind, document_id)
    summary["dispatched"] = len(documents)
    logger.info("sweep %s", summary)
    return summary
