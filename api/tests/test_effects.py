from datetime import timedelta

from sqlmodel import Session, select

from docflow import effects, invoices, storage
from docflow.config import JOB_BACKOFF_SECONDS
from docflow.errors import TransientIOFailure
from docflow.lifecycle import Actor, ActorType, list_events
from docflow.models import Contract, EffectJob, Invoice, Payment, ProcessedGatewayEvent
from docflow.notifications import SENT
from docflow.payments import FAILED, SUCCEEDED, GatewayResult
from docflow.utils import utcnow


def operator(seed):
    return Actor(ActorType.operator, id=seed["user_id"])


def sent_invoice(session, seed, total="500.00"):
    invoice = invoices.create_invoice(session, seed["tenant_id"], operator(seed), {
        "contact_id": seed["contact_id"],
        "title": "Website build",
        "items": [{"description": "Design", "quantity": 1, "unit_price": total}],
    })
    invoices.send_invoice(session, invoice, operator(seed))
    return invoice


def gateway_result(invoice, event_id, txn, cents, succeeded=True):
    return GatewayResult(
        event_id=event_id,
        event_type=SUCCEEDED if succeeded else FAILED,
        invoice_id=invoice.id,
        transaction_id=txn,
        amount_cents=cents,
        currency="usd",
        succeeded=succeeded,
        failure_reason=None if succeeded else "card_declined",
    )


def event_types(session, kind, doc_id):
    return [e.event_type for e in reversed(list_events(session, kind, doc_id))]


def test_send_enqueues_render_and_notify(session, seed, mock_storage, sent_emails, dispatched, run_jobs):
    invoice = sent_invoice(session, seed)
    jobs = session.exec(select(EffectJob).order_by(EffectJob.id)).all()
    assert [j.kind for j in jobs] == ["render", "notify"]
    assert ("invoice", invoice.id, None) in dispatched

    assert run_jobs() == {"done": 2, "dead": 0}
    session.refresh(invoice)
    assert invoice.artifact_path in mock_storage
    assert mock_storage[invoice.artifact_path].startswith(b"%PDF")
    assert len(invoice.artifact_sha256) == 64
    assert [m["to"] for m in sent_emails] == ["jane@client.test"]
    assert "/public/invoices/" in sent_emails[0]["text"]
    assert sent_emails[0]["sender_name"] == "Acme Studio via Docflow"
    assert event_types(session, "invoice", invoice.id) == ["created", "sent", "pdf_generated", "email_sent"]


def test_partial_then_full_payment(session, seed, mock_storage, sent_emails, dispatched, run_jobs):
    invoice = sent_invoice(session, seed)
    run_jobs()
    sent_emails.clear()

    effects.enqueue_settle(session, seed["tenant_id"], gateway_result(invoice, "evt_1", "pi_1", 20000))
    run_jobs()
    session.refresh(invoice)
    assert invoice.status == "partially_paid"
    assert invoice.amount_paid_cents == 20000
    assert invoice.amount_due_cents == 30000
    assert len(sent_emails) == 1
    assert sent_emails[0]["attachments"][0]["content"].startswith(b"%PDF")

    effects.enqueue_settle(session, seed["tenant_id"], gateway_result(invoice, "evt_2", "pi_2", 30000))
    run_jobs()
    session.refresh(invoice)
    assert invoice.status == "paid"
    assert invoice.amount_due_cents == 0
    assert invoice.paid_at is not None

    payments = session.exec(select(Payment).where(Payment.invoice_id == invoice.id)).all()
    assert sorted(p.gateway_transaction_id for p in payments) == ["pi_1", "pi_2"]
    assert all(p.status == "succeeded" for p in payments)
    assert event_types(session, "invoice", invoice.id).count("payment_succeeded") == 2


def test_duplicate_gateway_event_settles_once(session, seed, mock_storage, sent_emails, dispatched, run_jobs):
    invoice = sent_invoice(session, seed)
    result = gateway_result(invoice, "evt_dup", "pi_dup", 50000)

    first = effects.enqueue_settle(session, seed["tenant_id"], result)
    again = effects.enqueue_settle(session, seed["tenant_id"], result)
    assert first.id == again.id

    # a redelivery that slipped past the job key still hits the processed-event check
    effects.enqueue(session, effects.SETTLE, "invoice", invoice.id, seed["tenant_id"], "settle:redelivered", result.to_dict())
    run_jobs()

    session.refresh(invoice)
    assert invoice.status == "paid"
    assert invoice.amount_paid_cents == 50000
    assert event_types(session, "invoice", invoice.id).count("payment_succeeded") == 1
    assert len(session.exec(select(ProcessedGatewayEvent)).all()) == 1


def test_failed_payment_is_logged_without_transition(session, seed, mock_storage, sent_emails, dispatched, run_jobs):
    invoice = sent_invoice(session, seed)
    run_jobs()
    effects.enqueue_settle(session, seed["tenant_id"], gateway_result(invoice, "evt_f", "pi_f", 50000, succeeded=False))
    run_jobs()

    session.refresh(invoice)
    assert invoice.status == "sent"
    assert invoice.amount_paid_cents == 0
    payment = session.exec(select(Payment).where(Payment.gateway_intent_id == "pi_f")).one()
    assert payment.status == "failed"
    assert payment.failure_reason == "card_declined"
    assert event_types(session, "invoice", invoice.id)[-1] == "payment_failed"


def test_payment_on_cancelled_invoice_is_recorded_not_applied(session, seed, mock_storage, sent_emails, dispatched, run_jobs):
    invoice = sent_invoice(session, seed)
    invoices.cancel_invoice(session, invoice, operator(seed))
    effects.enqueue_settle(session, seed["tenant_id"], gateway_result(invoice, "evt_late", "pi_late", 50000))
    run_jobs()

    session.refresh(invoice)
    assert invoice.status == "cancelled"
    assert invoice.amount_paid_cents == 0
    assert event_types(session, "invoice", invoice.id)[-1] == "payment_unapplied"


def draft_contract(session, seed):
    contract = Contract(
        tenant_id=seed["tenant_id"],
        contact_id=seed["contact_id"],
        title="Retainer",
        contract_number="CNT-2025-0001",
        sections_json='[{"id":"p1","type":"paragraph","order":0,"content":{"html":"<p>Hello {{client.full_name}}</p>"}}]',
    )
    session.add(contract)
    session.commit()
    session.refresh(contract)
    return contract


def test_transient_failure_retries_with_backoff_then_dead_letters(
    session, test_engine, seed, mock_storage, sent_emails, dispatched, monkeypatch
):
    contract = draft_contract(session, seed)
    render = effects.enqueue_render(session, contract, "manual")
    effects.enqueue_notify(session, contract, SENT, "jane@client.test", url="https://example.test/x")

    def unavailable(key, data, content_type="application/octet-stream"):
        raise TransientIOFailure("storage down")

    monkeypatch.setattr(storage, "put_bytes", unavailable)
    t0 = utcnow() + timedelta(seconds=1)

    with Session(test_engine) as s:
        first = effects.run_document_jobs(s, "contract", contract.id, now=t0)
    assert first == {"done": 0, "dead": 0, "retry_in": JOB_BACKOFF_SECONDS}
    # the notify job waits behind the failing render
    assert sent_emails == []

    with Session(test_engine) as s:
        early = effects.run_document_jobs(s, "contract", contract.id, now=t0 + timedelta(seconds=10))
    assert early["retry_in"] == JOB_BACKOFF_SECONDS - 10
    session.refresh(render)
    assert render.attempts == 1

    with Session(test_engine) as s:
        second = effects.run_document_jobs(s, "contract", contract.id, now=t0 + timedelta(seconds=JOB_BACKOFF_SECONDS))
    assert second["retry_in"] == JOB_BACKOFF_SECONDS * 2

    with Session(test_engine) as s:
        third = effects.run_document_jobs(s, "contract", contract.id, now=t0 + timedelta(seconds=JOB_BACKOFF_SECONDS * 3))
    assert third == {"done": 1, "dead": 1, "retry_in": None}

    session.refresh(render)
    assert render.status == "dead"
    assert render.attempts == 3
    assert "storage down" in render.last_error
    assert len(sent_emails) == 1
    assert "render_failed" in event_types(session, "contract", contract.id)


def test_permanent_error_dead_letters_immediately(session, seed, mock_storage, sent_emails, dispatched, run_jobs):
    job = effects.enqueue(session, effects.RENDER, "contract", 999, seed["tenant_id"], "render:contract:999:missing")
    assert run_jobs() == {"done": 0, "dead": 1}
    session.refresh(job)
    assert job.status == "dead"
    assert job.attempts == 1


def test_delivered_notify_is_not_sent_again(session, seed, mock_storage, sent_emails, dispatched, run_jobs):
    contract = draft_contract(session, seed)
    job = effects.enqueue_notify(session, contract, SENT, "jane@client.test", url="https://example.test/x")
    # a worker that died after handing the message to SMTP
    job.delivered_at = utcnow()
    session.add(job)
    session.commit()

    assert run_jobs() == {"done": 1, "dead": 0}
    assert sent_emails == []


def test_sweep_requeues_expired_leases(session, seed, dispatched):
    contract = draft_contract(session, seed)
    job = effects.enqueue_render(session, contract, "manual")
    dispatched.clear()
    now = utcnow()
    job.status = effects.RUNNING
    job.available_at = now - timedelta(seconds=1)
    session.add(job)
    session.commit()

    summary = effects.sweep(session, now + timedelta(seconds=1))
    assert summary["requeued"] == 1
    assert summary["dispatched"] == 1
    assert dispatched == [("contract", contract.id, None)]
    session.refresh(job)
    assert job.status == effects.PENDING


def test_backoff_doubles():
    assert effects.backoff(1) == timedelta(seconds=JOB_BACKOFF_SECONDS)
    assert effects.backoff(3) == timedelta(seconds=JOB_BACKOFF_SECONDS * 4)


def test_invoice_totals(session, seed, dispatched):
    invoice = invoices.create_invoice(session, seed["tenant_id"], operator(seed), {
        "tax_rate": 10,
        "discount_rate": 5,
        "items": [
            {"description": "Hours", "quantity": 2.5, "unit_price": "80.00"},
            {"description": "Hosting", "quantity": 1, "unit_price": "19.99"},
        ],
    })
    assert invoice.subtotal_cents == 21999
    assert invoice.tax_cents == 2200
    assert invoice.discount_cents == 1100
    assert invoice.total_cents == 23099
    assert invoice.amount_due_cents == 23099
    assert invoice.invoice_number.startswith("INV-")
    assert session.get(Invoice, invoice.id).status == "draft"


def test_malformed_settle_payload_is_dead_lettered(session, seed, mock_storage, sent_emails, dispatched, run_jobs):
    invoice = sent_invoice(session, seed)
    run_jobs()
    effects.enqueue(session, effects.SETTLE, "invoice", invoice.id, seed["tenant_id"], "settle:garbled", {"amount": 1})
    assert run_jobs() == {"done": 0, "dead": 1}
    session.refresh(invoice)
    assert invoice.status == "sent"
    assert event_types(session, "invoice", invoice.id)[-1] == "settle_failed"
