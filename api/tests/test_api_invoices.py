from sqlmodel import Session, select

from docflow import payments
from docflow.models import Contact, Payment


def token_from(url: str) -> str:
    return url.rsplit("/", 1)[1]


def create_invoice(client, seed, items=None, **overrides):
    payload = {
        "title": "Website build",
        "contact_id": seed["contact_id"],
        "project_id": seed["project_id"],
        "due_date": "2030-01-31",
        "items": items if items is not None else [{"description": "Design", "quantity": 1, "unit_price": "500.00"}],
    }
    payload.update(overrides)
    response = client.post("/api/invoices", json=payload, headers=seed["headers"])
    assert response.status_code == 201
    return response.json()


def test_create_invoice_with_items(client, seed):
    invoice = create_invoice(client, seed, items=[
        {"description": "Hours", "quantity": 3, "unit_price": "100.00"},
        {"description": "Hosting", "quantity": 1, "unit_price": "25.50"},
    ], tax_rate=8.25)
    assert invoice["status"] == "draft"
    assert invoice["invoice_number"].startswith("INV-")
    assert invoice["subtotal"] == "325.50"
    assert invoice["tax_amount"] == "26.85"
    assert invoice["total"] == "352.35"
    assert invoice["amount_due"] == "352.35"
    assert [i["amount"] for i in invoice["items"]] == ["300.00", "25.50"]


def test_line_item_edits_recalculate_totals(client, seed):
    invoice = create_invoice(client, seed)
    base = f"/api/invoices/{invoice['id']}/items"
    headers = seed["headers"]

    added = client.post(base, json={"description": "Extra", "quantity": 2, "unit_price": "50"}, headers=headers)
    assert added.status_code == 201
    assert added.json()["invoice"]["total"] == "600.00"
    item_id = added.json()["item"]["id"]

    updated = client.patch(f"{base}/{item_id}", json={"quantity": 4}, headers=headers)
    assert updated.json()["invoice"]["total"] == "700.00"

    removed = client.delete(f"{base}/{item_id}", headers=headers)
    assert removed.json()["total"] == "500.00"
    assert [i["order"] for i in removed.json()["items"]] == [0]

    bad = client.post(base, json={"description": "Bad", "quantity": 0, "unit_price": "1"}, headers=headers)
    assert bad.status_code == 422


def test_rates_are_bounded(client, seed):
    invoice = create_invoice(client, seed)
    response = client.patch(f"/api/invoices/{invoice['id']}", json={"discount_rate": 150}, headers=seed["headers"])
    assert response.status_code == 422


def test_send_requires_positive_total(client, seed):
    invoice = create_invoice(client, seed, items=[])
    response = client.post(f"/api/invoices/{invoice['id']}/send", headers=seed["headers"])
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_send_view_and_pay(client, seed, test_engine, sent_emails, run_jobs, monkeypatch):
    headers = seed["headers"]
    invoice = create_invoice(client, seed)
    sent = client.post(f"/api/invoices/{invoice['id']}/send", headers=headers)
    assert sent.status_code == 200
    assert sent.json()["status"] == "sent"
    token = token_from(sent.json()["public_url"])

    locked = client.post(f"/api/invoices/{invoice['id']}/items", json={"description": "Late", "unit_price": "1"}, headers=headers)
    assert locked.status_code == 409

    run_jobs()
    assert sent_emails[0]["subject"].startswith("Invoice ready")
    assert "$500.00" in sent_emails[0]["text"]

    public = client.get(f"/api/public/invoices/{token}")
    assert public.status_code == 200
    assert public.json()["status"] == "viewed"
    assert public.json()["can_pay"] is True
    assert public.json()["amount_due"] == "500.00"
    assert public.json()["company_name"] == "Acme Studio"

    created = []

    def fake_create(**kwargs):
        created.append(kwargs)
        return {"id": "pi_test", "client_secret": "pi_test_secret"}

    monkeypatch.setattr(payments, "STRIPE_SECRET_KEY", "sk_test")
    monkeypatch.setattr(payments.stripe.PaymentIntent, "create", fake_create)

    intent = client.post(f"/api/public/invoices/{token}/payment-intent")
    assert intent.status_code == 200
    assert intent.json()["client_secret"] == "pi_test_secret"
    assert intent.json()["amount_cents"] == 50000
    assert created[0]["metadata"]["invoice_id"] == str(invoice["id"])
    assert created[0]["idempotency_key"] == f"invoice-{invoice['id']}-due-50000-paid-0"

    client.post(f"/api/public/invoices/{token}/payment-intent")
    with Session(test_engine) as session:
        rows = session.exec(select(Payment).where(Payment.gateway_intent_id == "pi_test")).all()
        assert len(rows) == 1
        assert rows[0].status == "pending"


def test_payment_intent_without_gateway_config(client, seed, monkeypatch):
    monkeypatch.setattr(payments, "STRIPE_SECRET_KEY", "")
    invoice = create_invoice(client, seed)
    token = token_from(client.post(f"/api/invoices/{invoice['id']}/send", headers=seed["headers"]).json()["public_url"])
    response = client.post(f"/api/public/invoices/{token}/payment-intent")
    assert response.status_code == 503
    assert response.json()["code"] == "service_unavailable"


def test_cancelled_invoice_link_is_dead(client, seed):
    invoice = create_invoice(client, seed)
    token = token_from(client.post(f"/api/invoices/{invoice['id']}/send", headers=seed["headers"]).json()["public_url"])
    cancelled = client.post(f"/api/invoices/{invoice['id']}/cancel", headers=seed["headers"])
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["allowed_actions"] == []
    assert client.get(f"/api/public/invoices/{token}").status_code == 404
    assert client.post(f"/api/invoices/{invoice['id']}/cancel", headers=seed["headers"]).status_code == 409


def test_resend_issues_new_link(client, seed, sent_emails, run_jobs):
    invoice = create_invoice(client, seed)
    assert client.post(f"/api/invoices/{invoice['id']}/resend", headers=seed["headers"]).status_code == 409

    first = token_from(client.post(f"/api/invoices/{invoice['id']}/send", headers=seed["headers"]).json()["public_url"])
    second = token_from(client.post(f"/api/invoices/{invoice['id']}/resend", headers=seed["headers"]).json()["public_url"])
    run_jobs()

    assert client.get(f"/api/public/invoices/{first}").status_code == 404
    assert client.get(f"/api/public/invoices/{second}").status_code == 200
    assert [m["subject"].split(":")[0] for m in sent_emails] == ["Invoice ready", "Invoice ready"]
    assert "replaces any earlier link" in sent_emails[1]["text"]


def test_invoice_pdf_download(client, seed, run_jobs):
    invoice = create_invoice(client, seed)
    assert client.get(f"/api/invoices/{invoice['id']}/pdf", headers=seed["headers"]).status_code == 404
    token = token_from(client.post(f"/api/invoices/{invoice['id']}/send", headers=seed["headers"]).json()["public_url"])
    run_jobs()

    operator = client.get(f"/api/invoices/{invoice['id']}/pdf", headers=seed["headers"])
    public = client.get(f"/api/public/invoices/{token}/pdf")
    assert operator.status_code == public.status_code == 200
    assert operator.content == public.content
    assert operator.content.startswith(b"%PDF")


def test_list_by_status(client, seed):
    draft = create_invoice(client, seed)
    sent = create_invoice(client, seed)
    client.post(f"/api/invoices/{sent['id']}/send", headers=seed["headers"])

    drafts = client.get("/api/invoices", params={"status": "draft"}, headers=seed["headers"]).json()
    assert [i["id"] for i in drafts] == [draft["id"]]
    assert len(client.get("/api/invoices", headers=seed["headers"]).json()) == 2


def test_resend_without_client_email_is_rejected(client, seed, test_engine):
    invoice = create_invoice(client, seed)
    token = token_from(client.post(f"/api/invoices/{invoice['id']}/send", headers=seed["headers"]).json()["public_url"])
    with Session(test_engine) as session:
        contact = session.get(Contact, seed["contact_id"])
        contact.email = None
        session.add(contact)
        session.commit()

    resend = client.post(f"/api/invoices/{invoice['id']}/resend", headers=seed["headers"])
    assert resend.status_code == 422
    assert client.get(f"/api/public/invoices/{token}").status_code == 200
