from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, select

from docflow.access import validate
from docflow.errors import AccessExpired
from docflow.documents import next_number
from docflow.models import AccessGrant, Contact, Contract, Template, Tenant
from docflow.utils import utcnow


def token_from(url: str) -> str:
    return url.rsplit("/", 1)[1]


def create_template(client, seed, **overrides):
    payload = {
        "name": "Services Agreement",
        "document_type": "contract",
        "clickwrap_text": "I agree to these terms.",
        "sections": [
            {"id": "h", "type": "heading", "content": {"text": "Agreement with {{client.full_name}}"}},
            {"id": "p", "type": "paragraph", "content": {"html": "<p>Project: {{project.name}}</p>"}},
            {"id": "s", "type": "signature", "content": {"label": "Client", "name_field": "{{client.full_name}}"}},
        ],
    }
    payload.update(overrides)
    response = client.post("/api/templates", json=payload, headers=seed["headers"])
    assert response.status_code == 201
    return response.json()


def create_contract(client, seed, template_id):
    response = client.post(
        "/api/contracts",
        json={
            "template_id": template_id,
            "contact_id": seed["contact_id"],
            "project_id": seed["project_id"],
            "pricing": {"amount": "1500.00"},
        },
        headers=seed["headers"],
    )
    assert response.status_code == 201
    return response.json()


def test_requires_operator_token(client, seed):
    assert client.get("/api/contracts").status_code == 401
    assert client.get("/api/contracts", headers={"X-Access-Token": "garbage"}).status_code == 401
    assert client.get("/api/contracts", params={"token": seed["headers"]["X-Access-Token"]}).status_code == 200


def test_contract_clones_template_sections(client, seed):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])

    assert contract["status"] == "draft"
    assert contract["contract_number"].startswith("CNT-")
    assert contract["title"] == "Services Agreement"
    assert contract["clickwrap_text"] == "I agree to these terms."
    template_ids = {s["id"] for s in template["sections"]}
    contract_ids = {s["id"] for s in contract["sections"]}
    assert len(contract_ids) == 3
    assert template_ids.isdisjoint(contract_ids)

    # editing the template later does not reach the contract
    client.put(f"/api/templates/{template['id']}", json={"sections": []}, headers=seed["headers"])
    again = client.get(f"/api/contracts/{contract['id']}", headers=seed["headers"]).json()
    assert len(again["sections"]) == 3


def test_contract_numbers_increment(client, seed):
    template = create_template(client, seed)
    first = create_contract(client, seed, template["id"])
    second = create_contract(client, seed, template["id"])
    assert int(second["contract_number"][-4:]) == int(first["contract_number"][-4:]) + 1


def test_contract_numbers_widen_past_9999(client, seed, test_engine):
    year = utcnow().year
    with Session(test_engine) as session:
        tenant = session.get(Tenant, seed["tenant_id"])
        tenant.contract_seq = 9999
        tenant.contract_seq_year = year
        session.add(tenant)
        session.commit()

    template = create_template(client, seed)
    first = create_contract(client, seed, template["id"])
    second = create_contract(client, seed, template["id"])
    assert first["contract_number"] == f"CNT-{year}-10000"
    assert second["contract_number"] == f"CNT-{year}-10001"


def test_numbering_restarts_each_year(session, seed):
    assert next_number(session, seed["tenant_id"], "contract", now=datetime(2030, 12, 31)) == "CNT-2030-0001"
    assert next_number(session, seed["tenant_id"], "contract", now=datetime(2030, 12, 31)) == "CNT-2030-0002"
    assert next_number(session, seed["tenant_id"], "contract", now=datetime(2031, 1, 1)) == "CNT-2031-0001"
    assert next_number(session, seed["tenant_id"], "invoice", now=datetime(2031, 1, 1)) == "INV-2031-0001"
    session.commit()


def test_pricing_is_validated_for_the_contract_type(client, seed):
    base = {"title": "Retainer", "contact_id": seed["contact_id"]}
    headers = seed["headers"]

    words = client.post("/api/contracts", json={**base, "pricing": {"amount": "fifteen hundred"}}, headers=headers)
    assert words.status_code == 422
    assert words.json()["code"] == "validation_error"
    assert words.json()["details"]["errors"][0]["loc"] == ["amount"]

    loose = client.post(
        "/api/contracts",
        json={**base, "contract_type": "milestone", "pricing": {"milestones": ["kickoff"]}},
        headers=headers,
    )
    assert loose.status_code == 422

    ok = client.post(
        "/api/contracts",
        json={**base, "contract_type": "milestone", "pricing": {"milestones": [{"name": "Kickoff", "amount": 250}]}},
        headers=headers,
    )
    assert ok.status_code == 201
    assert ok.json()["pricing"]["milestones"] == [{"name": "Kickoff", "amount": "250"}]

    # switching type re-checks the stored pricing
    switched = client.patch(f"/api/contracts/{ok.json()['id']}", json={"contract_type": "fixed_price"}, headers=headers)
    assert switched.status_code == 422
    assert client.get(f"/api/contracts/{ok.json()['id']}", headers=headers).json()["contract_type"] == "milestone"


def test_section_editing_with_undo(client, seed):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    base = f"/api/contracts/{contract['id']}/sections"
    headers = seed["headers"]

    inserted = client.post(base, json={"after_id": None, "type": "table"}, headers=headers)
    assert inserted.status_code == 200
    body = inserted.json()
    assert [s["order"] for s in body["sections"]] == [0, 1, 2, 3]
    assert body["history"] == {"can_undo": True, "can_redo": False}
    table_id = body["section"]["id"]

    moved = client.post(f"{base}/{table_id}/move", json={"index": 0}, headers=headers).json()
    assert moved["sections"][0]["id"] == table_id

    undone = client.post(f"{base}/undo", headers=headers).json()
    assert undone["changed"] is True
    assert undone["sections"][-1]["id"] == table_id

    bad = client.post(base, json={"after_id": None, "type": "video"}, headers=headers)
    assert bad.status_code == 422
    assert bad.json()["code"] == "invalid_argument"

    events = client.get(f"/api/contracts/{contract['id']}/events", headers=headers).json()
    assert [e["event_type"] for e in events].count("sections_edited") == 2


def test_last_section_cannot_be_deleted(client, seed):
    template = create_template(client, seed, sections=[{"id": "only", "type": "paragraph"}])
    contract = create_contract(client, seed, template["id"])
    section_id = contract["sections"][0]["id"]
    response = client.delete(f"/api/contracts/{contract['id']}/sections/{section_id}", headers=seed["headers"])
    assert response.status_code == 422


def test_preview_reports_warnings(client, seed):
    template = create_template(client, seed, sections=[
        {"id": "p", "type": "paragraph", "content": {"html": "<p>Hi {{client.full_name}} {{client.nickname}}</p>"}},
    ])
    contract = create_contract(client, seed, template["id"])
    preview = client.get(f"/api/contracts/{contract['id']}/preview", headers=seed["headers"]).json()
    assert preview["sections"][0]["content"]["html"] == "<p>Hi Jane Doe </p>"
    assert preview["values"]["client.full_name"] == "Jane Doe"
    assert len(preview["warnings"]) == 1


def test_send_view_sign_flow(client, seed, test_engine, mock_storage, sent_emails, dispatched, run_jobs):
    headers = seed["headers"]
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])

    sent = client.post(f"/api/contracts/{contract['id']}/send", headers=headers)
    assert sent.status_code == 200
    body = sent.json()
    assert body["status"] == "sent"
    assert body["rendered_sections"][0]["content"]["text"] == "Agreement with Jane Doe"
    assert body["allowed_actions"] == ["view", "decline", "expire", "cancel"]
    token = token_from(body["public_url"])

    # the draft is frozen once sent
    frozen = client.patch(f"/api/contracts/{contract['id']}", json={"title": "New"}, headers=headers)
    assert frozen.status_code == 409
    assert frozen.json()["details"]["current_status"] == "sent"

    run_jobs()
    assert [m["to"] for m in sent_emails] == ["jane@client.test"]
    assert token in sent_emails[0]["text"]

    public = client.get(f"/api/public/contracts/{token}", headers={"user-agent": "pytest-browser"})
    assert public.status_code == 200
    assert public.json()["can_sign"] is True
    assert public.json()["sections"][1]["content"]["html"] == "<p>Project: Website Redesign</p>"
    assert "id" not in public.json()

    not_agreed = client.post(f"/api/public/contracts/{token}/sign", json={"agreed": False, "signer_name": "Jane Doe"})
    assert not_agreed.status_code == 422

    signed = client.post(f"/api/public/contracts/{token}/sign", json={"agreed": True, "signer_name": "Jane Doe"})
    assert signed.status_code == 200
    assert signed.json()["status"] == "signed"
    assert signed.json()["client_signed_by"] == "Jane Doe"

    again = client.post(f"/api/public/contracts/{token}/sign", json={"agreed": True, "signer_name": "Jane Doe"})
    assert again.status_code == 409
    assert again.json()["details"]["current_status"] == "signed"

    run_jobs()
    recipients = sorted(m["to"] for m in sent_emails[1:])
    assert recipients == ["jane@client.test", "owner@acme.test"]
    assert all(m["attachments"] for m in sent_emails[1:])

    detail = client.get(f"/api/contracts/{contract['id']}", headers=headers).json()
    assert detail["status"] == "signed"
    assert detail["has_pdf"] is True

    pdf = client.get(f"/api/public/contracts/{token}/pdf")
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"

    events = client.get(f"/api/contracts/{contract['id']}/events", headers=headers).json()
    types = [e["event_type"] for e in reversed(events)]
    assert types[:4] == ["created", "sent", "pdf_generated", "email_sent"]
    assert types.count("viewed") == 1
    assert types.count("signed") == 1
    signed_event = next(e for e in events if e["event_type"] == "signed")
    assert signed_event["actor_type"] == "counterpart"
    assert signed_event["ua"] == "testclient"

    with Session(test_engine) as session:
        stored = session.get(Contract, contract["id"])
        assert stored.client_user_agent == "testclient"


def test_public_link_errors_are_generic(client, seed):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    token = token_from(client.post(f"/api/contracts/{contract['id']}/send", headers=seed["headers"]).json()["public_url"])
    resent = client.post(f"/api/contracts/{contract['id']}/resend", headers=seed["headers"])
    assert resent.status_code == 200
    new_token = token_from(resent.json()["public_url"])
    assert new_token != token

    unknown = client.get("/api/public/contracts/not-a-real-token")
    revoked = client.get(f"/api/public/contracts/{token}")
    assert unknown.status_code == revoked.status_code == 404
    assert unknown.json() == revoked.json() == {
        "code": "link_invalid",
        "message": "This link is no longer valid.",
        "details": {},
    }
    assert client.get(f"/api/public/contracts/{new_token}").status_code == 200


def test_expired_link_expires_contract(client, seed, test_engine):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    token = token_from(client.post(f"/api/contracts/{contract['id']}/send", headers=seed["headers"]).json()["public_url"])

    with Session(test_engine) as session:
        later = session.get(Contract, contract["id"]).token_expires_at + timedelta(days=1)
        with pytest.raises(AccessExpired):
            validate(session, token, "contract", now=later)

    assert client.get(f"/api/public/contracts/{token}").status_code == 404
    detail = client.get(f"/api/contracts/{contract['id']}", headers=seed["headers"]).json()
    assert detail["status"] == "expired"
    assert detail["allowed_actions"] == []


def test_decline_notifies_operator(client, seed, sent_emails, run_jobs):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    token = token_from(client.post(f"/api/contracts/{contract['id']}/send", headers=seed["headers"]).json()["public_url"])
    run_jobs()
    sent_emails.clear()

    declined = client.post(f"/api/public/contracts/{token}/decline", json={"reason": "Budget"})
    assert declined.status_code == 200
    assert declined.json()["status"] == "declined"
    run_jobs()
    assert [m["to"] for m in sent_emails] == ["owner@acme.test"]
    assert sent_emails[0]["subject"].startswith("Declined:")


def test_cancel_revokes_link(client, seed, test_engine):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    token = token_from(client.post(f"/api/contracts/{contract['id']}/send", headers=seed["headers"]).json()["public_url"])

    cancelled = client.post(f"/api/contracts/{contract['id']}/cancel", json={"reason": "Scope changed"}, headers=seed["headers"])
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.get(f"/api/public/contracts/{token}").status_code == 404

    with Session(test_engine) as session:
        grants = session.exec(select(AccessGrant).where(AccessGrant.document_id == contract["id"])).all()
        assert all(g.revoked_at is not None for g in grants)

    resend = client.post(f"/api/contracts/{contract['id']}/resend", headers=seed["headers"])
    assert resend.status_code == 409


def test_send_requires_client_email(client, seed):
    template = create_template(client, seed)
    response = client.post("/api/contracts", json={"template_id": template["id"]}, headers=seed["headers"])
    contract = response.json()
    sent = client.post(f"/api/contracts/{contract['id']}/send", headers=seed["headers"])
    assert sent.status_code == 422
    assert client.get(f"/api/contracts/{contract['id']}", headers=seed["headers"]).json()["status"] == "draft"


def test_resend_requires_client_email(client, seed, test_engine):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    token = token_from(client.post(f"/api/contracts/{contract['id']}/send", headers=seed["headers"]).json()["public_url"])
    with Session(test_engine) as session:
        contact = session.get(Contact, seed["contact_id"])
        contact.email = None
        session.add(contact)
        session.commit()

    resend = client.post(f"/api/contracts/{contract['id']}/resend", headers=seed["headers"])
    assert resend.status_code == 422
    assert resend.json()["code"] == "validation_error"
    # the earlier link was not revoked
    assert client.get(f"/api/public/contracts/{token}").status_code == 200


def test_template_soft_delete_when_referenced(client, seed, test_engine):
    used = create_template(client, seed)
    create_contract(client, seed, used["id"])
    unused = create_template(client, seed, name="Spare")

    assert client.delete(f"/api/templates/{used['id']}", headers=seed["headers"]).json()["deleted"] == "soft"
    assert client.delete(f"/api/templates/{unused['id']}", headers=seed["headers"]).json()["deleted"] == "hard"
    assert client.get(f"/api/templates/{used['id']}", headers=seed["headers"]).status_code == 404

    with Session(test_engine) as session:
        assert session.get(Template, used["id"]).deleted_at is not None
        assert session.get(Template, unused["id"]) is None

    listed = client.get("/api/templates", headers=seed["headers"]).json()
    assert listed == []


def test_other_tenants_documents_are_not_found(client, seed, test_engine):
    from docflow.models import Tenant, User
    from docflow.utils import make_token

    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    with Session(test_engine) as session:
        tenant = Tenant(name="Other")
        session.add(tenant)
        session.commit()
        session.refresh(tenant)
        user = User(tenant_id=tenant.id, email="x@other.test", name="X")
        session.add(user)
        session.commit()
        headers = {"X-Access-Token": make_token({"tenant_id": tenant.id, "user_id": user.id})}
    assert client.get(f"/api/contracts/{contract['id']}", headers=headers).status_code == 404


def test_merge_field_catalog(client, seed):
    fields = client.get("/api/templates/merge-fields", headers=seed["headers"]).json()
    assert {"key": "client.full_name", "label": "Client Full Name", "category": "client", "type": "text"} in fields
    checked = client.post("/api/templates/merge-fields/validate", json={"text": "{{client.nope}}"}, headers=seed["headers"]).json()
    assert checked["valid"] is False


def test_operator_render_request(client, seed, dispatched):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    response = client.post(f"/api/contracts/{contract['id']}/render", headers=seed["headers"])
    assert response.status_code == 202
    assert response.json()["status"] == "pending"
    assert ("contract", contract["id"], None) in dispatched
    assert client.get(f"/api/contracts/{contract['id']}/pdf", headers=seed["headers"]).status_code == 404


def test_unknown_status_filter(client, seed):
    response = client.get("/api/contracts", params={"status": "bogus"}, headers=seed["headers"])
    assert response.status_code == 422


def test_first_open_records_time(client, seed, test_engine):
    template = create_template(client, seed)
    contract = create_contract(client, seed, template["id"])
    token = token_from(client.post(f"/api/contracts/{contract['id']}/send", headers=seed["headers"]).json()["public_url"])
    before = utcnow()
    client.get(f"/api/public/contracts/{token}")
    client.get(f"/api/public/contracts/{token}")
    with Session(test_engine) as session:
        stored = session.get(Contract, contract["id"])
        assert stored.status == "viewed"
        assert stored.viewed_at >= before - timedelta(seconds=1)
