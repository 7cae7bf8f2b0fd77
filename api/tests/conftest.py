import os
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from docflow.main import app  # noqa: E402
from docflow import db as db_module  # noqa: E402
from docflow.db import get_session  # noqa: E402
from docflow import effects as effects_module  # noqa: E402
from docflow import email as email_module  # noqa: E402
from docflow import storage as storage_module  # noqa: E402
from docflow.errors import NotFound  # noqa: E402
from docflow.models import Contact, Project, Tenant, User  # noqa: E402
from docflow.routers import contracts as contracts_router  # noqa: E402
from docflow.routers import invoices as invoices_router  # noqa: E402
from docflow.routers import public as public_router  # noqa: E402
from docflow.utils import make_token  # noqa: E402


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    db_module.engine = test_engine
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as s:
        yield s


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise NotFound(f"artifact {key} not found")
        return store[key]

    for target in (storage_module, contracts_router, invoices_router, public_router):
        if hasattr(target, "put_bytes"):
            monkeypatch.setattr(target, "put_bytes", fake_put_bytes)
        if hasattr(target, "get_bytes"):
            monkeypatch.setattr(target, "get_bytes", fake_get_bytes)
    return store


@pytest.fixture
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, body, html_body=None, attachments=None, sender_name=None, reply_to=None):
        messages.append(
            {
                "to": to,
                "subject": subject,
                "text": body,
                "html": html_body,
                "attachments": attachments or [],
                "sender_name": sender_name,
            }
        )

    monkeypatch.setattr(email_module, "send_email", fake_send_email)
    return messages


@pytest.fixture
def dispatched(monkeypatch):
    """Records worker wake-ups instead of talking to the broker."""
    calls = []

    def fake_dispatch(document_kind, document_id, countdown=None):
        calls.append((document_kind, document_id, countdown))

    monkeypatch.setattr(effects_module, "dispatch", fake_dispatch)
    return calls


@pytest.fixture
def seed(test_engine, setup_db):
    with Session(test_engine) as s:
        tenant = Tenant(name="Acme Studio")
        s.add(tenant)
        s.commit()
        s.refresh(tenant)
        user = User(tenant_id=tenant.id, email="owner@acme.test", name="Olive Owner", role="owner")
        contact = Contact(tenant_id=tenant.id, full_name="Jane Doe", email="jane@client.test", organization="Doe LLC")
        project = Project(tenant_id=tenant.id, name="Website Redesign", budget_cents=500000)
        s.add(user)
        s.add(contact)
        s.add(project)
        s.commit()
        ids = {
            "tenant_id": tenant.id,
            "user_id": user.id,
            "contact_id": contact.id,
            "project_id": project.id,
        }
    token = make_token({"tenant_id": ids["tenant_id"], "user_id": ids["user_id"]})
    return {**ids, "headers": {"X-Access-Token": token}}


@pytest.fixture
def client(test_engine, setup_db, mock_storage, sent_emails, dispatched):
    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def run_jobs(test_engine):
    """Drain every document queue the way the worker would."""

    def _run(now=None):
        total = {"done": 0, "dead": 0}
        with Session(test_engine) as s:
            for document_kind, document_id in effects_module.pending_documents(s, now):
                summary = effects_module.run_document_jobs(s, document_kind, document_id, now=now)
                total["done"] += summary["done"]
                total["dead"] += summary["dead"]
        return total

    return _run
