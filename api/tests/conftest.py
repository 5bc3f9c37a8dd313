import os
import re
from datetime import datetime, timedelta
from typing import Dict

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("STATUS_POLL_INTERVAL", "0.01")

from agreement_api.main import app  # noqa: E402
from agreement_api import db as db_module  # noqa: E402
from agreement_api import docusign as docusign_module  # noqa: E402
from agreement_api import storage as storage_module  # noqa: E402
from agreement_api import archive as archive_module  # noqa: E402
from agreement_api.db import get_session  # noqa: E402
from agreement_api.models import EsignCredential  # noqa: E402
from agreement_api.routers import signing as signing_router  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"
PASSWORD = "correct horse battery staple"


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
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_save(key: str, pdf: bytes):
        store[key] = bytes(pdf)

    def fake_load(key: str) -> bytes:
        return store[key]

    monkeypatch.setattr(storage_module, "save_executed_document", fake_save)
    monkeypatch.setattr(storage_module, "load_executed_document", fake_load)
    monkeypatch.setattr(archive_module, "save_executed_document", fake_save)
    monkeypatch.setattr(signing_router, "load_executed_document", fake_load)
    return store


class FakeDocuSign:
    """In-memory stand-in for the DocuSign OAuth and eSignature REST endpoints."""

    def __init__(self):
        self.requests = []
        self.envelope_statuses = {}
        self.recipients = {}
        self.fail_envelopes = False
        self.fail_documents = False
        self._counter = 0

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/token":
            return httpx.Response(200, json={
                "access_token": "ds-access-token",
                "refresh_token": "ds-refresh-token",
                "expires_in": 28800,
                "token_type": "Bearer",
            })
        if path == "/oauth/userinfo":
            return httpx.Response(200, json={
                "name": "Owner",
                "email": "owner@example.com",
                "accounts": [
                    {"account_id": "acc-other", "is_default": False, "base_uri": "https://na2.docusign.net"},
                    {"account_id": "acc-123", "is_default": True, "base_uri": "https://demo.docusign.net"},
                ],
            })
        if path.endswith("/envelopes") and request.method == "POST":
            if self.fail_envelopes:
                return httpx.Response(400, json={"errorCode": "INVALID_REQUEST_BODY"})
            self._counter += 1
            return httpx.Response(201, json={"envelopeId": f"env-{self._counter}", "status": "sent"})
        match = re.search(r"/envelopes/([^/]+)(/.*)?$", path)
        if match:
            envelope_id, rest = match.group(1), match.group(2) or ""
            if rest == "/views/recipient":
                return httpx.Response(201, json={"url": f"https://demo.docusign.net/signing/{envelope_id}"})
            if rest == "/recipients":
                return httpx.Response(200, json={"signers": self.recipients.get(envelope_id, [])})
            if rest == "/documents/combined":
                if self.fail_documents:
                    return httpx.Response(503, json={"errorCode": "SERVICE_UNAVAILABLE"})
                return httpx.Response(200, content=f"%PDF-executed-{envelope_id}".encode())
            if rest == "":
                return httpx.Response(200, json={
                    "envelopeId": envelope_id,
                    "status": self.envelope_statuses.get(envelope_id, "sent"),
                })
        return httpx.Response(404, json={"errorCode": "NOT_FOUND"})

    def calls(self, method: str, suffix: str):
        return [r for r in self.requests if r.method == method and r.url.path.endswith(suffix)]


@pytest.fixture
def fake_docusign(monkeypatch) -> FakeDocuSign:
    fake = FakeDocuSign()
    monkeypatch.setattr(
        docusign_module, "_http_client", lambda: httpx.Client(transport=httpx.MockTransport(fake.handle))
    )
    monkeypatch.setattr(docusign_module, "DOCUSIGN_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(docusign_module, "DOCUSIGN_INTEGRATION_KEY", "test-integration-key")
    monkeypatch.setattr(docusign_module, "DOCUSIGN_CLIENT_SECRET", "test-client-secret")
    return fake


@pytest.fixture
def client(test_engine, setup_db, mock_storage, fake_docusign):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sign_in(client):
    """Register (if needed) and log in; the client keeps the session cookie."""

    def _sign_in(email="owner@example.com", name="Owner", organization_name="Acme Legal"):
        register = client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": PASSWORD, "organization_name": organization_name},
        )
        assert register.status_code in (201, 400)
        login = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
        assert login.status_code == 200
        return login.json()["user"]

    return _sign_in


@pytest.fixture
def connect_docusign(test_engine):
    def _connect(organization_id: int, expires_in=timedelta(hours=8), refresh_token="ds-refresh-token"):
        with Session(test_engine) as session:
            cred = EsignCredential(
                organization_id=organization_id,
                access_token="stored-access-token",
                refresh_token=refresh_token,
                expires_at=datetime.utcnow() + expires_in,
                account_id="acc-123",
                base_uri="https://demo.docusign.net/restapi",
            )
            session.add(cred)
            session.commit()
            session.refresh(cred)
            return cred

    return _connect


@pytest.fixture
def make_agreement(client):
    def _make(title="Master Services Agreement", content="The parties agree as follows.", **extra):
        response = client.post("/api/agreements", json={"title": title, "content": content, **extra})
        assert response.status_code == 201
        return response.json()["data"]

    return _make
