import base64
import json
from datetime import timedelta
from urllib.parse import parse_qs

from sqlmodel import Session, select

from agreement_api.models import Agreement, Signature
from agreement_api.routers import signing as signing_router


def request_signature(client, agreement_id, email, name="Signer"):
    resp = client.post(
        f"/api/agreements/{agreement_id}/sign",
        json={"signer_email": email, "signer_name": name},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_sign_requires_connected_provider(client, sign_in, make_agreement):
    sign_in()
    agreement = make_agreement()
    resp = client.post(
        f"/api/agreements/{agreement['id']}/sign",
        json={"signer_email": "jane@example.com", "signer_name": "Jane"},
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "ESIGN_NOT_CONNECTED"


def test_sign_creates_envelope_and_moves_to_pending(client, sign_in, make_agreement, connect_docusign, fake_docusign):
    user = sign_in()
    connect_docusign(user["organization_id"])
    agreement = make_agreement(title="Consulting Agreement")

    body = request_signature(client, agreement["id"], "Jane@Example.com", "Jane Doe")
    assert body["redirect_url"] == "https://demo.docusign.net/signing/env-1"
    signature = body["signature"]
    assert signature["status"] == "pending"
    assert signature["envelope_id"] == "env-1"
    assert signature["signer_email"] == "jane@example.com"

    detail = client.get(f"/api/agreements/{agreement['id']}").json()
    assert detail["status"] == "pending"

    [envelope_call] = fake_docusign.calls("POST", "/envelopes")
    assert envelope_call.url.path == "/restapi/v2.1/accounts/acc-123/envelopes"
    assert envelope_call.headers["authorization"] == "Bearer stored-access-token"
    envelope = json.loads(envelope_call.content)
    assert envelope["status"] == "sent"
    signer = envelope["recipients"]["signers"][0]
    assert signer["clientUserId"] == str(agreement["id"])
    assert signer["tabs"]["signHereTabs"][0]["anchorString"] == "/sig1/"
    document = base64.b64decode(envelope["documents"][0]["documentBase64"]).decode()
    assert "Consulting Agreement" in document

    [view_call] = fake_docusign.calls("POST", "/views/recipient")
    view = json.loads(view_call.content)
    assert view["returnUrl"].endswith(f"/agreements/{agreement['id']}/signed")


def test_signature_rows_are_unique_per_signer(client, sign_in, make_agreement, connect_docusign, test_engine):
    user = sign_in()
    connect_docusign(user["organization_id"])
    agreement = make_agreement()

    request_signature(client, agreement["id"], "jane@example.com")
    request_signature(client, agreement["id"], "bob@example.com")
    again = request_signature(client, agreement["id"], "jane@example.com", "Jane Renamed")
    assert again["signature"]["envelope_id"] == "env-3"
    assert again["signature"]["signer_name"] == "Jane Renamed"

    with Session(test_engine) as session:
        rows = session.exec(select(Signature).where(Signature.agreement_id == agreement["id"])).all()
        assert sorted(r.signer_email for r in rows) == ["bob@example.com", "jane@example.com"]


def test_sign_validates_signer_fields(client, sign_in, make_agreement, connect_docusign):
    user = sign_in()
    connect_docusign(user["organization_id"])
    agreement = make_agreement()
    resp = client.post(
        f"/api/agreements/{agreement['id']}/sign",
        json={"signer_email": " ", "signer_name": "Jane"},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Signer email and name are required"}


def test_provider_failure_leaves_agreement_in_draft(client, sign_in, make_agreement, connect_docusign, fake_docusign, test_engine):
    user = sign_in()
    connect_docusign(user["organization_id"])
    agreement = make_agreement()
    fake_docusign.fail_envelopes = True

    resp = client.post(
        f"/api/agreements/{agreement['id']}/sign",
        json={"signer_email": "jane@example.com", "signer_name": "Jane"},
    )
    assert resp.status_code == 500
    assert resp.json() == {"error": "E-signature provider returned 400"}

    with Session(test_engine) as session:
        assert session.get(Agreement, agreement["id"]).status == "draft"
        assert session.exec(select(Signature)).first() is None


def test_expired_token_is_refreshed(client, sign_in, make_agreement, connect_docusign, fake_docusign):
    user = sign_in()
    connect_docusign(user["organization_id"], expires_in=timedelta(hours=-1))
    agreement = make_agreement()

    request_signature(client, agreement["id"], "jane@example.com")

    [token_call] = fake_docusign.calls("POST", "/oauth/token")
    form = parse_qs(token_call.content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["ds-refresh-token"]
    [envelope_call] = fake_docusign.calls("POST", "/envelopes")
    assert envelope_call.headers["authorization"] == "Bearer ds-access-token"


def test_expired_token_without_refresh_requires_reauthorization(client, sign_in, make_agreement, connect_docusign):
    user = sign_in()
    connect_docusign(user["organization_id"], expires_in=timedelta(hours=-1), refresh_token=None)
    agreement = make_agreement()
    resp = client.post(
        f"/api/agreements/{agreement['id']}/sign",
        json={"signer_email": "jane@example.com", "signer_name": "Jane"},
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "Token expired. Please reauthorize."


def test_completed_signer_cannot_be_requested_again(client, sign_in, make_agreement, connect_docusign, test_engine):
    user = sign_in()
    connect_docusign(user["organization_id"])
    agreement = make_agreement()
    request_signature(client, agreement["id"], "jane@example.com")
    request_signature(client, agreement["id"], "bob@example.com")
    with Session(test_engine) as session:
        row = session.exec(select(Signature).where(Signature.signer_email == "jane@example.com")).one()
        row.status = "completed"
        session.add(row)
        session.commit()

    resp = client.post(
        f"/api/agreements/{agreement['id']}/sign",
        json={"signer_email": "jane@example.com", "signer_name": "Jane"},
    )
    assert resp.status_code == 409


def test_refresh_polls_provider_and_archives(client, sign_in, make_agreement, connect_docusign, fake_docusign, mock_storage):
    user = sign_in()
    connect_docusign(user["organization_id"])
    agreement = make_agreement()
    request_signature(client, agreement["id"], "jane@example.com")

    fake_docusign.envelope_statuses["env-1"] = "completed"
    fake_docusign.recipients["env-1"] = [
        {"email": "jane@example.com", "status": "completed", "signedDateTime": "2026-10-01T09:30:00.1234567Z"},
    ]
    resp = client.post(f"/api/agreements/{agreement['id']}/signatures/refresh")
    assert resp.status_code == 200
    snapshot = resp.json()
    assert snapshot["status"] == "signed"
    [signature] = snapshot["signatures"]
    assert signature["status"] == "completed"
    assert signature["signed_at"] == "2026-10-01T09:30:00.123456"

    key = f"organizations/{user['organization_id']}/agreements/{agreement['id']}/envelopes/env-1.pdf"
    assert mock_storage[key] == b"%PDF-executed-env-1"

    pdf = client.get(f"/api/agreements/{agreement['id']}/signatures/{signature['id']}/pdf")
    assert pdf.status_code == 200
    assert pdf.content == b"%PDF-executed-env-1"
    assert pdf.headers["content-type"] == "application/pdf"


def test_refresh_retries_failed_archive(client, sign_in, make_agreement, connect_docusign, fake_docusign, mock_storage):
    user = sign_in()
    connect_docusign(user["organization_id"])
    agreement = make_agreement()
    request_signature(client, agreement["id"], "jane@example.com")
    fake_docusign.envelope_statuses["env-1"] = "completed"
    fake_docusign.recipients["env-1"] = [{"email": "jane@example.com", "status": "completed"}]

    fake_docusign.fail_documents = True
    first = client.post(f"/api/agreements/{agreement['id']}/signatures/refresh").json()
    assert first["status"] == "signed"
    assert first["signatures"][0]["has_document"] is False
    assert mock_storage == {}

    fake_docusign.fail_documents = False
    client.post(f"/api/agreements/{agreement['id']}/signatures/refresh")
    key = f"organizations/{user['organization_id']}/agreements/{agreement['id']}/envelopes/env-1.pdf"
    assert mock_storage[key] == b"%PDF-executed-env-1"
    detail = client.get(f"/api/agreements/{agreement['id']}").json()
    assert detail["signatures"][0]["has_document"] is True

    client.post(f"/api/agreements/{agreement['id']}/signatures/refresh")
    assert len(fake_docusign.calls("GET", "/documents/combined")) == 2


def test_executed_pdf_missing_until_archived(client, sign_in, make_agreement, connect_docusign):
    user = sign_in()
    connect_docusign(user["organization_id"])
    agreement = make_agreement()
    signature = request_signature(client, agreement["id"], "jane@example.com")["signature"]
    resp = client.get(f"/api/agreements/{agreement['id']}/signatures/{signature['id']}/pdf")
    assert resp.status_code == 404
    assert resp.json() == {"error": "executed document not archived"}


def _events(body: str):
    return [chunk for chunk in body.split("\n\n") if chunk.strip()]


def test_status_stream_ends_for_signed_agreement(client, sign_in, make_agreement, test_engine):
    sign_in()
    agreement = make_agreement()
    with Session(test_engine) as session:
        stored = session.get(Agreement, agreement["id"])
        stored.status = "signed"
        session.add(stored)
        session.commit()

    with client.stream("GET", f"/api/agreements/{agreement['id']}/status") as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        body = "".join(resp.iter_text())

    events = _events(body)
    assert events[0] == "retry: 5000"
    assert len(events) == 2
    snapshot = json.loads(events[1][len("data: "):])
    assert snapshot == {"status": "signed", "signatures": []}


def test_status_stream_sends_changes_and_heartbeats(client, sign_in, make_agreement, monkeypatch):
    sign_in()
    agreement = make_agreement()
    snapshots = iter([
        {"status": "pending", "signatures": []},
        {"status": "pending", "signatures": []},
        {"status": "signed", "signatures": []},
    ])
    monkeypatch.setattr(signing_router, "_load_snapshot", lambda agreement_id: next(snapshots))
    monkeypatch.setattr(signing_router, "STATUS_HEARTBEAT_INTERVAL", 0)

    with client.stream("GET", f"/api/agreements/{agreement['id']}/status") as resp:
        body = "".join(resp.iter_text())

    assert _events(body) == [
        "retry: 5000",
        'data: {"status": "pending", "signatures": []}',
        ": heartbeat",
        'data: {"status": "signed", "signatures": []}',
    ]


def test_status_stream_requires_access(client, sign_in, make_agreement):
    sign_in()
    agreement = make_agreement()
    sign_in(email="rival@example.com", name="Rival", organization_name="Rival LLC")
    assert client.get(f"/api/agreements/{agreement['id']}/status").status_code == 401
    assert client.get("/api/agreements/4242/status").status_code == 404
