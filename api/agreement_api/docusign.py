"""DocuSign client: OAuth (authorization code + PKCE), envelopes, Connect webhooks.

Every outbound call goes through ``_http_client()`` with a fixed timeout and no
retry. Provider failures are raised as ``EsignError`` and rendered by the
application's error handler.
"""
import base64
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from html import escape
from typing import Optional, Tuple
from urllib.parse import urlencode

import httpx
from sqlmodel import Session, select

from .config import (
    APP_URL,
    DOCUSIGN_ACCOUNT_ID,
    DOCUSIGN_BASE_URL,
    DOCUSIGN_CLIENT_SECRET,
    DOCUSIGN_INTEGRATION_KEY,
    DOCUSIGN_OAUTH_BASE_URL,
    DOCUSIGN_WEBHOOK_SECRET,
)
from .errors import EsignError, EsignNotConnected
from .models import Agreement, EsignCredential

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)
SIGNATURE_HEADER = "X-DocuSign-Signature-1"
SIGN_ANCHOR = "/sig1/"


def _http_client() -> httpx.Client:
    return httpx.Client(timeout=HTTP_TIMEOUT)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def redirect_uri() -> str:
    return f"{APP_URL}/api/docusign/callback"


# ---------- OAuth ----------

def generate_pkce() -> Tuple[str, str]:
    """Return ``(verifier, challenge)`` for the S256 PKCE method."""
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode()).digest())
    return verifier, challenge


def authorization_url(challenge: str, state: str) -> str:
    params = {
        "response_type": "code",
        "scope": "signature",
        "client_id": DOCUSIGN_INTEGRATION_KEY,
        "redirect_uri": redirect_uri(),
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": state,
        "prompt": "login",
    }
    return f"{DOCUSIGN_OAUTH_BASE_URL}/oauth/auth?{urlencode(params)}"


def _basic_auth_header() -> str:
    raw = f"{DOCUSIGN_INTEGRATION_KEY}:{DOCUSIGN_CLIENT_SECRET}".encode()
    return f"Basic {base64.b64encode(raw).decode()}"


def _token_request(data: dict) -> dict:
    try:
        with _http_client() as client:
            resp = client.post(
                f"{DOCUSIGN_OAUTH_BASE_URL}/oauth/token",
                headers={
                    "Authorization": _basic_auth_header(),
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
                data=data,
            )
    except httpx.HTTPError as exc:
        logger.error("DocuSign token request failed: %s", exc)
        raise EsignError("Token request failed") from exc
    if resp.status_code != 200:
        logger.error("DocuSign token request rejected: %s %s", resp.status_code, resp.text)
        raise EsignError(f"Token request failed with status {resp.status_code}")
    return resp.json()


def exchange_code(code: str, verifier: str) -> dict:
    return _token_request({
        "grant_type": "authorization_code",
        "code": code,
        "code_verifier": verifier,
        "redirect_uri": redirect_uri(),
    })


def refresh_access_token(refresh_token: str) -> dict:
    return _token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})


def fetch_userinfo(access_token: str) -> dict:
    try:
        with _http_client() as client:
            resp = client.get(
                f"{DOCUSIGN_OAUTH_BASE_URL}/oauth/userinfo",
                headers={"Authorization": f"Bearer {access_token}"},
            )
    except httpx.HTTPError as exc:
        logger.error("DocuSign userinfo request failed: %s", exc)
        raise EsignError("Userinfo request failed") from exc
    if resp.status_code != 200:
        logger.error("DocuSign userinfo rejected: %s %s", resp.status_code, resp.text)
        raise EsignError(f"Userinfo request failed with status {resp.status_code}")
    return resp.json()


def _default_account(userinfo: dict) -> dict:
    accounts = userinfo.get("accounts") or []
    return next((a for a in accounts if a.get("is_default")), accounts[0] if accounts else {})


def store_credential(session: Session, organization_id: int, token_data: dict, userinfo: dict) -> EsignCredential:
    account = _default_account(userinfo)
    base_uri = (account.get("base_uri") or DOCUSIGN_BASE_URL).rstrip("/")
    # userinfo reports the bare host; the REST API lives under /restapi
    if not base_uri.endswith("/restapi"):
        base_uri = f"{base_uri}/restapi"
    cred = session.exec(
        select(EsignCredential).where(EsignCredential.organization_id == organization_id)
    ).first()
    if not cred:
        cred = EsignCredential(
            organization_id=organization_id,
            access_token="",
            expires_at=datetime.utcnow(),
            account_id="",
            base_uri=base_uri,
        )
    _apply_token(cred, token_data)
    cred.account_id = account.get("account_id") or DOCUSIGN_ACCOUNT_ID
    cred.base_uri = base_uri
    session.add(cred)
    session.commit()
    session.refresh(cred)
    logger.info("stored DocuSign credential for organization %s (account %s)", organization_id, cred.account_id)
    return cred


def _apply_token(cred: EsignCredential, token_data: dict) -> None:
    cred.access_token = token_data["access_token"]
    cred.refresh_token = token_data.get("refresh_token") or cred.refresh_token
    cred.expires_at = datetime.utcnow() + timedelta(seconds=int(token_data.get("expires_in", 3600)))
    cred.updated_at = datetime.utcnow()


def get_credential(session: Session, organization_id: int) -> EsignCredential:
    cred = session.exec(
        select(EsignCredential).where(EsignCredential.organization_id == organization_id)
    ).first()
    if not cred:
        raise EsignNotConnected()
    if datetime.utcnow() < cred.expires_at - TOKEN_EXPIRY_SKEW:
        return cred
    if not cred.refresh_token:
        raise EsignNotConnected("Token expired. Please reauthorize.")
    logger.info("refreshing DocuSign token for organization %s", organization_id)
    _apply_token(cred, refresh_access_token(cred.refresh_token))
    session.add(cred)
    session.commit()
    session.refresh(cred)
    return cred


# ---------- envelopes ----------

def render_document(agreement: Agreement) -> str:
    paragraphs = "".join(
        f"<p>{escape(block).replace(chr(10), '<br />')}</p>"
        for block in agreement.content.split("\n\n")
        if block.strip()
    )
    return f"""<!DOCTYPE html>
<html>
  <body style="font-family: Arial, sans-serif; max-width: 800px; margin: 0 auto; padding: 20px;">
    <h1 style="color: #333;">{escape(agreement.title)}</h1>
    {paragraphs}
    <div style="margin: 40px 0;">
      <p>Please sign below to confirm:</p>
      <p style="border-bottom: 1px solid #999; margin-top: 50px;">Signature: <span style="color: #ffffff;">{SIGN_ANCHOR}</span></p>
    </div>
  </body>
</html>
"""


def _api_url(cred: EsignCredential) -> str:
    return f"{cred.base_uri.rstrip('/')}/v2.1/accounts/{cred.account_id}"


def _send(cred: EsignCredential, method: str, path: str, **kwargs) -> httpx.Response:
    url = f"{_api_url(cred)}{path}"
    try:
        with _http_client() as client:
            resp = client.request(
                method, url, headers={"Authorization": f"Bearer {cred.access_token}"}, **kwargs
            )
    except httpx.HTTPError as exc:
        logger.error("DocuSign request failed: %s %s: %s", method, path, exc)
        raise EsignError("E-signature provider request failed") from exc
    if resp.status_code not in (200, 201):
        logger.error("DocuSign error: %s %s -> %s %s", method, path, resp.status_code, resp.text)
        raise EsignError(f"E-signature provider returned {resp.status_code}")
    return resp


def create_envelope(cred: EsignCredential, agreement: Agreement, signer_email: str, signer_name: str) -> str:
    document = render_document(agreement)
    envelope = {
        "emailSubject": f"Please sign: {agreement.title}"[:100],
        "documents": [{
            "documentBase64": base64.b64encode(document.encode()).decode(),
            "name": agreement.title,
            "fileExtension": "html",
            "documentId": "1",
        }],
        "recipients": {
            "signers": [{
                "email": signer_email,
                "name": signer_name,
                "recipientId": "1",
                "routingOrder": "1",
                "clientUserId": str(agreement.id),
                "tabs": {
                    "signHereTabs": [{
                        "anchorString": SIGN_ANCHOR,
                        "anchorUnits": "pixels",
                        "anchorXOffset": "20",
                        "anchorYOffset": "10",
                    }],
                },
            }],
        },
        "status": "sent",
    }
    resp = _send(cred, "POST", "/envelopes", json=envelope)
    envelope_id = resp.json()["envelopeId"]
    logger.info("created envelope %s for agreement %s", envelope_id, agreement.id)
    return envelope_id


def create_recipient_view(
    cred: EsignCredential, envelope_id: str, agreement_id: int, signer_email: str, signer_name: str
) -> str:
    view_request = {
        "authenticationMethod": "none",
        "clientUserId": str(agreement_id),
        "recipientId": "1",
        "returnUrl": f"{APP_URL}/agreements/{agreement_id}/signed",
        "userName": signer_name,
        "email": signer_email,
    }
    resp = _send(cred, "POST", f"/envelopes/{envelope_id}/views/recipient", json=view_request)
    return resp.json()["url"]


def get_envelope_status(cred: EsignCredential, envelope_id: str) -> dict:
    """Envelope status in the same shape the Connect webhook delivers."""
    envelope = _send(cred, "GET", f"/envelopes/{envelope_id}").json()
    recipients = _send(cred, "GET", f"/envelopes/{envelope_id}/recipients").json()
    return {
        "envelopeId": envelope_id,
        "status": envelope.get("status", "unknown"),
        "recipients": {"signers": recipients.get("signers") or []},
    }


def download_combined_document(cred: EsignCredential, envelope_id: str) -> bytes:
    return _send(cred, "GET", f"/envelopes/{envelope_id}/documents/combined").content


# ---------- webhooks ----------

def verify_webhook_signature(body: bytes, signature: Optional[str]) -> bool:
    if not DOCUSIGN_WEBHOOK_SECRET:
        logger.error("DOCUSIGN_WEBHOOK_SECRET not configured")
        return False
    if not signature:
        return False
    digest = hmac.new(DOCUSIGN_WEBHOOK_SECRET.encode(), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, signature)
