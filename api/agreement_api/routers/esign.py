import json
import logging
import secrets
from typing import Optional
from urllib.parse import quote
from fastapi import APIRouter, BackgroundTasks, Cookie, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from itsdangerous import BadSignature
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool
from .. import db, docusign
from ..archive import archive_executed_documents
from ..auth import require_organization
from ..config import APP_URL
from ..db import get_session
from ..errors import ServiceError
from ..models import Organization
from ..status import apply_envelope_status
from ..utils import make_token, read_token

logger = logging.getLogger(__name__)

router = APIRouter()

PKCE_COOKIE = "docusign_pkce"
PKCE_MAX_AGE = 10 * 60

def _error_redirect(message: str) -> RedirectResponse:
    return RedirectResponse(f"{APP_URL}/error?message={quote(message)}", status_code=302)

def _envelope_from_payload(payload: dict) -> Optional[dict]:
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("envelopeStatus"), dict):
        return data["envelopeStatus"]
    summary = data.get("envelopeSummary")
    if isinstance(summary, dict):
        return {"envelopeId": data.get("envelopeId") or summary.get("envelopeId"), **summary}
    return None

@router.get("")
def authorization_url(org: Organization = Depends(require_organization)):
    verifier, challenge = docusign.generate_pkce()
    state = secrets.token_urlsafe(16)
    response = JSONResponse({"url": docusign.authorization_url(challenge, state)})
    response.set_cookie(
        PKCE_COOKIE,
        make_token({"state": state, "verifier": verifier, "organization_id": org.id}, salt="docusign-pkce"),
        max_age=PKCE_MAX_AGE,
        httponly=True,
        samesite="lax",
    )
    logger.info("issued DocuSign authorization URL for organization %s", org.id)
    return response

@router.get("/callback")
def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    pkce_cookie: Optional[str] = Cookie(default=None, alias=PKCE_COOKIE),
    session: Session = Depends(get_session),
):
    if error:
        logger.error("DocuSign authorization error: %s %s", error, error_description)
        return _error_redirect(error_description or error)
    if not code:
        return _error_redirect("No authorization code received")
    try:
        pkce = read_token(pkce_cookie or "", max_age=PKCE_MAX_AGE, salt="docusign-pkce")
    except BadSignature:
        return _error_redirect("Authorization session expired, please try again")
    organization_id = pkce.get("organization_id")
    if not state or not secrets.compare_digest(state, pkce.get("state", "")):
        logger.warning("DocuSign callback state mismatch for organization %s", organization_id)
        return _error_redirect("Invalid authorization state")
    if not organization_id or not session.get(Organization, organization_id):
        return _error_redirect("Organization not found")
    try:
        token_data = docusign.exchange_code(code, pkce["verifier"])
        userinfo = docusign.fetch_userinfo(token_data["access_token"])
        docusign.store_credential(session, organization_id, token_data, userinfo)
    except ServiceError as exc:
        return _error_redirect(f"Failed to exchange code for token: {exc.message}")
    response = RedirectResponse(f"{APP_URL}/agreements?docusign=connected", status_code=302)
    response.delete_cookie(PKCE_COOKIE)
    return response

def _apply_webhook_envelope(envelope: dict):
    with Session(db.engine) as session:
        return apply_envelope_status(session, envelope)

@router.post("/webhook")
async def webhook(request: Request, background_tasks: BackgroundTasks):
    body = await request.body()
    if not docusign.verify_webhook_signature(body, request.headers.get(docusign.SIGNATURE_HEADER)):
        logger.warning("rejected DocuSign webhook with invalid signature")
        raise HTTPException(401, "Invalid signature")
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(400, "Invalid payload")
    envelope = _envelope_from_payload(payload) if isinstance(payload, dict) else None
    if not envelope:
        raise HTTPException(400, "Invalid payload")
    logger.info("DocuSign webhook %s for envelope %s", payload.get("event"), envelope.get("envelopeId"))
    # blocking database work runs in the thread pool
    for agreement_id in await run_in_threadpool(_apply_webhook_envelope, envelope):
        background_tasks.add_task(archive_executed_documents, agreement_id)
    return {"success": True}
