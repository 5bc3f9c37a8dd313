import asyncio
import json
import logging
import time
from minio.error import S3Error
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool
from .. import db, docusign
from ..archive import archive_executed_documents
from ..auth import load_org_agreement, require_organization
from ..config import STATUS_HEARTBEAT_INTERVAL, STATUS_POLL_INTERVAL, STATUS_RETRY_MS
from ..db import get_session
from ..models import Organization, Signature
from ..schemas import SignRequest
from ..status import (
    TERMINAL_AGREEMENT_STATUSES,
    apply_envelope_status,
    mark_pending,
    serialize_signature,
    status_snapshot,
)
from ..storage import load_executed_document

logger = logging.getLogger(__name__)

router = APIRouter()

# ---------- helpers ----------
def _load_snapshot(agreement_id: int):
    with Session(db.engine) as session:
        return status_snapshot(session, agreement_id)

def _has_unarchived_documents(session: Session, agreement_id: int) -> bool:
    return session.exec(
        select(Signature).where(
            Signature.agreement_id == agreement_id,
            Signature.envelope_id.is_not(None),
            Signature.document_key.is_(None),
        )
    ).first() is not None

async def _status_events(request: Request, agreement_id: int):
    yield f"retry: {STATUS_RETRY_MS}\n\n"
    last_payload = None
    last_sent = time.monotonic()
    while not await request.is_disconnected():
        snapshot = await run_in_threadpool(_load_snapshot, agreement_id)
        if snapshot is None:
            break
        payload = json.dumps(jsonable_encoder(snapshot))
        now = time.monotonic()
        if payload != last_payload:
            yield f"data: {payload}\n\n"
            last_payload, last_sent = payload, now
        elif now - last_sent >= STATUS_HEARTBEAT_INTERVAL:
            yield ": heartbeat\n\n"
            last_sent = now
        if snapshot["status"] in TERMINAL_AGREEMENT_STATUSES:
            break
        await asyncio.sleep(STATUS_POLL_INTERVAL)

# ---------- routes ----------

@router.post("/{agreement_id}/sign")
def request_signature(
    agreement_id: int,
    payload: SignRequest,
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    signer_email = payload.signer_email.strip().lower()
    signer_name = payload.signer_name.strip()
    if not signer_email or not signer_name:
        raise HTTPException(400, "Signer email and name are required")
    agreement = load_org_agreement(session, agreement_id, org)
    if agreement.status in TERMINAL_AGREEMENT_STATUSES:
        raise HTTPException(409, f"Agreement is already {agreement.status}")
    signature = session.exec(
        select(Signature).where(Signature.agreement_id == agreement.id, Signature.signer_email == signer_email)
    ).first()
    if signature and signature.status == "completed":
        raise HTTPException(409, "Signer has already signed this agreement")

    cred = docusign.get_credential(session, org.id)
    envelope_id = docusign.create_envelope(cred, agreement, signer_email, signer_name)
    redirect_url = docusign.create_recipient_view(cred, envelope_id, agreement.id, signer_email, signer_name)

    if not signature:
        signature = Signature(agreement_id=agreement.id, signer_email=signer_email, signer_name=signer_name)
    signature.signer_name = signer_name
    signature.status = "pending"
    signature.signed_at = None
    signature.envelope_id = envelope_id
    signature.document_key = None
    session.add(signature)
    if mark_pending(agreement):
        session.add(agreement)
    session.commit()
    session.refresh(signature)
    logger.info("signature %s requested for agreement %s (envelope %s)", signature.id, agreement.id, envelope_id)
    return {"signature": serialize_signature(signature), "redirect_url": redirect_url}

@router.post("/{agreement_id}/signatures/refresh")
def refresh_signatures(
    agreement_id: int,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    agreement = load_org_agreement(session, agreement_id, org)
    envelope_ids = sorted({
        s.envelope_id
        for s in session.exec(select(Signature).where(Signature.agreement_id == agreement.id)).all()
        if s.envelope_id
    })
    if envelope_ids:
        cred = docusign.get_credential(session, org.id)
        for envelope_id in envelope_ids:
            apply_envelope_status(session, docusign.get_envelope_status(cred, envelope_id))
    session.refresh(agreement)
    # also retries archives that failed after an earlier signing
    if agreement.status == "signed" and _has_unarchived_documents(session, agreement.id):
        background_tasks.add_task(archive_executed_documents, agreement.id)
    return status_snapshot(session, agreement.id)

@router.get("/{agreement_id}/signatures/{signature_id}/pdf")
def get_executed_pdf(
    agreement_id: int,
    signature_id: int,
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    agreement = load_org_agreement(session, agreement_id, org)
    signature = session.get(Signature, signature_id)
    if not signature or signature.agreement_id != agreement.id:
        raise HTTPException(404, "signature not found")
    if not signature.document_key:
        raise HTTPException(404, "executed document not archived")
    try:
        pdf_bytes = load_executed_document(signature.document_key)
    except S3Error as exc:
        if exc.code != "NoSuchKey":
            raise
        logger.warning("executed document %s missing from storage", signature.document_key)
        raise HTTPException(404, "executed document not archived")
    filename = f"agreement-{agreement.id}-signature-{signature.id}.pdf"
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@router.get("/{agreement_id}/status")
def stream_status(
    agreement_id: int,
    request: Request,
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    load_org_agreement(session, agreement_id, org)
    return StreamingResponse(
        _status_events(request, agreement_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
