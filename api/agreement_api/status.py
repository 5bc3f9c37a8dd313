"""Signature and agreement status transitions.

Agreements move draft -> pending when their first signature is requested and
pending -> signed once every signature is completed. Signatures only move
forward from pending to completed or declined.
"""
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

from sqlmodel import Session, select

from .models import SIGNATURE_STATUSES, Agreement, Signature

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP = {
    "completed": "completed",
    "signed": "completed",
    "declined": "declined",
}
TERMINAL_AGREEMENT_STATUSES = ("signed", "expired")

_FRACTION = re.compile(r"\.(\d{6})\d+")


def local_signer_status(provider_status: Optional[str]) -> str:
    return PROVIDER_STATUS_MAP.get((provider_status or "").lower(), "pending")


def parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a provider timestamp (7 fractional digits, ``Z`` suffix) into naive UTC."""
    if not value:
        return None
    cleaned = _FRACTION.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        logger.warning("unparseable provider timestamp %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def serialize_signature(sig: Signature) -> dict:
    return {
        "id": sig.id,
        "agreement_id": sig.agreement_id,
        "signer_email": sig.signer_email,
        "signer_name": sig.signer_name,
        "status": sig.status,
        "signed_at": sig.signed_at,
        "envelope_id": sig.envelope_id,
        "has_document": bool(sig.document_key),
    }


def mark_pending(agreement: Agreement) -> bool:
    if agreement.status != "draft":
        return False
    agreement.status = "pending"
    agreement.updated_at = datetime.utcnow()
    return True


def advance_signature(sig: Signature, new_status: str, at: Optional[datetime] = None) -> bool:
    if new_status not in SIGNATURE_STATUSES:
        raise ValueError(f"unknown signature status {new_status!r}")
    if new_status == sig.status or new_status == "pending":
        return False
    if sig.status != "pending":
        logger.info(
            "ignoring %s -> %s for signature %s; status only moves forward",
            sig.status, new_status, sig.id,
        )
        return False
    sig.status = new_status
    if new_status == "completed":
        sig.signed_at = at or datetime.utcnow()
    return True


def reconcile_agreement(session: Session, agreement_id: int) -> bool:
    """Flip the agreement to signed when all of its signatures are completed."""
    agreement = session.get(Agreement, agreement_id)
    if not agreement or agreement.status in TERMINAL_AGREEMENT_STATUSES:
        return False
    signatures = session.exec(select(Signature).where(Signature.agreement_id == agreement_id)).all()
    if not signatures or any(s.status != "completed" for s in signatures):
        return False
    agreement.status = "signed"
    agreement.updated_at = datetime.utcnow()
    session.add(agreement)
    logger.info("agreement %s fully signed", agreement_id)
    return True


def _match_signature(rows: List[Signature], email: Optional[str]) -> Optional[Signature]:
    if email:
        for row in rows:
            if row.signer_email.lower() == email.lower():
                return row
    if len(rows) == 1:
        return rows[0]
    return None


def apply_envelope_status(session: Session, envelope: dict) -> List[int]:
    """Apply a provider envelope status; returns ids of agreements that became signed."""
    envelope_id = envelope.get("envelopeId")
    if not envelope_id:
        return []
    rows = session.exec(select(Signature).where(Signature.envelope_id == envelope_id)).all()
    if not rows:
        logger.info("no signature tracks envelope %s", envelope_id)
        return []

    recipients = envelope.get("recipients")
    signers = recipients.get("signers") if isinstance(recipients, dict) else None
    for signer in signers if isinstance(signers, list) else []:
        if not isinstance(signer, dict):
            continue
        target = _match_signature(rows, signer.get("email"))
        if not target:
            continue
        new_status = local_signer_status(signer.get("status"))
        if advance_signature(target, new_status, parse_provider_datetime(signer.get("signedDateTime"))):
            logger.info("signature %s on envelope %s -> %s", target.id, envelope_id, new_status)
            session.add(target)
    session.flush()

    agreement_ids = sorted({row.agreement_id for row in rows})
    if (envelope.get("status") or "").lower() == "voided":
        for agreement_id in agreement_ids:
            agreement = session.get(Agreement, agreement_id)
            if agreement and agreement.status not in TERMINAL_AGREEMENT_STATUSES:
                agreement.status = "expired"
                agreement.updated_at = datetime.utcnow()
                session.add(agreement)
                logger.info("agreement %s expired (envelope %s voided)", agreement_id, envelope_id)

    signed = [agreement_id for agreement_id in agreement_ids if reconcile_agreement(session, agreement_id)]
    session.commit()
    return signed


def status_snapshot(session: Session, agreement_id: int) -> Optional[dict]:
    agreement = session.get(Agreement, agreement_id)
    if not agreement:
        return None
    signatures = session.exec(
        select(Signature).where(Signature.agreement_id == agreement_id).order_by(Signature.id)
    ).all()
    return {
        "status": agreement.status,
        "signatures": [serialize_signature(s) for s in signatures],
    }
