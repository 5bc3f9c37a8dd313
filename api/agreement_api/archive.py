import logging
from minio.error import S3Error
from sqlmodel import Session, select
from . import db, docusign
from .errors import EsignError
from .models import Agreement, Signature
from .storage import executed_document_key, save_executed_document

logger = logging.getLogger(__name__)

def archive_executed_documents(agreement_id: int) -> int:
    """Copy the provider's signed PDFs for a fully signed agreement into object storage.

    Runs after the response (background task), so provider failures are logged
    and the affected envelope is skipped; a later refresh retries it.
    """
    with Session(db.engine) as session:
        agreement = session.get(Agreement, agreement_id)
        if not agreement or agreement.status != "signed":
            return 0
        try:
            cred = docusign.get_credential(session, agreement.organization_id)
        except EsignError as exc:
            logger.warning("cannot archive agreement %s: %s", agreement_id, exc.message)
            return 0
        signatures = session.exec(
            select(Signature).where(
                Signature.agreement_id == agreement_id,
                Signature.envelope_id.is_not(None),
                Signature.document_key.is_(None),
            )
        ).all()
        stored = 0
        for sig in signatures:
            try:
                pdf = docusign.download_combined_document(cred, sig.envelope_id)
            except EsignError as exc:
                logger.warning("envelope %s not archived: %s", sig.envelope_id, exc.message)
                continue
            key = executed_document_key(agreement.organization_id, agreement_id, sig.envelope_id)
            try:
                save_executed_document(key, pdf)
            except S3Error as exc:
                logger.warning("envelope %s not archived: %s", sig.envelope_id, exc)
                continue
            sig.document_key = key
            session.add(sig)
            stored += 1
        session.commit()
        logger.info("archived %d executed document(s) for agreement %s", stored, agreement_id)
        return stored
