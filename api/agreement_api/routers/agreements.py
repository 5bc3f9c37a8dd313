import json
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse
from sqlmodel import Session, select
from ..analysis import AnalysisResult, analyze_agreement
from ..auth import load_org_agreement, require_organization
from ..db import get_session
from ..docusign import render_document
from ..models import Agreement, AiAnalysis, Organization, Signature
from ..schemas import AgreementCreate
from ..status import serialize_signature
from ..utils import canonical_json

logger = logging.getLogger(__name__)

router = APIRouter()

def serialize_analysis(analysis: AiAnalysis):
    if not analysis:
        return None
    return {
        "id": analysis.id,
        "agreement_id": analysis.agreement_id,
        "summary": analysis.summary,
        "key_terms": json.loads(analysis.key_terms_json or "{}"),
        "risks": json.loads(analysis.risks_json or "[]"),
        "category": analysis.category,
        "confidence_score": analysis.confidence_score,
        "created_at": analysis.created_at,
        "updated_at": analysis.updated_at,
    }

def _serialize_agreement(agreement: Agreement, signatures=None, analysis=None, include_analysis=False):
    data = {
        "id": agreement.id,
        "organization_id": agreement.organization_id,
        "title": agreement.title,
        "content": agreement.content,
        "status": agreement.status,
        "expires_at": agreement.expires_at,
        "created_at": agreement.created_at,
        "updated_at": agreement.updated_at,
        "signatures": [serialize_signature(s) for s in (signatures or [])],
    }
    if include_analysis:
        data["ai_analysis"] = serialize_analysis(analysis)
    return data

def _naive_utc(value):
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def save_analysis(session: Session, agreement_id: int, result: AnalysisResult) -> AiAnalysis:
    analysis = session.exec(select(AiAnalysis).where(AiAnalysis.agreement_id == agreement_id)).first()
    if not analysis:
        analysis = AiAnalysis(agreement_id=agreement_id, summary="", category="")
    analysis.summary = result.summary
    analysis.key_terms_json = canonical_json({k: v for k, v in result.key_terms.items() if v is not None})
    analysis.risks_json = canonical_json([risk.model_dump() for risk in result.risks])
    analysis.category = result.category
    analysis.confidence_score = result.confidence_score
    analysis.updated_at = datetime.utcnow()
    session.add(analysis)
    session.commit()
    session.refresh(analysis)
    return analysis

@router.get("")
def list_agreements(
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    agreements = session.exec(
        select(Agreement)
        .where(Agreement.organization_id == org.id)
        .order_by(Agreement.created_at.desc(), Agreement.id.desc())
    ).all()
    ids = [a.id for a in agreements]
    by_agreement = {}
    if ids:
        for sig in session.exec(select(Signature).where(Signature.agreement_id.in_(ids)).order_by(Signature.id)).all():
            by_agreement.setdefault(sig.agreement_id, []).append(sig)
    return {"data": [_serialize_agreement(a, by_agreement.get(a.id)) for a in agreements]}

@router.post("", status_code=201)
def create_agreement(
    payload: AgreementCreate,
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    if not payload.title.strip() or not payload.content.strip():
        raise HTTPException(400, "Missing required fields")
    agreement = Agreement(
        organization_id=org.id,
        title=payload.title.strip(),
        content=payload.content,
        expires_at=_naive_utc(payload.expires_at),
    )
    session.add(agreement)
    session.commit()
    session.refresh(agreement)
    logger.info("created agreement %s for organization %s", agreement.id, org.id)
    return {"data": _serialize_agreement(agreement)}

@router.get("/{agreement_id}")
def get_agreement(
    agreement_id: int,
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    agreement = load_org_agreement(session, agreement_id, org)
    signatures = session.exec(
        select(Signature).where(Signature.agreement_id == agreement.id).order_by(Signature.id)
    ).all()
    analysis = session.exec(select(AiAnalysis).where(AiAnalysis.agreement_id == agreement.id)).first()
    return _serialize_agreement(agreement, signatures, analysis, include_analysis=True)

@router.get("/{agreement_id}/document", response_class=HTMLResponse)
def get_agreement_document(
    agreement_id: int,
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    agreement = load_org_agreement(session, agreement_id, org)
    return HTMLResponse(content=render_document(agreement))

@router.post("/{agreement_id}/analyze")
def analyze(
    agreement_id: int,
    session: Session = Depends(get_session),
    org: Organization = Depends(require_organization),
):
    agreement = load_org_agreement(session, agreement_id, org)
    if not agreement.content or not agreement.content.strip():
        raise HTTPException(400, "Agreement has no content to analyze")
    result = analyze_agreement(agreement.content)
    analysis = save_analysis(session, agreement.id, result)
    logger.info("stored analysis %s for agreement %s", analysis.id, agreement.id)
    return serialize_analysis(analysis)
