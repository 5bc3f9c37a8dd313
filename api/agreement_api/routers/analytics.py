from collections import Counter
from datetime import datetime, timedelta
from fastapi import APIRouter, Depends
from sqlmodel import Session, select
from ..auth import SessionContext, resolve_session
from ..db import get_session
from ..models import AGREEMENT_STATUSES, Agreement, AiAnalysis

router = APIRouter()

REVIEW_LEAD = timedelta(days=7)
RENEWAL_LEAD = timedelta(days=30)

def _org_agreements(session: Session, ctx: SessionContext):
    # a user without an organization simply has nothing to report
    if not ctx.organization_id:
        return []
    return session.exec(
        select(Agreement).where(Agreement.organization_id == ctx.organization_id).order_by(Agreement.created_at)
    ).all()

@router.get("/analytics/metrics")
def metrics(
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(resolve_session),
):
    agreements = _org_agreements(session, ctx)
    ids = [a.id for a in agreements]
    categories = {}
    if ids:
        rows = session.exec(
            select(AiAnalysis.agreement_id, AiAnalysis.category).where(AiAnalysis.agreement_id.in_(ids))
        ).all()
        categories = {agreement_id: category for agreement_id, category in rows}
    by_status = Counter(a.status for a in agreements)
    by_type = Counter(categories.get(a.id) or "Uncategorized" for a in agreements)
    by_month = Counter(a.created_at.strftime("%Y-%m") for a in agreements)
    return {
        "agreement_count": len(agreements),
        "draft_count": by_status.get("draft", 0),
        "pending_count": by_status.get("pending", 0),
        "signed_count": by_status.get("signed", 0),
        "expired_count": by_status.get("expired", 0),
        "agreements_by_status": [{"name": s, "value": by_status.get(s, 0)} for s in AGREEMENT_STATUSES],
        "agreements_by_type": [{"name": name, "value": count} for name, count in sorted(by_type.items())],
        "agreement_trends": [{"month": month, "count": count} for month, count in sorted(by_month.items())],
    }

@router.get("/calendar/events")
def calendar_events(
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(resolve_session),
):
    events = []
    for agreement in _org_agreements(session, ctx):
        if agreement.expires_at:
            events.append({
                "id": f"deadline-{agreement.id}",
                "agreement_id": agreement.id,
                "title": f"{agreement.title} - Deadline",
                "date": agreement.expires_at,
                "type": "deadline",
            })
            events.append({
                "id": f"review-{agreement.id}",
                "agreement_id": agreement.id,
                "title": f"{agreement.title} - Review",
                "date": agreement.expires_at - REVIEW_LEAD,
                "type": "review",
            })
        if agreement.status == "signed":
            events.append({
                "id": f"renewal-{agreement.id}",
                "agreement_id": agreement.id,
                "title": f"{agreement.title} - Renewal",
                "date": (agreement.expires_at or datetime.utcnow()) - RENEWAL_LEAD,
                "type": "renewal",
            })
    events.sort(key=lambda e: e["date"])
    return events
