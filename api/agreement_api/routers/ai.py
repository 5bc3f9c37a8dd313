from fastapi import APIRouter, Depends
from ..analysis import analyze_agreement
from ..auth import SessionContext, resolve_session
from ..schemas import AnalyzeText

router = APIRouter()

@router.post("/analyze")
def analyze_text(payload: AnalyzeText, ctx: SessionContext = Depends(resolve_session)):
    """Analyze ad-hoc agreement text without storing the result."""
    return analyze_agreement(payload.content).model_dump()
