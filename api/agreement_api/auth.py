import logging
from typing import Optional
from fastapi import Cookie, Depends, HTTPException, Response, status
from itsdangerous import BadSignature
from pydantic import BaseModel
from sqlmodel import Session

from .config import SESSION_COOKIE_NAME, SESSION_MAX_AGE
from .db import get_session
from .models import Agreement, Organization, User
from .utils import make_token, read_token

logger = logging.getLogger(__name__)


class SessionContext(BaseModel):
    user_id: int
    email: str
    organization_id: Optional[int] = None


def start_session(response: Response, user: User) -> None:
    token = make_token({"user_id": user.id})
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
    )


def end_session(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME)


def resolve_session(
    session_cookie: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE_NAME),
    session: Session = Depends(get_session),
) -> SessionContext:
    if not session_cookie:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        data = read_token(session_cookie, max_age=SESSION_MAX_AGE)
    except BadSignature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    user = session.get(User, data.get("user_id"))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return SessionContext(user_id=user.id, email=user.email, organization_id=user.organization_id)


def require_organization(
    context: SessionContext = Depends(resolve_session),
    session: Session = Depends(get_session),
) -> Organization:
    org = session.get(Organization, context.organization_id) if context.organization_id else None
    if not org:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "User has no organization", "code": "NO_ORGANIZATION"},
        )
    return org


def load_org_agreement(session: Session, agreement_id: int, org: Organization) -> Agreement:
    agreement = session.get(Agreement, agreement_id)
    if not agreement:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agreement not found")
    if agreement.organization_id != org.id:
        logger.info("agreement %s requested from organization %s", agreement_id, org.id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return agreement
