import logging
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlmodel import Session, select
from ..auth import SessionContext, end_session, resolve_session, start_session
from ..db import get_session
from ..models import Organization, User
from ..schemas import LoginRequest, RegisterRequest
from ..utils import hash_password, verify_password
from .organizations import serialize_organization, serialize_user

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("/register", status_code=201)
def register(payload: RegisterRequest, session: Session = Depends(get_session)):
    email = payload.email.strip().lower()
    if not payload.name.strip() or not email or not payload.password:
        raise HTTPException(400, "Name, email and password are required")
    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        raise HTTPException(400, "User already exists")
    org = None
    if payload.organization_name and payload.organization_name.strip():
        org = Organization(name=payload.organization_name.strip())
        session.add(org)
        session.flush()
    user = User(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        organization_id=org.id if org else None,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    if org:
        session.refresh(org)
    logger.info("registered user %s", user.id)
    return {"user": serialize_user(user, org), "organization": serialize_organization(org)}

@router.post("/login")
def login(payload: LoginRequest, response: Response, session: Session = Depends(get_session)):
    user = session.exec(select(User).where(User.email == payload.email.strip().lower())).first()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid credentials")
    start_session(response, user)
    org = session.get(Organization, user.organization_id) if user.organization_id else None
    return {"user": serialize_user(user, org)}

@router.post("/logout")
def logout(response: Response):
    end_session(response)
    return {"ok": True}

@router.get("/session")
def current_session(
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(resolve_session),
):
    user = session.get(User, ctx.user_id)
    org = session.get(Organization, user.organization_id) if user.organization_id else None
    return {"user": serialize_user(user, org)}
