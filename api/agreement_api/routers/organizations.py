import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session
from ..auth import SessionContext, resolve_session
from ..db import get_session
from ..models import Organization, User
from ..schemas import OrganizationCreate

logger = logging.getLogger(__name__)

router = APIRouter()

def serialize_organization(org: Optional[Organization]):
    if not org:
        return None
    return {"id": org.id, "name": org.name, "created_at": org.created_at}

def serialize_user(user: User, org: Optional[Organization] = None):
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "organization_id": user.organization_id,
        "organization": serialize_organization(org),
    }

def _join_new_organization(session: Session, user: User, name: str):
    org = Organization(name=name)
    session.add(org)
    session.flush()
    user.organization_id = org.id
    session.add(user)
    session.commit()
    session.refresh(org)
    session.refresh(user)
    logger.info("user %s joined new organization %s", user.id, org.id)
    return org

@router.post("")
def create_organization(
    payload: OrganizationCreate,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(resolve_session),
):
    name = payload.name.strip()
    if not name:
        raise HTTPException(400, "Organization name is required")
    user = session.get(User, ctx.user_id)
    org = _join_new_organization(session, user, name)
    return {"organization": serialize_organization(org), "user": serialize_user(user, org)}

@router.get("")
def get_organization(
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(resolve_session),
):
    org = session.get(Organization, ctx.organization_id) if ctx.organization_id else None
    if not org:
        raise HTTPException(404, "User is not part of an organization")
    return serialize_organization(org)

@router.post("/default")
def ensure_default_organization(
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(resolve_session),
):
    user = session.get(User, ctx.user_id)
    org = session.get(Organization, user.organization_id) if user.organization_id else None
    created = False
    if not org:
        org = _join_new_organization(session, user, f"{user.name}'s Organization")
        created = True
    return {"organization": serialize_organization(org), "user": serialize_user(user, org), "created": created}
