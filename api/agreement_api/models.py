from typing import Optional
from datetime import datetime
from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import SQLModel, Field as ORMField

AGREEMENT_STATUSES = ("draft", "pending", "signed", "expired")
SIGNATURE_STATUSES = ("pending", "completed", "declined")
RISK_SEVERITIES = ("low", "medium", "high")

class Organization(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    created_at: datetime = ORMField(default_factory=datetime.utcnow)

class User(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    organization_id: Optional[int] = ORMField(default=None, index=True)
    name: str
    email: str = ORMField(index=True, unique=True)
    password_hash: str
    created_at: datetime = ORMField(default_factory=datetime.utcnow)

class Agreement(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    organization_id: int = ORMField(index=True)
    title: str
    content: str = ORMField(sa_column=Column(Text, nullable=False))
    status: str = "draft"  # draft|pending|signed|expired
    expires_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)

class Signature(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("agreement_id", "signer_email", name="uq_signature_agreement_email"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    agreement_id: int = ORMField(index=True)
    signer_email: str
    signer_name: str
    status: str = "pending"  # pending|completed|declined
    signed_at: Optional[datetime] = None
    envelope_id: Optional[str] = ORMField(default=None, index=True)
    document_key: Optional[str] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)

class AiAnalysis(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    agreement_id: int = ORMField(index=True, unique=True)
    summary: str = ORMField(sa_column=Column(Text, nullable=False))
    key_terms_json: str = "{}"
    risks_json: str = "[]"
    category: str
    confidence_score: float = 0.0
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)

class EsignCredential(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    organization_id: int = ORMField(index=True, unique=True)
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    account_id: str
    base_uri: str
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)
