from datetime import datetime
from pydantic import BaseModel
from typing import Optional

class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    organization_name: Optional[str] = None

class LoginRequest(BaseModel):
    email: str
    password: str

class OrganizationCreate(BaseModel):
    name: str

class AgreementCreate(BaseModel):
    title: str
    content: str
    expires_at: Optional[datetime] = None

class SignRequest(BaseModel):
    signer_email: str
    signer_name: str

class AnalyzeText(BaseModel):
    content: str
