import logging
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text, inspect
from sqlalchemy.exc import NoSuchTableError
from .config import DATABASE_URL

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=_connect_args)

def init_db():
    from .models import Organization, User, Agreement, Signature, AiAnalysis, EsignCredential
    SQLModel.metadata.create_all(engine)
    _ensure_agreement_expires_column()
    _ensure_signature_unique_index()

def get_session():
    with Session(engine) as session:
        yield session

def _ensure_agreement_expires_column():
    inspector = inspect(engine)
    try:
        columns = [col["name"] for col in inspector.get_columns("agreement")]
    except NoSuchTableError:
        return
    if "expires_at" in columns:
        return
    with engine.begin() as conn:
        conn.execute(text("ALTER TABLE agreement ADD COLUMN expires_at TIMESTAMP"))


def _ensure_signature_unique_index():
    inspector = inspect(engine)
    try:
        indexes = inspector.get_indexes("signature")
        constraints = inspector.get_unique_constraints("signature")
    except NoSuchTableError:
        return
    names = {idx.get("name") for idx in indexes} | {c.get("name") for c in constraints}
    if "uq_signature_agreement_email" in names:
        return
    with engine.begin() as conn:
        duplicates = conn.execute(
            text(
                "SELECT agreement_id, signer_email FROM signature "
                "GROUP BY agreement_id, signer_email HAVING COUNT(*) > 1"
            )
        ).fetchall()
        if duplicates:
            logger.warning(
                "duplicate signer rows detected; resolve before enforcing uniqueness: %s",
                ", ".join(f"{row[0]}:{row[1]}" for row in duplicates),
            )
            return
        conn.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_signature_agreement_email "
                "ON signature(agreement_id, signer_email)"
            )
        )
