import logging
from datetime import datetime
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.exceptions import HTTPException as StarletteHTTPException
from .config import APP_URL, LOG_LEVEL
from .db import get_session, init_db
from .errors import ServiceError
from .models import User
from .routers import accounts, organizations, agreements, signing, esign, analytics, ai

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("agreement_api")

app = FastAPI(title="Agreement Desk API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db()

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    logger.error("[%s %s] %s: %s", request.method, request.url.path, type(exc).__name__, exc.message)
    body = {"error": exc.message}
    if exc.code:
        body["code"] = exc.code
    return JSONResponse(body, status_code=exc.status_code)

app.include_router(accounts.router, prefix="/api/auth", tags=["auth"])
app.include_router(organizations.router, prefix="/api/organizations", tags=["organizations"])
app.include_router(agreements.router, prefix="/api/agreements", tags=["agreements"])
app.include_router(signing.router, prefix="/api/agreements", tags=["signing"])  # nested
app.include_router(esign.router, prefix="/api/docusign", tags=["docusign"])
app.include_router(ai.router, prefix="/api/ai", tags=["ai"])
app.include_router(analytics.router, prefix="/api", tags=["analytics"])

@app.get("/")
def root():
    return {"ok": True, "service": "agreement-api"}

@app.get("/api/health/db")
def database_health(session: Session = Depends(get_session)):
    try:
        user_count = session.exec(select(func.count()).select_from(User)).one()
    except SQLAlchemyError as exc:
        logger.error("database check failed: %s", exc)
        return JSONResponse(
            {"status": "Error", "error": "Database unavailable", "timestamp": datetime.utcnow().isoformat()},
            status_code=500,
        )
    return {"status": "Connected", "user_count": user_count, "timestamp": datetime.utcnow().isoformat()}
