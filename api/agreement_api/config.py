import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agreements.db")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "agreement_session")
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", str(30 * 24 * 60 * 60)))

DOCUSIGN_INTEGRATION_KEY = os.getenv("DOCUSIGN_INTEGRATION_KEY", "")
DOCUSIGN_CLIENT_SECRET = os.getenv("DOCUSIGN_CLIENT_SECRET", "")
DOCUSIGN_ACCOUNT_ID = os.getenv("DOCUSIGN_ACCOUNT_ID", "")
DOCUSIGN_BASE_URL = os.getenv("DOCUSIGN_BASE_URL", "https://demo.docusign.net/restapi")
DOCUSIGN_OAUTH_BASE_URL = os.getenv("DOCUSIGN_OAUTH_BASE_URL", "https://account-d.docusign.com")
DOCUSIGN_WEBHOOK_SECRET = os.getenv("DOCUSIGN_WEBHOOK_SECRET", "")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "agreements")
MINIO_SECURE = os.getenv("MINIO_SECURE", "false").lower() in ("1", "true", "yes")

STATUS_POLL_INTERVAL = float(os.getenv("STATUS_POLL_INTERVAL", "5"))
STATUS_HEARTBEAT_INTERVAL = float(os.getenv("STATUS_HEARTBEAT_INTERVAL", "30"))
STATUS_RETRY_MS = int(os.getenv("STATUS_RETRY_MS", "5000"))
