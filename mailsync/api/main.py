"""
FastAPI Backend for the Mailbox Sync Service

Owners save their IMAP account, create sync jobs and drive them batch by
batch; ingested emails are served read-only.
"""
from fastapi import FastAPI, Request as FastAPIRequest
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from sqlalchemy import text
import logging
import uuid

from mailsync.api.routes import accounts, emails, sync
from mailsync.core.config import get_settings
from mailsync.core.database import get_db, init_db
from mailsync.core.errors import sanitize_error_message

APP_VERSION = "1.0.0"

settings = get_settings()
logger = logging.getLogger(__name__)
error_logger = logging.getLogger("api.errors")


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app = FastAPI(
    title="Mailbox Sync API",
    description="Resumable IMAP mailbox ingestion",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)


@app.exception_handler(Exception)
async def global_exception_handler(request: FastAPIRequest, exc: Exception):
    """
    Log unexpected errors with an error ID and return a generic message.
    Exception text is scrubbed of credentials before it is logged.
    """
    error_id = str(uuid.uuid4())
    error_logger.error(
        f"Error {error_id}: {type(exc).__name__}: {sanitize_error_message(str(exc))}",
        exc_info=True,
        extra={
            "error_id": error_id,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred",
            "error_id": error_id,
        }
    )


@app.on_event("startup")
async def startup_event():
    """Configure logging and initialize the database connection"""
    logging.basicConfig(level=settings.log_level.upper(), format=settings.log_format)
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {sanitize_error_message(str(e))}")
        # Continue anyway - /health reports the database as disconnected


# Security headers middleware (add first - outermost)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "X-Owner-Id"],
    max_age=3600,
)

app.include_router(sync.router)
app.include_router(accounts.router)
app.include_router(emails.router)


@app.get("/")
async def root():
    return {"name": "Mailbox Sync API", "version": APP_VERSION, "status": "running"}


@app.get("/health")
def health_check():
    """Health check endpoint (no auth required)"""
    health = {
        "status": "healthy",
        "version": APP_VERSION,
        "database": "unknown",
        "checks": {}
    }

    sessions = get_db()
    try:
        db = next(sessions)
        db.execute(text("SELECT 1"))
        health["database"] = "connected"
        health["checks"]["database"] = "ok"
    except Exception as e:
        health["database"] = "disconnected"
        health["checks"]["database"] = f"error: {sanitize_error_message(str(e))}"
        health["status"] = "degraded"
    finally:
        sessions.close()

    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.api_port)
