"""
Main FastAPI application entry point.
"""
import sys
import time
import logging
import warnings
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from starlette import status
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy.exc import OperationalError

# Load environment variables
load_dotenv()

# Add project root to path
ROOT_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT_DIR))

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True
)

logger = logging.getLogger(__name__)

from config import settings
from alembic_runner import run_migrations

# Import models to register with SQLAlchemy Base
from Assignment_module.Assignment_model import SecondaryAssignment  # noqa: F401
from Consent_module.Consent_model import ConsentOtp, ConsentOtpAuditLog  # noqa: F401

from Consent_module.Consent_errors import ConsentOtpError
from Consent_module.Consent_router import router as consent_router


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log HTTP requests and responses with status codes."""

    async def dispatch(self, request: Request, call_next):
        client_ip = request.client.host if request.client else "unknown"
        start_time = time.time()

        logger.info(f"-> {request.method} {request.url.path} | IP: {client_ip}")

        try:
            response = await call_next(request)
            duration = time.time() - start_time
            status_code = response.status_code

            if 200 <= status_code < 300:
                status_category = "SUCCESS"
            elif 300 <= status_code < 400:
                status_category = "REDIRECT"
            elif 400 <= status_code < 500:
                status_category = "CLIENT_ERROR"
            else:
                status_category = "SERVER_ERROR"

            log_message = (
                f"{request.method} {request.url.path} | "
                f"Status: {status_code} ({status_category}) | "
                f"Duration: {duration:.3f}s | "
                f"IP: {client_ip}"
            )
            if status_code >= 500:
                logger.error(log_message)
            else:
                logger.info(log_message)

            return response
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"{request.method} {request.url.path} | "
                f"Status: 500 (SERVER_ERROR) | "
                f"Error: {str(e)} | "
                f"Duration: {duration:.3f}s | "
                f"IP: {client_ip}"
            )
            raise


def initialize_database():
    """
    Initialize database by running Alembic migrations.
    Handles connection errors gracefully.
    """
    try:
        logger.info("Running database migrations...")
        run_migrations()
        logger.info("Database migrations completed successfully")
    except OperationalError as e:
        logger.error(f"Failed to connect to database during migrations: {e}")
        logger.warning("Migrations will be retried on next startup")
    except Exception as e:
        logger.error(f"Unexpected error during migrations: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    logger.info("Starting application...")
    initialize_database()
    logger.info("Application started successfully")
    yield
    logger.info("Application shutdown complete")


# Initialize FastAPI app
app = FastAPI(
    title="Patient Consent OTP API",
    version="1.0.0",
    lifespan=lifespan
)


def _format_validation_errors(exc):
    """Return consistent error structure for 422 responses."""
    detail_list = []
    errors = exc.errors() if hasattr(exc, "errors") else []

    for err in errors:
        loc = err.get("loc", [])
        source = loc[0] if loc else "body"
        field = loc[-1] if len(loc) > 1 else loc[0] if loc else None
        detail_list.append({
            "source": source,
            "field": field,
            "message": err.get("msg"),
            "type": err.get("type")
        })
    return detail_list


@app.exception_handler(ConsentOtpError)
async def consent_otp_exception_handler(request: Request, exc: ConsentOtpError):
    """Render workflow errors into the standard error envelope."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle FastAPI request validation errors."""
    detail_list = _format_validation_errors(exc)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "status": "error",
            "message": "Request validation failed.",
            "error_code": "VALIDATION_ERROR",
            "details": detail_list
        }
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(request: Request, exc: ValidationError):
    """Handle Pydantic validation errors."""
    detail_list = _format_validation_errors(exc)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "status": "error",
            "message": "Validation failed.",
            "error_code": "VALIDATION_ERROR",
            "details": detail_list
        }
    )


# CORS configuration
ALLOWED_ORIGINS = settings.allowed_origins_list or ["*"]
if ALLOWED_ORIGINS == ["*"]:
    warnings.warn("CORS is set to allow all origins. This is not recommended for production.")

# Middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)

# Include routers
app.include_router(consent_router)


# API Endpoints
@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "status": "success",
        "message": "Patient Consent OTP API",
        "version": "1.0.0",
        "endpoints": {
            "consent": "/consent",
            "health": "/health"
        },
        "docs": "/docs",
        "redoc": "/redoc"
    }


@app.get("/health")
def health_check():
    """Health check endpoint for container orchestration."""
    return {
        "status": "healthy",
        "service": "Patient Consent OTP API"
    }


# Run application
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8030,
        reload=False,
        log_level="info",
        access_log=True
    )
