"""Request Routing: Main FastAPI Application.

Routes incoming requests (support tickets, emails, task descriptions) to
the person, team or queue best placed to handle them, with backup
selection and escalation when the first choice is unavailable.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .core import close_db, get_settings, init_db
from .schemas import ErrorResponse
from .services.errors import (
    DecisionNotFoundError,
    DecisionRecordError,
    InvalidRequestError,
    RoutingError,
    RuleNotFoundError,
)

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Tables are managed by migrations in production
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")
    yield
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## Request Routing API

    Decides **who handles an incoming request**.

    ### Key Features

    - **Rule Matching**: Organization rules by category, keyword, sender domain, urgency and schedule.
    - **Expertise Matching**: Ranks people by expertise, availability and workload.
    - **Backups and Escalation**: Designated backup, teammates, skill peers, then the escalation path.
    - **Decision History**: Every routing decision is recorded and accepts outcome feedback.

    All endpoints are organization-scoped: include the `X-Organization-ID` header.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)


_ERROR_STATUS = {
    InvalidRequestError: (status.HTTP_400_BAD_REQUEST, "invalid_request"),
    RuleNotFoundError: (status.HTTP_404_NOT_FOUND, "rule_not_found"),
    DecisionNotFoundError: (status.HTTP_404_NOT_FOUND, "decision_not_found"),
    DecisionRecordError: (status.HTTP_503_SERVICE_UNAVAILABLE, "decision_not_recorded"),
}


@app.exception_handler(RoutingError)
async def routing_exception_handler(request: Request, exc: RoutingError):
    """Service errors that reach the app without an endpoint mapping."""
    status_code, error = _ERROR_STATUS.get(
        type(exc), (status.HTTP_400_BAD_REQUEST, "routing_error")
    )
    logger.warning(f"{error} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=str(exc)).model_dump(),
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")

    message = "An unexpected error occurred"
    if settings.debug:
        message = f"{message}: {str(exc)[:200]}"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            message=message,
            details=[],
        ).model_dump(),
    )


@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "request_routing.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
