"""
Fanchat API - FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from . import models  # noqa: F401  (registers tables on Base.metadata)
from .config import get_settings
from .database import engine, Base
from .errors import ChatCoreError
from .limiter import limiter
from .logging_config import api_logger
from .middleware import SecurityHeadersMiddleware, RequestLoggingMiddleware
from .responses import api_exception_handler
from .routes import (
    conversations_router,
    chat_sessions_router,
    unlocks_router,
    payments_router,
    notifications_router,
)
from .services.fanout import event_hub

settings = get_settings()

# Create tables (in production, use Alembic migrations instead)
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown"""
    api_logger.info("Fanchat API starting", environment=settings.environment)

    yield  # App is running

    api_logger.info("Fanchat API stopping", open_subscriptions=event_hub.subscriber_count())


app = FastAPI(
    title="Fanchat API",
    description="Creator/fan direct messages, live chat sessions and paid media unlocks",
    version=__version__,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Domain errors and everything else share one error body
app.add_exception_handler(ChatCoreError, api_exception_handler)
app.add_exception_handler(HTTPException, api_exception_handler)
app.add_exception_handler(Exception, api_exception_handler)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

# Request logging middleware (only in debug mode)
if settings.debug:
    app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-Payment-Signature",
    ],
    max_age=3600,  # Cache preflight requests for 1 hour
)

# Routes
app.include_router(conversations_router)
app.include_router(chat_sessions_router)
app.include_router(unlocks_router)
app.include_router(payments_router)
app.include_router(notifications_router)


@app.get("/api/health")
def health_check():
    """Health check endpoint for load balancers and monitoring."""
    return {
        "status": "healthy",
        "environment": settings.environment,
        "version": __version__,
        "subscriptions": event_hub.subscriber_count(),
    }


@app.get("/")
def root():
    """Root endpoint redirects to API docs."""
    return {
        "message": "Fanchat API",
        "docs": "/api/docs" if settings.debug else "Disabled in production",
    }
