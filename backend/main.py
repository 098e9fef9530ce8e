"""
Mail Sweep API - Main FastAPI Application
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ai_client import get_ai_client
from config import settings
from db import AsyncSessionLocal, init_db
from engine.jobs import register_job_handlers
from engine.notifier import broadcaster
from engine.scheduler import init_scheduler, shutdown_scheduler
from gmail_client import get_gmail_client
from schemas import HealthResponse

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=logging.DEBUG if settings.is_local() else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event handler for FastAPI application.
    Handles startup and shutdown events.
    """
    logger.info("Starting up Mail Sweep API...")
    await init_db()
    logger.info("Database initialized successfully")

    runner = init_scheduler(AsyncSessionLocal)
    register_job_handlers(runner, get_gmail_client(), get_ai_client(), broadcaster)
    resumed = await runner.resume_pending_jobs()
    logger.info(f"Background job runner initialized ({resumed} unfinished job(s) resumed)")

    yield

    logger.info("Shutting down Mail Sweep API...")
    shutdown_scheduler()
    logger.info("Background job runner stopped")


# Initialize FastAPI application
app = FastAPI(
    title="Mail Sweep API",
    version="1.0.0",
    description="Gmail synchronization and AI-assisted unsubscribe API",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.FRONTEND_URL,
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """
    Global error handling middleware.
    Catches unhandled exceptions and returns proper JSON responses.
    """
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc) if not settings.is_production() else "An unexpected error occurred",
            },
        )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint to verify API is running.

    Returns:
        HealthResponse: Status and version information
    """
    return HealthResponse(
        status="healthy",
        version="1.0.0",
    )


# Import routers
from routers import accounts, messages, webhooks

app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])
app.include_router(accounts.router, prefix="/api/accounts", tags=["Accounts"])
app.include_router(messages.router, prefix="/api/messages", tags=["Messages"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.APP_ENV != "production",
    )
