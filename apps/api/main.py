"""
VH Cuts - FastAPI Backend
Credits, subscriptions and payment webhooks for the video editing app.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import (
    health,
    auth,
    credits,
    projects,
    subscriptions,
    payments,
    admin,
)
from services.subscriptions import grant_configured_infinite_access

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting VH Cuts API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.INFINITE_ACCESS_EMAILS:
        try:
            async with async_session_maker() as session:
                granted = await grant_configured_infinite_access(session)
            if granted:
                print(f"♾️ Granted infinite access to {granted} configured account(s).")
        except Exception as exc:
            print(f"⚠️ Infinite access bootstrap skipped: {exc}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="VH Cuts API",
    description="Credits, subscriptions and payments for AI video editing",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(credits.router, prefix="/user", tags=["Credits"])
app.include_router(projects.router, prefix="/projects", tags=["Projects"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "VH Cuts API",
        "version": "0.1.0",
        "status": "running"
    }
