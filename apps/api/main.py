"""
Serona AI - FastAPI Backend
Entitlement, payment and chat API entry point.
"""

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    quota,
    billing,
    chat,
)
from services.maintenance import run_maintenance


logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def _periodic_maintenance() -> None:
    interval_minutes = max(int(settings.MAINTENANCE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_maintenance()
            expired = int(result.get("expired_plans", 0) or 0)
            purged = int(result.get("purged_usage_rows", 0) or 0)
            if expired or purged:
                print(f"🧹 Maintenance tick: expired_plans={expired} purged_usage_rows={purged}")
        except Exception as exc:
            print(f"⚠️ Maintenance tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Serona AI API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    maintenance_task = None
    if int(settings.MAINTENANCE_INTERVAL_MINUTES) > 0:
        maintenance_task = asyncio.create_task(_periodic_maintenance())
        print(
            "📅 Entitlement maintenance loop enabled "
            f"(every {int(settings.MAINTENANCE_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if maintenance_task is not None:
        maintenance_task.cancel()
        try:
            await maintenance_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Serona AI API",
    description="Chat assistant with free-tier quotas and paid token plans",
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
app.include_router(quota.router, tags=["Quota"])
app.include_router(billing.router, tags=["Billing"])
app.include_router(chat.router, prefix="/chats", tags=["Chat"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Serona AI API",
        "version": "0.1.0",
        "status": "running"
    }
