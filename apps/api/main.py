"""
Coloring Page Studio - FastAPI Backend
Main application entry point: credit ledger, subscription webhooks and billed generation.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import LedgerStore
from routers import (
    health,
    auth,
    billing,
    images,
    webhooks,
)
from services.credit_errors import CreditError

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Coloring Page Studio API...")
    validate_security_settings()
    store = LedgerStore.from_url(settings.DATABASE_URL, pool_pre_ping=True)
    app.state.store = store
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            await store.create_schema()
            print("🗄️ Ledger schema verified.")
        except CreditError as e:
            print(f"⚠️ Ledger schema bootstrap skipped: {e}")
    yield
    # Shutdown
    await store.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Coloring Page Studio API",
    description="Personalized coloring pages backed by a prepaid credit ledger",
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


@app.exception_handler(CreditError)
async def credit_error_handler(request: Request, exc: CreditError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(images.router, prefix="/images", tags=["Images"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Coloring Page Studio API",
        "version": "0.1.0",
        "status": "running"
    }
