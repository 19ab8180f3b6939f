"""
Creator Payouts FastAPI Application

Entry point for the payment disbursement and retainer billing engine.
"""

import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
import logging

from database.db import create_tables
from payouts.routers import payments
from services.providers import build_payout_providers

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Creator Payouts API",
    description="Creator payouts, fee splits and monthly retainer billing",
    version="1.0.0"
)

# CORS configuration (allow web dashboard to call API)
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router)


# ============================================
# Health Check Endpoint
# ============================================

@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring.

    Reports whether payout providers were initialized and whether they run
    in sandbox mode.
    """
    providers = getattr(app.state, "payout_providers", None)
    return {
        "status": "healthy" if providers is not None else "degraded",
        "service": "Creator Payouts API",
        "version": "1.0.0",
        "environment": os.getenv("APP_ENV", "development"),
        "sandbox_mode": providers.settings.sandbox_mode if providers is not None else None,
    }


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Welcome to Creator Payouts API",
        "documentation": "/docs",
        "health": "/health"
    }


# ============================================
# Startup/Shutdown Events
# ============================================

@app.on_event("startup")
async def startup_event():
    """
    Run on application startup.

    Provider credentials are validated here: a missing credential outside
    sandbox mode stops the server instead of failing the first payout.
    """
    logger.info("Creator Payouts API starting up...")
    logger.info(f"Environment: {os.getenv('APP_ENV')}")
    logger.info(f"Database: {os.getenv('DATABASE_URL', 'Not configured')[:50]}...")

    app.state.payout_providers = build_payout_providers()

    if os.getenv("APP_ENV", "development") == "development":
        create_tables()


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("Creator Payouts API shutting down...")


# ============================================
# Run Server (Development Only)
# ============================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("APP_PORT", 8000))
    host = os.getenv("APP_HOST", "0.0.0.0")

    logger.info(f"Starting server on {host}:{port}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=True,  # Auto-reload on code changes (dev only!)
        log_level="info"
    )
