"""
TuFund API

Crowdfunding backend: owners run campaigns, donors pay through Paystack or
Stripe Checkout, and every payment is reconciled into campaign totals
exactly once. Owners can request withdrawals of what they have raised.

Run locally with:
    python main.py
"""

import os
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from api.routers import auth, campaigns, donations, webhooks, withdrawals  # noqa: E402
from database.db import SessionLocal, dispose_engine  # noqa: E402
from services.container import LedgerContainer, init_container, shutdown_container  # noqa: E402
from services.errors import LedgerError  # noqa: E402

API_VERSION = "1.0.0"
APP_ENV = os.getenv("APP_ENV", "development")

app = FastAPI(
    title="TuFund API",
    description="Crowdfunding with reconciled Paystack and Stripe donations",
    version=API_VERSION
)

# Web frontend origins, comma separated
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, campaigns, donations, webhooks, withdrawals):
    app.include_router(module.router)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.get("/health")
def health_check():
    """Liveness plus a database round trip; 503 when the database is down."""
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.error(f"Health check: database unreachable: {e}")
        database = "unreachable"

    body = {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "version": API_VERSION,
        "environment": APP_ENV,
    }
    return JSONResponse(status_code=200 if database == "ok" else 503, content=body)


@app.get("/")
async def root():
    return {
        "message": "Welcome to TuFund API",
        "documentation": "/docs",
        "health": "/health"
    }


@app.on_event("startup")
async def build_ledger():
    logger.info(f"TuFund API starting ({APP_ENV})")
    init_container(LedgerContainer.from_env(SessionLocal))


@app.on_event("shutdown")
async def close_ledger():
    logger.info("TuFund API shutting down")
    await shutdown_container()
    dispose_engine()


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("APP_HOST", "0.0.0.0")
    port = int(os.getenv("APP_PORT", 8000))
    logger.info(f"Serving on {host}:{port}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=APP_ENV == "development",
        log_level=os.getenv("LOG_LEVEL", "info").lower()
    )
