"""
Order Intake API
FastAPI application for ingesting inbound order webhooks.
"""

import asyncio
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from app.auth import rate_limited
from app.db import supabase_admin
from app.routers import webhook_orders
from app.services.rate_limiter import (
    build_rate_limiters,
    cleanup_interval_seconds,
    run_periodic_cleanup,
)

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Order Intake API",
    description="Inbound order webhook ingestion for form builders and e-commerce plugins",
    version="0.1.0",
)

# Limiters live on the app, not at module level in the services, so every
# app instance (and every test app) owns its own counters.
app.state.rate_limiters = build_rate_limiters()

_cleanup_task: Optional[asyncio.Task] = None

# CORS: the webhook is called from arbitrary third-party sites. No endpoint
# relies on cookies, so credentials stay disabled.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhook_orders.router, prefix="/api/webhook-orders", tags=["webhook-orders"])


@app.on_event("startup")
async def start_rate_limit_cleanup() -> None:
    """
    Start the background sweep that evicts expired rate-limit entries.

    The interval comes from RATE_LIMIT_CLEANUP_INTERVAL_SECONDS (default 600).
    """
    global _cleanup_task
    interval = cleanup_interval_seconds()
    _cleanup_task = asyncio.create_task(
        run_periodic_cleanup(app.state.rate_limiters.values(), interval)
    )
    logger.info(
        "Order Intake API started; rate limits: %s; cleanup every %ss",
        ", ".join(
            f"{name}={limiter.config.max_requests}/{limiter.config.window_seconds}s"
            for name, limiter in app.state.rate_limiters.items()
        ),
        interval,
    )


@app.on_event("shutdown")
async def stop_rate_limit_cleanup() -> None:
    global _cleanup_task
    if _cleanup_task is not None:
        _cleanup_task.cancel()
        _cleanup_task = None


@app.get("/")
async def root():
    return {"message": "Order Intake API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db", dependencies=[Depends(rate_limited("api"))])
async def health_db():
    """
    Test the Supabase database connection.

    Executes a lightweight query (SELECT 1 row from orders) to verify that
    the Supabase admin client can reach the database.  Returns 503 on failure.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        await run_in_threadpool(
            lambda: supabase_admin.table("orders").select("id").limit(1).execute()
        )
        return {"status": "ok", "database": "reachable"}
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail="Database connection failed",
        )
