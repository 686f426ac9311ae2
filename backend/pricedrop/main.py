import asyncio
import logging
import re
import uuid
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from pricedrop.config import settings
from pricedrop.init_db import init_db
from pricedrop.routers import auction
from pricedrop.services.auction import get_auction_engine
from pricedrop.utils.logger import logger, mask_secret


app = FastAPI(title="Price Drop Auction API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(auction.router)

_scheduler_task: Optional[asyncio.Task] = None


@app.on_event("startup")
async def startup_event():
    global _scheduler_task

    logger.info("=" * 60)
    logger.info("Price Drop Auction API starting up...")
    logger.info("=" * 60)

    database_url = settings.DATABASE_URL
    logger.info("📊 Database URL: %s", re.sub(r"://([^:]+):([^@]+)@", r"://\1:****@", database_url))
    if settings.shopify_graphql_url:
        logger.info(
            "🛒 Catalog endpoint: %s (token %s)",
            settings.shopify_graphql_url,
            mask_secret(settings.SHOPIFY_ACCESS_TOKEN),
        )
    else:
        logger.warning("⚠️  SHOPIFY_SHOP_URL / SHOPIFY_ACCESS_TOKEN not configured; price updates will fail")

    try:
        init_db()
    except Exception as e:
        logger.error(f"❌ Failed to create tables: {e}")

    engine = get_auction_engine()
    try:
        await engine.reconcile()
    except Exception as e:
        logger.error(f"❌ Failed to restore persisted auction: {e}", exc_info=True)

    if settings.START_SCHEDULER:
        from pricedrop.workers import run_auction_scheduler_loop

        _scheduler_task = asyncio.create_task(run_auction_scheduler_loop())
        logger.info("✅ Auction scheduler started (runs every %s seconds)", settings.AUCTION_TICK_SECONDS)
    else:
        logger.info("⏭️  Auction scheduler disabled (START_SCHEDULER=false)")


@app.on_event("shutdown")
async def shutdown_event():
    global _scheduler_task
    if _scheduler_task is not None:
        _scheduler_task.cancel()
        try:
            await _scheduler_task
        except asyncio.CancelledError:
            pass
        _scheduler_task = None
        logger.info("Auction scheduler stopped")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    try:
        from pricedrop.models_sqlalchemy import engine

        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}: {str(e)}",
        )


@app.get("/")
async def root():
    return {
        "message": "Price Drop Auction API",
        "version": "1.0.0",
        "docs": "/docs",
    }
