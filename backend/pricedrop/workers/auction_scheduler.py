"""Auction scheduler loop.

Ticks the process-wide :class:`AuctionEngine` once per
``AUCTION_TICK_SECONDS`` (default 60). Each tick reconciles the persisted
auction, promotes a due scheduled auction and fires at most one due discount
step. Ticks are awaited one after another and the engine lock serializes them
against HTTP-triggered mutations, so two ticks never run concurrently.

A heartbeat is recorded in the BackgroundWorker table with
worker_name="auction_scheduler" so the status endpoints can show when the
loop last ran and whether it is failing.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from pricedrop.config import settings
from pricedrop.models_sqlalchemy import SessionLocal
from pricedrop.models_sqlalchemy.auction import GLOBAL_AUCTION_ID, BackgroundWorker
from pricedrop.services.auction import AuctionEngine, get_auction_engine
from pricedrop.services.auction.logger import log_auction_event
from pricedrop.utils.logger import logger


WORKER_NAME = "auction_scheduler"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _get_or_create_worker_row(db: Session, interval_seconds: int) -> Optional[BackgroundWorker]:
    try:
        worker = (
            db.query(BackgroundWorker)
            .filter(BackgroundWorker.worker_name == WORKER_NAME)
            .one_or_none()
        )
        if worker is None:
            worker = BackgroundWorker(
                worker_name=WORKER_NAME,
                interval_seconds=interval_seconds,
                runs_ok_in_row=0,
                runs_error_in_row=0,
            )
            db.add(worker)
            db.commit()
            db.refresh(worker)
        return worker
    except Exception as exc:
        logger.error("Failed to load/create BackgroundWorker row for %s: %s", WORKER_NAME, exc)
        db.rollback()
        return None


async def run_auction_scheduler_once(
    engine: Optional[AuctionEngine] = None,
    *,
    now: Optional[datetime] = None,
    interval_seconds: Optional[int] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> bool:
    """Run a single scheduler tick.

    Returns True when the tick mutated prices (promotion or discount step).
    Failures are logged and recorded, never raised.
    """
    engine = engine or get_auction_engine()
    interval_seconds = interval_seconds or settings.AUCTION_TICK_SECONDS

    db = session_factory()
    try:
        worker_row = _get_or_create_worker_row(db, interval_seconds)
        if worker_row is not None:
            worker_row.interval_seconds = interval_seconds
            worker_row.last_started_at = _now_utc()
            worker_row.last_status = "running"
            worker_row.last_error_message = None
            db.commit()

        try:
            changed = await engine.tick(now)
        except Exception as exc:
            logger.error("Auction scheduler tick failed: %s", exc, exc_info=True)
            if worker_row is not None:
                worker_row.last_status = "error"
                worker_row.last_error_message = str(exc)[:2000]
                worker_row.last_finished_at = _now_utc()
                worker_row.runs_error_in_row = (worker_row.runs_error_in_row or 0) + 1
                worker_row.runs_ok_in_row = 0
                db.commit()
            try:
                log_auction_event(
                    db,
                    auction_id=GLOBAL_AUCTION_ID,
                    action="TICK_FAILED",
                    details={"error": str(exc)[:2000], "type": type(exc).__name__},
                )
            except Exception as log_exc:
                logger.error("Failed to record TICK_FAILED event: %s", log_exc)
                db.rollback()
            return False

        if worker_row is not None:
            worker_row.last_status = "ok"
            worker_row.last_finished_at = _now_utc()
            worker_row.runs_ok_in_row = (worker_row.runs_ok_in_row or 0) + 1
            worker_row.runs_error_in_row = 0
            db.commit()
    finally:
        db.close()

    report = engine.state_report(now)
    logger.info(
        "Auction state report: phase=%s discount=%s%% step=%s next_update_at=%s "
        "scheduled_start=%s products_loaded=%s changed=%s",
        report["phase"],
        report["discount"],
        report["step"],
        report["next_update_at"],
        report["scheduled_start_time"],
        report["products_loaded"],
        changed,
    )
    return changed


async def run_auction_scheduler_loop(interval_seconds: Optional[int] = None) -> None:
    """Run the auction scheduler forever (started from app startup)."""
    interval_seconds = interval_seconds or settings.AUCTION_TICK_SECONDS
    logger.info("=" * 60)
    logger.info("Auction scheduler loop started (interval=%s seconds)", interval_seconds)
    logger.info("=" * 60)

    while True:
        started = _now_utc()
        try:
            await run_auction_scheduler_once(interval_seconds=interval_seconds)
        except Exception as exc:  # pragma: no cover - safety net
            logger.error("Auction scheduler loop error: %s", exc, exc_info=True)

        elapsed = (_now_utc() - started).total_seconds()
        await asyncio.sleep(max(0.0, interval_seconds - elapsed))


if __name__ == "__main__":  # pragma: no cover - manual run helper
    asyncio.run(run_auction_scheduler_loop())
