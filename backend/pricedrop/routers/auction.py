from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from pricedrop.models_sqlalchemy import get_db
from pricedrop.services.auction import (
    AuctionEngine,
    AuctionStateError,
    AuctionValidationError,
    StartMode,
    get_auction_engine,
)
from pricedrop.services.auction.logger import list_recent_events
from pricedrop.utils.logger import logger


router = APIRouter(prefix="/api/auction", tags=["auction"])


class AuctionCreate(BaseModel):
    """Create (or replace) the store-wide auction.

    Range checks happen in the engine so that bad values are reported as
    400 with the same messages the scheduler uses.
    """

    intervalMinutes: float = Field(..., description="Minutes between discount steps")
    discountIncrementPercent: float = Field(..., description="Percentage points added per step")
    startMode: StartMode = Field(StartMode.immediate, description="immediate or scheduled")
    scheduledTime: Optional[str] = Field(
        None,
        description="Local start time YYYY-MM-DDTHH:MM in `timezone` (scheduled mode only)",
    )
    timezone: Optional[str] = Field(None, description="IANA timezone name, defaults to CET")
    initialDiscountPercent: Optional[float] = Field(
        None,
        description="Explicit starting discount; otherwise a staged discount or the increment is used",
    )


class ManualDiscount(BaseModel):
    percent: float = Field(..., description="Discount to apply right now, 0-100")


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _unavailable(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_auction(
    payload: AuctionCreate,
    engine: AuctionEngine = Depends(get_auction_engine),
) -> Dict[str, Any]:
    try:
        result = await engine.create(
            interval_minutes=payload.intervalMinutes,
            increment_percent=payload.discountIncrementPercent,
            start_mode=payload.startMode,
            scheduled_time=payload.scheduledTime,
            timezone=payload.timezone,
            initial_discount=payload.initialDiscountPercent,
        )
    except AuctionValidationError as exc:
        logger.warning("Rejected auction create: %s", exc)
        raise _bad_request(exc)
    except AuctionStateError as exc:
        raise _unavailable(exc)
    return result


@router.post("/stop")
async def stop_auction(engine: AuctionEngine = Depends(get_auction_engine)) -> Dict[str, Any]:
    return await engine.stop()


@router.post("/reset-prices")
async def reset_prices(engine: AuctionEngine = Depends(get_auction_engine)) -> Dict[str, Any]:
    try:
        return await engine.reset_prices()
    except AuctionStateError as exc:
        raise _unavailable(exc)


@router.post("/manual-discount")
async def apply_manual_discount(
    payload: ManualDiscount,
    engine: AuctionEngine = Depends(get_auction_engine),
) -> Dict[str, Any]:
    try:
        return await engine.apply_manual_discount(payload.percent)
    except AuctionValidationError as exc:
        raise _bad_request(exc)
    except AuctionStateError as exc:
        raise _unavailable(exc)


@router.post("/compare-prices")
async def set_compare_prices(engine: AuctionEngine = Depends(get_auction_engine)) -> Dict[str, Any]:
    try:
        return await engine.set_compare_at_prices()
    except AuctionStateError as exc:
        raise _unavailable(exc)


@router.get("/status")
async def get_status(engine: AuctionEngine = Depends(get_auction_engine)) -> Dict[str, Any]:
    return await engine.get_status()


@router.get("/scheduled")
async def list_scheduled(engine: AuctionEngine = Depends(get_auction_engine)) -> Dict[str, Any]:
    auctions = engine.list_scheduled()
    return {"auctions": auctions, "count": len(auctions)}


@router.get("/logs")
async def list_logs(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> Dict[str, List[Dict[str, Any]]]:
    return {"logs": list_recent_events(db, limit=limit)}
