from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from pricedrop.models_sqlalchemy.auction import AuctionLog


ACTIONS = (
    "CREATED",
    "SCHEDULED",
    "STARTED",
    "PRICE_STEP",
    "COMPLETED",
    "STOPPED",
    "PRICES_RESET",
    "MANUAL_DISCOUNT",
    "COMPARE_PRICES_SET",
    "TICK_FAILED",
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def log_auction_event(
    db: Session,
    *,
    auction_id: Optional[str],
    action: str,
    discount_percent: Optional[float] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuctionLog:
    if action not in ACTIONS:
        raise ValueError(f"Unknown auction log action: {action}")
    entry = AuctionLog(
        id=str(uuid4()),
        auction_id=auction_id,
        action=action,
        discount_percent=discount_percent,
        details=details or {},
        created_at=_now_utc(),
    )
    db.add(entry)
    db.commit()
    return entry


def list_recent_events(db: Session, *, limit: int = 50) -> List[Dict[str, Any]]:
    rows = (
        db.query(AuctionLog)
        .order_by(AuctionLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": row.id,
            "auction_id": row.auction_id,
            "action": row.action,
            "discount_percent": row.discount_percent,
            "details": row.details or {},
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
