"""In-memory auction state and its durable store.

:class:`AuctionState` is the engine's working copy of the ``auction_configs``
row. :class:`AuctionStateStore` moves it in and out of the database so a
restarted process can tell whether an auction is scheduled or running and
resume interval arithmetic from ``started_at``.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from pricedrop.config import settings
from pricedrop.models_sqlalchemy import SessionLocal
from pricedrop.models_sqlalchemy.auction import GLOBAL_AUCTION_ID, AuctionConfig

from .logger import log_auction_event
from .timing import ensure_utc


class AuctionPhase(str, enum.Enum):
    idle = "idle"
    scheduled = "scheduled"
    running = "running"


@dataclass
class AuctionState:
    interval_minutes: Optional[int] = None
    discount_increment_percent: Optional[float] = None
    id: str = GLOBAL_AUCTION_ID
    current_discount_percent: float = 0.0
    initial_discount_percent: Optional[float] = None
    is_active: bool = False
    scheduled_start_time: Optional[datetime] = None
    timezone: str = field(default_factory=lambda: settings.AUCTION_DEFAULT_TIMEZONE)
    started_at: Optional[datetime] = None
    last_fired_interval: int = 0
    last_update_at: Optional[datetime] = None
    next_update_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_step: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @property
    def phase(self) -> AuctionPhase:
        if self.is_active:
            return AuctionPhase.running
        if self.scheduled_start_time is not None:
            return AuctionPhase.scheduled
        return AuctionPhase.idle


def _row_to_state(row: AuctionConfig) -> AuctionState:
    return AuctionState(
        id=row.id,
        interval_minutes=int(row.interval_minutes) if row.interval_minutes is not None else None,
        discount_increment_percent=(
            float(row.discount_increment_percent)
            if row.discount_increment_percent is not None
            else None
        ),
        current_discount_percent=float(row.current_discount_percent or 0.0),
        initial_discount_percent=(
            float(row.initial_discount_percent) if row.initial_discount_percent is not None else None
        ),
        is_active=bool(row.is_active),
        scheduled_start_time=ensure_utc(row.scheduled_start_time),
        timezone=row.timezone or settings.AUCTION_DEFAULT_TIMEZONE,
        started_at=ensure_utc(row.started_at),
        last_fired_interval=int(row.last_fired_interval or 0),
        last_update_at=ensure_utc(row.last_update_at),
        next_update_at=ensure_utc(row.next_update_at),
        completed_at=ensure_utc(row.completed_at),
        last_step=row.last_step,
        created_at=ensure_utc(row.created_at),
    )


def _apply_state(row: AuctionConfig, state: AuctionState) -> None:
    row.interval_minutes = state.interval_minutes
    row.discount_increment_percent = state.discount_increment_percent
    row.current_discount_percent = state.current_discount_percent
    row.initial_discount_percent = state.initial_discount_percent
    row.is_active = state.is_active
    row.scheduled_start_time = state.scheduled_start_time
    row.timezone = state.timezone
    row.started_at = state.started_at
    row.last_fired_interval = state.last_fired_interval
    row.last_update_at = state.last_update_at
    row.next_update_at = state.next_update_at
    row.completed_at = state.completed_at
    row.last_step = state.last_step


class AuctionStateStore:
    """save / load / clear for the auction record, plus the activity log."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        auction_id: str = GLOBAL_AUCTION_ID,
    ) -> None:
        self._session_factory = session_factory
        self.auction_id = auction_id

    def load(self) -> Optional[AuctionState]:
        db = self._session_factory()
        try:
            row = db.get(AuctionConfig, self.auction_id)
            return _row_to_state(row) if row is not None else None
        finally:
            db.close()

    def save(self, state: AuctionState) -> None:
        db = self._session_factory()
        try:
            row = db.get(AuctionConfig, self.auction_id)
            if row is None:
                row = AuctionConfig(id=self.auction_id)
                db.add(row)
            _apply_state(row, state)
            db.commit()
        finally:
            db.close()

    def clear(self) -> None:
        db = self._session_factory()
        try:
            db.query(AuctionConfig).filter(AuctionConfig.id == self.auction_id).delete()
            db.commit()
        finally:
            db.close()

    def append_log(
        self,
        action: str,
        *,
        discount_percent: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        db = self._session_factory()
        try:
            log_auction_event(
                db,
                auction_id=self.auction_id,
                action=action,
                discount_percent=discount_percent,
                details=details,
            )
        finally:
            db.close()
