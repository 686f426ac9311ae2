from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text, false
from sqlalchemy.sql import func

from pricedrop.models_sqlalchemy import Base


GLOBAL_AUCTION_ID = "global"


class AuctionConfig(Base):
    """Persisted configuration and progress of the store-wide auction.

    There is normally a single row keyed ``"global"``. The row is the source
    of truth for recovery after a restart: interval arithmetic is always
    re-derived from ``started_at`` and ``last_fired_interval``, never from the
    wall-clock time of the previous tick.
    """

    __tablename__ = "auction_configs"

    id = Column(String(36), primary_key=True)

    # Both null on a staged record created by a manual discount.
    interval_minutes = Column(Integer, nullable=True)
    discount_increment_percent = Column(Float, nullable=True)
    current_discount_percent = Column(Float, nullable=False, server_default="0")
    # Explicit starting discount requested at creation; applied on promote.
    initial_discount_percent = Column(Float, nullable=True)

    is_active = Column(Boolean, nullable=False, default=False, server_default=false())

    scheduled_start_time = Column(DateTime(timezone=True), nullable=True)
    timezone = Column(String(64), nullable=False, server_default="CET")

    started_at = Column(DateTime(timezone=True), nullable=True)
    last_fired_interval = Column(Integer, nullable=False, server_default="0")
    last_update_at = Column(DateTime(timezone=True), nullable=True)
    next_update_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Summary of the most recent price mutation (eligible vs updated counts).
    last_step = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class AuctionLog(Base):
    """Append-only trail of auction transitions and price mutations."""

    __tablename__ = "auction_logs"

    id = Column(String(36), primary_key=True)
    auction_id = Column(String(36), nullable=True, index=True)
    # CREATED, SCHEDULED, STARTED, PRICE_STEP, COMPLETED, STOPPED, ...
    action = Column(String(32), nullable=False, index=True)
    discount_percent = Column(Float, nullable=True)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


class BackgroundWorker(Base):
    """Heartbeat + status row for the auction scheduler loop."""

    __tablename__ = "background_workers"

    id = Column(Integer, primary_key=True, autoincrement=True)

    worker_name = Column(String(128), nullable=False, unique=True, index=True)
    interval_seconds = Column(Integer, nullable=True)

    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error_message = Column(Text, nullable=True)

    runs_ok_in_row = Column(Integer, nullable=False, server_default="0")
    runs_error_in_row = Column(Integer, nullable=False, server_default="0")

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
