from datetime import timedelta

import pytest

from pricedrop.models_sqlalchemy.auction import AuctionLog, BackgroundWorker
from pricedrop.services.auction import set_auction_engine
from pricedrop.workers.auction_scheduler import WORKER_NAME, run_auction_scheduler_once

from conftest import T0


def _worker_row(session_factory) -> BackgroundWorker:
    db = session_factory()
    try:
        return db.query(BackgroundWorker).filter(BackgroundWorker.worker_name == WORKER_NAME).one()
    finally:
        db.close()


@pytest.mark.asyncio
async def test_tick_fires_due_step_and_records_heartbeat(engine, clock, session_factory):
    await engine.create(interval_minutes=1, increment_percent=10, start_mode="immediate")
    clock.advance(minutes=1)

    changed = await run_auction_scheduler_once(engine, interval_seconds=60, session_factory=session_factory)

    assert changed is True
    assert engine.store.load().current_discount_percent == 20.0
    row = _worker_row(session_factory)
    assert row.last_status == "ok"
    assert row.interval_seconds == 60
    assert row.runs_ok_in_row == 1
    assert row.runs_error_in_row == 0


@pytest.mark.asyncio
async def test_idle_tick_is_a_noop(engine, session_factory, catalog):
    set_auction_engine(engine)
    try:
        changed = await run_auction_scheduler_once(session_factory=session_factory)
        changed_again = await run_auction_scheduler_once(session_factory=session_factory)
    finally:
        set_auction_engine(None)

    assert changed is False
    assert changed_again is False
    assert catalog.mutations == []
    assert _worker_row(session_factory).runs_ok_in_row == 2


@pytest.mark.asyncio
async def test_explicit_now_promotes_scheduled_auction(engine, session_factory):
    await engine.create(
        interval_minutes=10,
        increment_percent=10,
        start_mode="scheduled",
        scheduled_time=T0 + timedelta(minutes=2),
    )

    assert await run_auction_scheduler_once(
        engine, now=T0 + timedelta(minutes=1), session_factory=session_factory
    ) is False
    assert await run_auction_scheduler_once(
        engine, now=T0 + timedelta(minutes=2), session_factory=session_factory
    ) is True
    assert engine.store.load().started_at == T0 + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_failing_tick_is_recorded_and_swallowed(engine, session_factory, monkeypatch):
    async def broken_tick(now=None):
        raise RuntimeError("persisted state is corrupt")

    monkeypatch.setattr(engine, "tick", broken_tick)

    changed = await run_auction_scheduler_once(engine, session_factory=session_factory)

    assert changed is False
    row = _worker_row(session_factory)
    assert row.last_status == "error"
    assert "corrupt" in row.last_error_message
    assert row.runs_error_in_row == 1

    db = session_factory()
    try:
        failures = db.query(AuctionLog).filter(AuctionLog.action == "TICK_FAILED").all()
        assert len(failures) == 1
        assert failures[0].details["type"] == "RuntimeError"
    finally:
        db.close()
