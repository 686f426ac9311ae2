"""Auction state machine.

States::

    IDLE --create(immediate)--> RUNNING --tick (100%) / stop--> IDLE
    IDLE --create(scheduled)--> SCHEDULED --tick (due)--> RUNNING

One :class:`AuctionEngine` instance owns the in-memory auction state, the
product snapshot cache and the remembered original prices. Every mutating
operation (create, stop, reset, manual discount, tick, promote-on-read) runs
under a single ``asyncio.Lock`` so a price step and a human "stop" never
interleave.

Price mutations are absolute: a step writes ``original * (100 - d) / 100`` for
the new level ``d``, so a step that was abandoned (catalog outage) is simply
retried by the next tick from the same due point.
"""
from __future__ import annotations

import asyncio
import enum
import math
from decimal import Decimal
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pricedrop.config import settings
from pricedrop.services.catalog_client import (
    CatalogAPIError,
    CatalogClient,
    MutationResult,
    PriceTarget,
    ProductSnapshot,
    VariantSnapshot,
    discounted_price,
)
from pricedrop.utils.logger import logger

from .errors import AuctionStateError, AuctionValidationError
from .state import AuctionPhase, AuctionState, AuctionStateStore
from .timing import (
    MAX_DISCOUNT_PERCENT,
    MAX_INTERVAL_MINUTES,
    build_schedule,
    check_schedule_horizon,
    clamp_discount,
    ensure_utc,
    format_countdown,
    format_in_timezone,
    intervals_passed,
    is_step_due,
    milliseconds_until,
    next_discount,
    next_update_time,
    now_utc,
    parse_scheduled_time,
    resolve_timezone,
)


class StartMode(str, enum.Enum):
    immediate = "immediate"
    scheduled = "scheduled"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _validate_number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise AuctionValidationError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise AuctionValidationError(f"{name} must be a number") from exc
    return number


def validate_interval(value: Any) -> int:
    number = _validate_number(value, "Interval")
    if not math.isfinite(number) or number != int(number):
        raise AuctionValidationError("Interval must be a whole number of minutes")
    if number <= 0:
        raise AuctionValidationError("Interval must be greater than 0 minutes")
    if number > MAX_INTERVAL_MINUTES:
        raise AuctionValidationError(f"Interval must be at most {MAX_INTERVAL_MINUTES} minutes")
    return int(number)


def validate_increment(value: Any) -> float:
    number = _validate_number(value, "Discount increment")
    if not 0 < number <= MAX_DISCOUNT_PERCENT:
        raise AuctionValidationError("Discount increment must be greater than 0 and at most 100")
    return number


def validate_percent(value: Any, name: str = "Discount") -> float:
    number = _validate_number(value, name)
    if not 0 <= number <= MAX_DISCOUNT_PERCENT:
        raise AuctionValidationError(f"{name} must be between 0 and 100")
    return number


def validate_start_mode(value: Union[str, StartMode, None]) -> StartMode:
    try:
        return StartMode(value or StartMode.immediate)
    except ValueError as exc:
        raise AuctionValidationError(
            f"Unknown start mode: {value!r} (expected 'immediate' or 'scheduled')"
        ) from exc


class AuctionEngine:
    def __init__(
        self,
        *,
        catalog_client: Optional[CatalogClient] = None,
        store: Optional[AuctionStateStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.catalog = catalog_client or CatalogClient()
        self.store = store or AuctionStateStore()
        self._clock = clock or now_utc
        self._lock = asyncio.Lock()

        self._state: Optional[AuctionState] = None
        self._loaded = False
        self._products: List[ProductSnapshot] = []
        # variant id -> original (pre-auction) price
        self._original_prices: Dict[str, Decimal] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return ensure_utc(now) if now is not None else ensure_utc(self._clock())

    def _reconcile(self) -> Optional[AuctionState]:
        """Replace the in-memory state with the persisted record."""
        self._state = self.store.load()
        self._loaded = True
        return self._state

    def _peek(self) -> Optional[AuctionState]:
        """Read-only view; never replaces the in-memory state."""
        return self._state if self._loaded else self.store.load()

    def _save(self, state: AuctionState) -> None:
        self.store.save(state)
        self._state = state
        self._loaded = True

    def _log(
        self,
        action: str,
        discount_percent: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self.store.append_log(action, discount_percent=discount_percent, details=details)
        except Exception as exc:
            logger.error("Failed to write auction log %s: %s", action, exc, exc_info=True)

    async def _load_catalog(self, *, refresh: bool = False) -> bool:
        """Fill the product cache if it is empty. False when nothing could be read."""
        if self._products and not refresh:
            return True
        try:
            products = await self.catalog.fetch_catalog()
        except CatalogAPIError as exc:
            logger.error("Auction: catalog unavailable: %s", exc)
            return False
        if not products:
            logger.warning("Auction: catalog fetch returned no products")
            return False
        self._products = products
        logger.info("Auction: loaded %d products into memory", len(products))
        return True

    def _original_for(self, variant: VariantSnapshot) -> Decimal:
        """Original price: compare-at price, else the remembered one, else adopt ``price``."""
        if variant.compare_at_price is not None:
            original = variant.compare_at_price
        elif variant.id in self._original_prices:
            original = self._original_prices[variant.id]
        else:
            original = variant.price
            logger.info("Auction: adopting current price %s as original for %s", original, variant.id)
        self._original_prices[variant.id] = original
        return original

    def _eligible_targets(self) -> Tuple[List[PriceTarget], int]:
        targets: List[PriceTarget] = []
        eligible_products = 0
        for product in self._products:
            if not product.is_eligible:
                continue
            eligible_products += 1
            for variant in product.variants:
                targets.append(
                    PriceTarget(
                        product_id=product.id,
                        variant_id=variant.id,
                        original_price=self._original_for(variant),
                    )
                )
        return targets, eligible_products

    def _known_original_targets(self) -> List[PriceTarget]:
        """Every cached variant whose original is known, eligible or not."""
        targets: List[PriceTarget] = []
        for product in self._products:
            for variant in product.variants:
                original = variant.compare_at_price or self._original_prices.get(variant.id)
                if original is None:
                    continue
                targets.append(
                    PriceTarget(product_id=product.id, variant_id=variant.id, original_price=original)
                )
        return targets

    def _record_written(
        self,
        targets: List[PriceTarget],
        result: MutationResult,
        price_for: Optional[Callable[[PriceTarget], Decimal]],
    ) -> None:
        """Mirror successful writes into the snapshot cache."""
        failed = set(result.failed_ids)
        by_id = {t.variant_id: t for t in targets if t.variant_id not in failed}
        for product in self._products:
            for variant in product.variants:
                target = by_id.get(variant.id)
                if target is None:
                    continue
                variant.compare_at_price = target.original_price
                if price_for is not None:
                    variant.price = price_for(target)

    async def _apply_discount(self, discount: float, now: datetime) -> Optional[Dict[str, Any]]:
        """Write ``discount`` to every eligible variant.

        Returns the step summary, or None when the step has to be abandoned
        because the catalog could not be read or written at all.
        """
        if not await self._load_catalog():
            return None

        targets, eligible_products = self._eligible_targets()
        try:
            result = await self.catalog.apply_discount(targets, discount)
        except CatalogAPIError as exc:
            logger.error("Auction: applying %s%% discount failed: %s", discount, exc)
            return None

        self._record_written(
            targets, result, lambda t: discounted_price(t.original_price, discount)
        )
        summary = {
            "discount_percent": discount,
            "eligible_products": eligible_products,
            "eligible_variants": len(targets),
            "updated_variants": result.updated_count,
            "failed_variant_ids": list(result.failed_ids),
            "at": now.isoformat(),
        }
        if result.failed_ids:
            logger.warning(
                "Auction: %s%% step partially applied, %d/%d variants failed",
                discount,
                len(result.failed_ids),
                len(targets),
            )
        return summary

    @staticmethod
    def _starting_discount(state: AuctionState) -> float:
        if state.initial_discount_percent is not None:
            return clamp_discount(state.initial_discount_percent)
        staged = state.current_discount_percent or 0.0
        if 0 < staged < MAX_DISCOUNT_PERCENT:
            return staged
        return clamp_discount(state.discount_increment_percent)

    @staticmethod
    def _complete(state: AuctionState, now: datetime) -> None:
        state.is_active = False
        state.scheduled_start_time = None
        state.next_update_at = None
        state.completed_at = now

    # ------------------------------------------------------------------
    # Transitions (callers hold the lock)
    # ------------------------------------------------------------------

    async def _start(self, state: AuctionState, started_at: datetime, now: datetime) -> bool:
        """Enter RUNNING anchored at ``started_at`` and apply the starting step."""
        start = self._starting_discount(state)
        next_update_at = next_update_time(started_at, state.interval_minutes, 0)
        summary = await self._apply_discount(start, now)
        if summary is None:
            logger.warning("Auction: start abandoned, catalog unavailable")
            return False

        state.scheduled_start_time = None
        state.is_active = True
        state.started_at = started_at
        state.completed_at = None
        state.current_discount_percent = start
        state.last_fired_interval = 0
        state.last_update_at = now
        state.next_update_at = next_update_at
        state.last_step = summary

        completed = start >= MAX_DISCOUNT_PERCENT
        if completed:
            self._complete(state, now)
        self._save(state)

        logger.info(
            "Auction started: discount=%s%% interval=%sm increment=%s%% anchor=%s",
            start,
            state.interval_minutes,
            state.discount_increment_percent,
            started_at.isoformat(),
        )
        self._log("STARTED", start, {**summary, "started_at": started_at.isoformat()})
        if completed:
            self._log("COMPLETED", start)
        return True

    async def _promote_if_due(self, state: Optional[AuctionState], now: datetime) -> bool:
        if state is None or state.phase is not AuctionPhase.scheduled:
            return False
        if now < state.scheduled_start_time:
            return False
        logger.info(
            "Auction: scheduled start %s reached, promoting to running",
            state.scheduled_start_time.isoformat(),
        )
        return await self._start(state, state.scheduled_start_time, now)

    async def _fire_step_if_due(self, state: Optional[AuctionState], now: datetime) -> bool:
        # At most one step per tick: after downtime the missed steps are caught up one tick at a time.
        if state is None or state.phase is not AuctionPhase.running:
            return False
        if not is_step_due(state.started_at, state.interval_minutes, state.last_fired_interval, now):
            return False

        new_discount = next_discount(state.current_discount_percent, state.discount_increment_percent)
        summary = await self._apply_discount(new_discount, now)
        if summary is None:
            logger.warning(
                "Auction: step %d abandoned, will retry on the next tick",
                state.last_fired_interval + 1,
            )
            return False

        state.current_discount_percent = new_discount
        state.last_fired_interval += 1
        state.last_update_at = now
        state.next_update_at = next_update_time(
            state.started_at, state.interval_minutes, state.last_fired_interval
        )
        state.last_step = summary

        completed = new_discount >= MAX_DISCOUNT_PERCENT
        if completed:
            self._complete(state, now)
        self._save(state)

        logger.info(
            "Auction step %d applied: discount=%s%% updated=%d failed=%d",
            state.last_fired_interval,
            new_discount,
            summary["updated_variants"],
            len(summary["failed_variant_ids"]),
        )
        self._log("PRICE_STEP", new_discount, {**summary, "step": state.last_fired_interval})
        if completed:
            logger.info("Auction completed at %s%%", new_discount)
            self._log("COMPLETED", new_discount, {"step": state.last_fired_interval})
        return True

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def reconcile(self) -> Optional[AuctionState]:
        """Load the persisted auction into memory (startup and every tick)."""
        async with self._lock:
            state = self._reconcile()
        if state is None:
            logger.info("Auction: no persisted auction")
        else:
            logger.info(
                "Auction: restored %s auction (discount=%s%% scheduled=%s started=%s)",
                state.phase.value,
                state.current_discount_percent,
                _iso(state.scheduled_start_time),
                _iso(state.started_at),
            )
        return state

    async def create(
        self,
        *,
        interval_minutes: Any,
        increment_percent: Any,
        start_mode: Union[str, StartMode, None] = StartMode.immediate,
        scheduled_time: Union[str, datetime, None] = None,
        timezone: Optional[str] = None,
        initial_discount: Any = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        interval = validate_interval(interval_minutes)
        increment = validate_increment(increment_percent)
        mode = validate_start_mode(start_mode)
        initial = (
            validate_percent(initial_discount, "Initial discount")
            if initial_discount is not None
            else None
        )
        tz_name = timezone or settings.AUCTION_DEFAULT_TIMEZONE
        resolve_timezone(tz_name)
        scheduled_at = None
        if mode is StartMode.scheduled:
            scheduled_at = parse_scheduled_time(scheduled_time, tz_name)

        async with self._lock:
            now = self._now(now)
            check_schedule_horizon(scheduled_at or now, interval)
            previous = self._reconcile()

            state = AuctionState(
                interval_minutes=interval,
                discount_increment_percent=increment,
                initial_discount_percent=initial,
                timezone=tz_name,
                created_at=now,
            )
            # A staged discount (manual discount, pending schedule) carries
            # over; a running or finished auction's level does not.
            if previous is not None and not previous.is_active and previous.completed_at is None:
                state.current_discount_percent = previous.current_discount_percent

            created = {
                "interval_minutes": interval,
                "increment_percent": increment,
                "start_mode": mode.value,
                "scheduled_time": _iso(scheduled_at),
                "timezone": tz_name,
            }
            if scheduled_at is not None and scheduled_at > now:
                state.scheduled_start_time = scheduled_at
                self._save(state)
                self._log("CREATED", initial, created)
                logger.info(
                    "Auction scheduled for %s (%s)",
                    format_in_timezone(scheduled_at, tz_name),
                    tz_name,
                )
                self._log("SCHEDULED", None, {"scheduled_start_time": scheduled_at.isoformat()})
            else:
                anchor = scheduled_at if scheduled_at is not None else now
                if not await self._start(state, anchor, now):
                    raise AuctionStateError("Catalog unavailable; the auction was not started")
                self._log("CREATED", initial, created)

        return await self.get_status(now=now)

    async def tick(self, now: Optional[datetime] = None) -> bool:
        """One scheduler evaluation. True when prices were mutated."""
        async with self._lock:
            now = self._now(now)
            state = self._reconcile()
            promoted = await self._promote_if_due(state, now)
            stepped = await self._fire_step_if_due(self._state, now)
            return promoted or stepped

    async def stop(self) -> Dict[str, Any]:
        """Deactivate and forget the auction. Prices are left as they are."""
        async with self._lock:
            state = self._reconcile()
            self.store.clear()
            self._state = None
            self._products = []
            self._original_prices.clear()

            if state is None:
                logger.info("Auction stop requested but no auction exists")
                return {"stopped": False, "previousPhase": AuctionPhase.idle.value}

            logger.info(
                "Auction stopped (phase=%s discount=%s%%); prices left unchanged",
                state.phase.value,
                state.current_discount_percent,
            )
            self._log("STOPPED", state.current_discount_percent, {"phase": state.phase.value})
            return {"stopped": True, "previousPhase": state.phase.value}

    async def reset_prices(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Restore every variant with a known original price."""
        async with self._lock:
            now = self._now(now)
            if not await self._load_catalog(refresh=True) and not self._products:
                raise AuctionStateError("Catalog unavailable; prices were not reset")

            targets = self._known_original_targets()
            try:
                result = await self.catalog.reset_prices(targets)
            except CatalogAPIError as exc:
                raise AuctionStateError(f"Price reset failed: {exc}") from exc
            self._record_written(targets, result, lambda t: t.original_price)

            state = self._reconcile()
            if state is not None:
                state.current_discount_percent = 0.0
                self._save(state)

            logger.info(
                "Prices reset: %d variants restored, %d failed",
                result.updated_count,
                len(result.failed_ids),
            )
            self._log("PRICES_RESET", 0.0, result.as_dict())
            return {"variants": len(targets), **result.as_dict()}

    async def apply_manual_discount(self, percent: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Force the live discount to ``percent`` without touching the schedule."""
        discount = clamp_discount(validate_percent(percent))
        async with self._lock:
            now = self._now(now)
            summary = await self._apply_discount(discount, now)
            if summary is None:
                raise AuctionStateError("Catalog unavailable; the discount was not applied")

            state = self._reconcile() or AuctionState(created_at=now)
            state.current_discount_percent = discount
            state.last_step = summary
            # a finished auction's record becomes a staged one again
            state.completed_at = None
            self._save(state)

            logger.info("Manual discount of %s%% applied (phase=%s)", discount, state.phase.value)
            self._log("MANUAL_DISCOUNT", discount, summary)
            return summary

    async def set_compare_at_prices(self) -> Dict[str, Any]:
        """Fill missing compare-at prices from the current price."""
        async with self._lock:
            if not await self._load_catalog():
                raise AuctionStateError("Catalog unavailable; compare-at prices were not set")

            targets: List[PriceTarget] = []
            for product in self._products:
                for variant in product.variants:
                    if variant.compare_at_price is not None:
                        continue
                    targets.append(
                        PriceTarget(
                            product_id=product.id,
                            variant_id=variant.id,
                            original_price=self._original_for(variant),
                        )
                    )
            try:
                result = await self.catalog.set_compare_at_prices(targets)
            except CatalogAPIError as exc:
                raise AuctionStateError(f"Setting compare-at prices failed: {exc}") from exc
            self._record_written(targets, result, None)

            logger.info("Compare-at prices set for %d variants", result.updated_count)
            self._log("COMPARE_PRICES_SET", None, result.as_dict())
            return {"variants": len(targets), **result.as_dict()}

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = self._now(now)
        state = self._peek()

        # Promote on read when the loop has not ticked yet.
        if state is not None and state.phase is AuctionPhase.scheduled and now >= state.scheduled_start_time:
            async with self._lock:
                await self._promote_if_due(self._reconcile(), now)
            state = self._state

        return self.build_status(state, now)

    def build_status(self, state: Optional[AuctionState], now: datetime) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "isRunning": False,
            "isScheduled": False,
            "currentDiscountPercent": 0.0,
            "intervalMinutes": None,
            "discountIncrementPercent": None,
            "startedAt": None,
            "lastUpdateAt": None,
            "nextUpdateAt": None,
            "timeUntilNextUpdateMs": 0,
            "scheduledStartTime": None,
            "formattedScheduledTime": None,
            "timezone": settings.AUCTION_DEFAULT_TIMEZONE,
            "schedule": [],
            "lastStep": None,
            "productsLoaded": len(self._products),
            "completedAt": None,
            "serverTime": now.isoformat(),
        }
        if state is None:
            return status

        phase = state.phase
        status.update(
            {
                "isRunning": phase is AuctionPhase.running,
                "isScheduled": phase is AuctionPhase.scheduled,
                "currentDiscountPercent": state.current_discount_percent,
                "intervalMinutes": state.interval_minutes,
                "discountIncrementPercent": state.discount_increment_percent,
                "startedAt": _iso(state.started_at),
                "lastUpdateAt": _iso(state.last_update_at),
                "timezone": state.timezone,
                "lastStep": state.last_step,
                "completedAt": _iso(state.completed_at),
            }
        )

        if phase is AuctionPhase.running:
            status["nextUpdateAt"] = _iso(state.next_update_at)
            status["timeUntilNextUpdateMs"] = milliseconds_until(state.next_update_at, now)
            status["schedule"] = build_schedule(
                current_discount=state.current_discount_percent,
                increment=state.discount_increment_percent,
                started_at=state.started_at,
                interval_minutes=state.interval_minutes,
                last_fired_interval=state.last_fired_interval,
            )
        elif phase is AuctionPhase.scheduled:
            start = self._starting_discount(state)
            status["scheduledStartTime"] = _iso(state.scheduled_start_time)
            status["formattedScheduledTime"] = format_in_timezone(
                state.scheduled_start_time, state.timezone
            )
            status["nextUpdateAt"] = _iso(state.scheduled_start_time)
            status["timeUntilNextUpdateMs"] = milliseconds_until(state.scheduled_start_time, now)
            status["schedule"] = [
                {"step": 0, "discountPercent": start, "at": state.scheduled_start_time.isoformat()}
            ] + build_schedule(
                current_discount=start,
                increment=state.discount_increment_percent,
                started_at=state.scheduled_start_time,
                interval_minutes=state.interval_minutes,
                last_fired_interval=0,
            )
        return status

    def list_scheduled(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = self._now(now)
        state = self._peek()
        if state is None or state.phase is not AuctionPhase.scheduled:
            return []
        remaining = milliseconds_until(state.scheduled_start_time, now)
        return [
            {
                "id": state.id,
                "scheduledStartTime": state.scheduled_start_time.isoformat(),
                "formattedStartTime": format_in_timezone(state.scheduled_start_time, state.timezone),
                "timezone": state.timezone,
                "intervalMinutes": state.interval_minutes,
                "discountIncrementPercent": state.discount_increment_percent,
                "initialDiscountPercent": state.initial_discount_percent,
                "timeUntilStartMs": remaining,
                "timeUntilStart": format_countdown(remaining),
            }
        ]

    def state_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Compact snapshot for the per-tick log line."""
        now = self._now(now)
        state = self._state
        return {
            "phase": state.phase.value if state else AuctionPhase.idle.value,
            "discount": state.current_discount_percent if state else 0.0,
            "step": state.last_fired_interval if state else 0,
            "intervals_passed": (
                intervals_passed(state.started_at, now, state.interval_minutes)
                if state is not None and state.is_active
                else None
            ),
            "next_update_at": _iso(state.next_update_at) if state else None,
            "scheduled_start_time": _iso(state.scheduled_start_time) if state else None,
            "products_loaded": len(self._products),
            "server_time": now.isoformat(),
        }


_engine: Optional[AuctionEngine] = None


def get_auction_engine() -> AuctionEngine:
    """Process-wide engine; used by the router and the scheduler loop."""
    global _engine
    if _engine is None:
        _engine = AuctionEngine()
    return _engine


def set_auction_engine(engine: Optional[AuctionEngine]) -> None:
    global _engine
    _engine = engine
