"""
Background workers for the price-drop service.

Workers:
- auction_scheduler: ticks every minute, promotes due scheduled auctions and
  fires discount steps
"""

from pricedrop.workers.auction_scheduler import run_auction_scheduler_loop, run_auction_scheduler_once

__all__ = [
    "run_auction_scheduler_loop",
    "run_auction_scheduler_once",
]
