"""Reverse-auction services package.

This package holds the store-wide decaying-discount auction:

- ``timing``: interval anchoring and discount progression arithmetic.
- ``state``: the persisted auction record (``AuctionStateStore``).
- ``engine``: the state machine and its single mutation lock.
- ``logger``: ``auction_logs`` activity trail used by the UI.

The engine is driven by ``pricedrop.workers.auction_scheduler`` and exposed
over HTTP by ``pricedrop.routers.auction``.
"""

from .errors import AuctionStateError, AuctionValidationError
from .engine import AuctionEngine, StartMode, get_auction_engine, set_auction_engine
from .state import AuctionPhase, AuctionState, AuctionStateStore

__all__ = [
    "AuctionEngine",
    "AuctionPhase",
    "AuctionState",
    "AuctionStateError",
    "AuctionStateStore",
    "AuctionValidationError",
    "StartMode",
    "get_auction_engine",
    "set_auction_engine",
]
