class AuctionValidationError(ValueError):
    """Rejected auction input (interval, percentage, schedule or timezone).

    Raised synchronously by the engine before any state changes; the HTTP
    layer maps it to a 400 response.
    """


class AuctionStateError(RuntimeError):
    """Operation not allowed in the current auction state."""
