class PriceNotAvailableError(Exception):
    """Raised when price data is not available."""
    pass


class LotNotFoundError(Exception):
    """Raised when a lot referenced by a disposal cannot be found."""
    pass


class InsufficientLotsError(Exception):
    """Raised when there are insufficient lots to cover a disposal."""
    pass


class LinkValidationError(Exception):
    """Raised when a candidate link has invalid source/target amounts."""
    pass


class FeeValidationError(Exception):
    """Raised when an outflow's net amount does not reconcile with its declared fees."""
    pass


class TransferVarianceError(Exception):
    """Raised when transferred and received amounts differ beyond the error tolerance."""
    pass


class TransferOrderError(Exception):
    """Raised when a transfer target is processed before its source leg."""
    pass


class StrategyNotImplementedError(Exception):
    """Raised when a declared but unimplemented cost basis method is selected."""
    pass


class MissingPriceError(Exception):
    """Raised when a movement or fee needed for cost basis has no price."""
    pass
