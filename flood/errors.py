"""
Error taxonomy for the rebalancing agent.

The run loop in agent.py is the only place that decides whether an error is
fatal, skips one account, or is only logged.
"""


class FloodError(Exception):
    """Base class for all agent errors."""


class SetupError(FloodError):
    """Required endpoints or the signer identity are unavailable at start."""


class QueryError(FloodError):
    """A chain read failed mid-run."""


class TransportError(QueryError):
    """The endpoint could not be reached at all."""


class AuthorizationDecodeError(FloodError):
    """A recognized authorization type carried a malformed payload."""


class ComputationError(FloodError):
    """Prices could not be turned into a valid tick range."""


class InvalidTickOrder(ComputationError):
    def __init__(self, ticks):
        self.ticks = tuple(ticks)
        super().__init__(f"ticks are in the incorrect order: {self.ticks}")


class PriceOutOfRange(ComputationError, ValueError):
    """Price lies outside the pool's representable spot price range."""


class InvalidNumber(ComputationError, ValueError):
    """A numeric input was malformed or outside its domain."""


class BroadcastError(FloodError):
    """The batched transaction was rejected or timed out."""
