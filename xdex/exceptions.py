"""
XDEX Exceptions

Custom exception classes for the XDEX exchange engine.
"""


class XDEXException(Exception):
    """Base exception for XDEX."""
    pass


class ConfigurationError(XDEXException):
    """Configuration error."""
    pass


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------

class ExchangeError(XDEXException):
    """Base class for pool, order and matching failures."""
    pass


class InvalidAmount(ExchangeError):
    """Zero, negative or otherwise unusable amount."""
    pass


class InsufficientShares(InvalidAmount):
    """Withdrawal exceeds the provider's share balance."""
    pass


class InvalidToken(ExchangeError):
    """Token is not part of the pool, not registered, or paired with itself."""
    pass


class RatioMismatch(ExchangeError):
    """Liquidity deposit does not match the current reserve ratio."""
    pass


class SlippageExceeded(ExchangeError):
    """Swap output fell below the requested minimum."""
    pass


class InsufficientLiquidity(ExchangeError):
    """Pool has no reserves to trade against."""
    pass


class PoolLocked(ExchangeError):
    """Nested mutation of a pool that is already mid-operation."""
    pass


class OrderNotFound(ExchangeError):
    """No order at the requested (pair, side, index)."""
    pass


class Unauthorized(ExchangeError):
    """Caller is not the owner of the order."""
    pass


class VolumeConditionNotMet(ExchangeError):
    """Counterparty volume is below an order's volume condition."""
    pass


class PriceConditionNotMet(ExchangeError):
    """Reference price does not satisfy the order's price condition."""
    pass


class PairExists(ExchangeError):
    """A pool already exists for this token pair."""
    pass


class PairNotFound(ExchangeError):
    """No pool exists for this token pair."""
    pass


class BatchLengthMismatch(ExchangeError):
    """Batch sequences are empty or of unequal length."""
    pass


class TransactionAlreadyProcessed(XDEXException):
    """Bridge replay guard tripped (bridge collaborator)."""
    pass


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

class TokenError(XDEXException):
    """Base exception for token operations."""
    pass


class InsufficientBalance(TokenError):
    """Sender balance is too low."""
    pass


class InsufficientAllowance(TokenError):
    """Spender allowance is too low."""
    pass


class NotOwner(TokenError):
    """Owner-gated token operation called by another address."""
    pass


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------

class OracleError(XDEXException):
    """Reference price could not be produced."""
    pass
