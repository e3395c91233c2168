"""
XDEX Token collaborators

Provides:
  - TokenInterface : what the exchange consumes (received-amount transfers)
  - XToken         : in-memory token with optional transfer fee
  - TokenRegistry  : address → token lookup
"""

from .xtoken import (
    ApprovalEvent,
    TokenInterface,
    TokenRegistry,
    TransferEvent,
    XToken,
    ZERO_ADDRESS,
    token_address,
)

__all__ = [
    "ApprovalEvent",
    "TokenInterface",
    "TokenRegistry",
    "TransferEvent",
    "XToken",
    "ZERO_ADDRESS",
    "token_address",
]
