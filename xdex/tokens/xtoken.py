"""
XToken: fungible token collaborator

Implements the token interface the exchange consumes:
  - ERC-20–style interface (transfer, approve, transferFrom, balanceOf)
  - Every transfer returns the amount actually credited to the recipient
  - Optional proportional transfer fee (percent), toggled by the owner;
    the fee is burned
  - Owner-gated mint, holder burn, ownership transfer
  - Snapshot / restore so callers can roll back a failed operation
"""

import hashlib
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..constants import TOKEN_DEFAULT_DECIMALS, TOKEN_MAX_FEE_PERCENT
from ..exceptions import (
    InsufficientAllowance,
    InsufficientBalance,
    NotOwner,
    TokenError,
)
from ..logger import get_logger

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransferEvent:
    """Emitted on every successful transfer, mint and burn."""
    token_symbol: str
    sender: str
    recipient: str
    amount: int
    fee: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Transfer",
            "token": self.token_symbol,
            "from": self.sender,
            "to": self.recipient,
            "amount": self.amount,
            "fee": self.fee,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ApprovalEvent:
    """Emitted on every successful approve."""
    token_symbol: str
    owner: str
    spender: str
    amount: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Approval",
            "token": self.token_symbol,
            "owner": self.owner,
            "spender": self.spender,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }


ZERO_ADDRESS = "0x" + "0" * 40


def token_address(deployer: str, symbol: str, name: str) -> str:
    """Deterministic token address derived from its deployment parameters."""
    raw = f"{deployer}:{symbol}:{name}".encode()
    return "0x" + hashlib.blake2b(raw, digest_size=20).hexdigest()


# ══════════════════════════════════════════════════════════════════════
#  TOKEN INTERFACE
# ══════════════════════════════════════════════════════════════════════

class TokenInterface(ABC):
    """
    What the pool and the matching engine need from a token.

    ``transfer`` and ``transfer_from`` return the amount actually credited
    to the recipient, which is smaller than the requested amount for
    fee-on-transfer tokens. Callers must account with the returned value.
    """

    address: str
    symbol: str

    @abstractmethod
    def balance_of(self, address: str) -> int: ...

    @abstractmethod
    def allowance(self, owner: str, spender: str) -> int: ...

    @abstractmethod
    def transfer(self, sender: str, recipient: str, amount: int) -> int: ...

    @abstractmethod
    def transfer_from(self, spender: str, sender: str, recipient: str, amount: int) -> int: ...

    @abstractmethod
    def approve(self, owner: str, spender: str, amount: int) -> None: ...

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]: ...

    @abstractmethod
    def restore(self, snapshot: Dict[str, Any]) -> None: ...


# ══════════════════════════════════════════════════════════════════════
#  XTOKEN
# ══════════════════════════════════════════════════════════════════════

class XToken(TokenInterface):
    """
    In-memory fungible token with an optional transfer fee.

    Mirrors ERC-20 semantics:
        - balance_of(address) → int
        - transfer(sender, recipient, amount) → received
        - approve(owner, spender, amount)
        - transfer_from(spender, sender, recipient, amount) → received
        - total_supply → int

    With the fee enabled, ``amount * fee_percent // 100`` is deducted from
    every transfer and burned; the sender is debited the full amount.
    """

    def __init__(
        self,
        name: str,
        symbol: str,
        total_supply: int = 0,
        fee_percent: int = 0,
        owner: str = "",
        *,
        decimals: int = TOKEN_DEFAULT_DECIMALS,
        address: Optional[str] = None,
    ):
        """
        Args:
            name: Human-readable token name
            symbol: Short ticker
            total_supply: Initial supply, credited to *owner*
            fee_percent: Transfer fee applied once the fee is enabled
            owner: Address allowed to mint and toggle the fee
            decimals: Fractional digits
            address: Explicit token address (derived when omitted)
        """
        if not name:
            raise TokenError("Token name cannot be empty")
        if not symbol:
            raise TokenError("Token symbol cannot be empty")
        if decimals < 0 or decimals > 18:
            raise TokenError(f"Decimals must be 0-18, got {decimals}")
        if total_supply < 0:
            raise TokenError("Total supply cannot be negative")
        if not 0 <= fee_percent <= TOKEN_MAX_FEE_PERCENT:
            raise TokenError(f"Fee percent must be 0-{TOKEN_MAX_FEE_PERCENT}, got {fee_percent}")

        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.owner = owner
        self.fee_percent = fee_percent
        self.address = address or token_address(owner, symbol, name)
        self._fee_enabled = False
        self._total_supply = total_supply

        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}  # (owner, spender)
        self._events: List[Any] = []

        if total_supply > 0 and owner:
            self._balances[owner] = total_supply

        logger.info(f"Token deployed: {symbol} ({name}) at {self.address}, supply={total_supply}")

    # ── Read-only views ───────────────────────────────────────────────

    @property
    def total_supply(self) -> int:
        return self._total_supply

    @property
    def fee_enabled(self) -> bool:
        return self._fee_enabled

    @property
    def events(self) -> List[Any]:
        return list(self._events)

    def balance_of(self, address: str) -> int:
        return self._balances.get(address, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    def transfer_fee(self, amount: int) -> int:
        """Fee deducted from a transfer of *amount* under the current settings."""
        if not self._fee_enabled or self.fee_percent == 0:
            return 0
        return amount * self.fee_percent // 100

    # ── Guards ────────────────────────────────────────────────────────

    def _require_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise NotOwner(f"{caller} is not the owner of {self.symbol}")

    # ── Core ERC-20 operations ────────────────────────────────────────

    def transfer(self, sender: str, recipient: str, amount: int) -> int:
        """
        Move *amount* from sender to recipient.

        Returns:
            The amount credited to the recipient (after the transfer fee).
        """
        if amount <= 0:
            raise TokenError("Transfer amount must be positive")
        return self._move(sender, recipient, amount)

    def approve(self, owner: str, spender: str, amount: int) -> None:
        """Set spender allowance."""
        if amount < 0:
            raise TokenError("Allowance amount cannot be negative")

        self._allowances[(owner, spender)] = amount
        self._events.append(ApprovalEvent(
            token_symbol=self.symbol,
            owner=owner,
            spender=spender,
            amount=amount,
        ))
        logger.debug(f"Approve: {owner} → {spender} allowance={amount} {self.symbol}")

    def transfer_from(self, spender: str, sender: str, recipient: str, amount: int) -> int:
        """
        Transfer on behalf of *sender* using spender's allowance.

        Returns:
            The amount credited to the recipient (after the transfer fee).
        """
        if amount <= 0:
            raise TokenError("Transfer amount must be positive")

        allow = self.allowance(sender, spender)
        if allow < amount:
            raise InsufficientAllowance(
                f"Allowance {allow} < transfer amount {amount}"
            )

        received = self._move(sender, recipient, amount)
        self._allowances[(sender, spender)] = allow - amount
        return received

    def _move(self, sender: str, recipient: str, amount: int) -> int:
        bal = self.balance_of(sender)
        if bal < amount:
            raise InsufficientBalance(
                f"{sender} balance {bal} < transfer amount {amount}"
            )

        fee = self.transfer_fee(amount)
        received = amount - fee

        self._balances[sender] = bal - amount
        self._balances[recipient] = self._balances.get(recipient, 0) + received
        self._total_supply -= fee

        self._events.append(TransferEvent(
            token_symbol=self.symbol,
            sender=sender,
            recipient=recipient,
            amount=received,
            fee=fee,
        ))
        logger.debug(f"Transfer: {sender} → {recipient} {received} {self.symbol} (fee={fee})")
        return received

    # ── Supply management ─────────────────────────────────────────────

    def mint(self, caller: str, recipient: str, amount: int) -> None:
        """Owner-only mint."""
        self._require_owner(caller)
        if amount <= 0:
            raise TokenError("Mint amount must be positive")

        self._total_supply += amount
        self._balances[recipient] = self._balances.get(recipient, 0) + amount
        self._events.append(TransferEvent(
            token_symbol=self.symbol,
            sender=ZERO_ADDRESS,
            recipient=recipient,
            amount=amount,
        ))
        logger.info(f"Mint: {amount} {self.symbol} → {recipient}")

    def burn(self, holder: str, amount: int) -> None:
        """Holder destroys part of its own balance."""
        if amount <= 0:
            raise TokenError("Burn amount must be positive")

        bal = self.balance_of(holder)
        if bal < amount:
            raise InsufficientBalance(
                f"{holder} balance {bal} < burn amount {amount}"
            )

        self._balances[holder] = bal - amount
        self._total_supply -= amount
        self._events.append(TransferEvent(
            token_symbol=self.symbol,
            sender=holder,
            recipient=ZERO_ADDRESS,
            amount=amount,
        ))
        logger.info(f"Burn: {holder} burned {amount} {self.symbol}")

    # ── Owner controls ────────────────────────────────────────────────

    def set_fee_enabled(self, caller: str, enabled: bool) -> None:
        self._require_owner(caller)
        self._fee_enabled = bool(enabled)
        logger.info(f"Token {self.symbol} transfer fee {'enabled' if enabled else 'disabled'} ({self.fee_percent}%)")

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        self._require_owner(caller)
        if not new_owner:
            raise TokenError("New owner cannot be empty")
        self.owner = new_owner
        logger.info(f"Token {self.symbol} ownership → {new_owner}")

    # ── Snapshot / restore ────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        return {
            "balances": dict(self._balances),
            "allowances": dict(self._allowances),
            "total_supply": self._total_supply,
            "events": len(self._events),
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self._balances = dict(snapshot["balances"])
        self._allowances = dict(snapshot["allowances"])
        self._total_supply = snapshot["total_supply"]
        del self._events[snapshot["events"]:]

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "totalSupply": self._total_supply,
            "owner": self.owner,
            "feePercent": self.fee_percent,
            "feeEnabled": self._fee_enabled,
            "holders": len([b for b in self._balances.values() if b > 0]),
        }

    def __repr__(self) -> str:
        return f"<XToken {self.symbol} supply={self._total_supply}>"


# ══════════════════════════════════════════════════════════════════════
#  TOKEN REGISTRY
# ══════════════════════════════════════════════════════════════════════

class TokenRegistry:
    """
    Address → token lookup used by the factory to resolve the tokens
    named in pair and order calls.
    """

    def __init__(self, max_tokens: int = 10_000):
        self._tokens: Dict[str, TokenInterface] = {}
        self._max_tokens = max_tokens

    def deploy(self, token: TokenInterface) -> TokenInterface:
        """
        Register a token.

        Raises TokenError if the address already exists or registry is full.
        """
        if token.address in self._tokens:
            raise TokenError(f"Token {token.address} already registered")
        if len(self._tokens) >= self._max_tokens:
            raise TokenError("Token registry is full")

        self._tokens[token.address] = token
        logger.info(f"Token registered: {token.symbol} at {token.address}")
        return token

    def get(self, address: str) -> Optional[TokenInterface]:
        return self._tokens.get(address)

    def get_or_raise(self, address: str) -> TokenInterface:
        token = self.get(address)
        if token is None:
            raise TokenError(f"Token {address} not found in registry")
        return token

    def exists(self, address: str) -> bool:
        return address in self._tokens

    def all_tokens(self) -> List[TokenInterface]:
        return list(self._tokens.values())

    @property
    def count(self) -> int:
        return len(self._tokens)

    def __repr__(self) -> str:
        return f"<TokenRegistry tokens={len(self._tokens)}>"
