"""
AEC Perpetual Engine - Token Ledgers

In-process stand-ins for the on-chain token contracts the protocol talks to:

- FungibleToken: balances, allowances, burn and mint with supply tracking.
  Used for AEC, the paired stablecoin and the AMM pair's LP token.
- NFTCollection: ownership and per-token / operator approvals for the
  membership NFTs staked in the NFT pool.

Accounts are address strings. Every mutation validates all preconditions
before touching state, so a failed call leaves balances untouched.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from engine_errors import (
    InsufficientAllowanceError,
    InsufficientBalanceError,
    TokenError,
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40
DEAD_ADDRESS = "0x000000000000000000000000000000000000dEaD"

# 1 AEC in base units
ONE_TOKEN = 10**18


def is_valid_address(address: str | None) -> bool:
    """True for a non-empty address that is not the zero address."""
    return bool(address) and address != ZERO_ADDRESS


class TokenLike(Protocol):
    """Fungible token surface consumed by the engine, pools and endowment."""

    address: str

    def balance_of(self, account: str) -> int: ...

    def allowance(self, owner: str, spender: str) -> int: ...

    def transfer(self, sender: str, to: str, amount: int) -> bool: ...

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool: ...

    def approve(self, owner: str, spender: str, amount: int) -> bool: ...

    def burn(self, holder: str, amount: int) -> bool: ...


@dataclass
class TransferRecord:
    """Single ledger movement, kept for audit and debugging."""
    sender: str
    recipient: str
    amount: int
    kind: str = "transfer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.recipient,
            "amount": str(self.amount),
            "kind": self.kind,
        }


class FungibleToken:
    """ERC-20 style token with burn support."""

    def __init__(self, name: str, symbol: str, address: str, decimals: int = 18):
        if not is_valid_address(address):
            raise TokenError("Invalid token address", prefix=symbol, action="init")
        self.name = name
        self.symbol = symbol
        self.address = address
        self.decimals = decimals

        self.total_supply = 0
        self.total_burned = 0
        self._balances: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self.transfers: list[TransferRecord] = []

    def __repr__(self) -> str:
        return f"FungibleToken({self.symbol}@{self.address})"

    # =========================================================================
    # Views
    # =========================================================================

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    def holders(self) -> dict[str, int]:
        """Snapshot of all nonzero balances."""
        return {acct: bal for acct, bal in self._balances.items() if bal > 0}

    # =========================================================================
    # Mutations
    # =========================================================================

    def mint(self, to: str, amount: int) -> None:
        if not is_valid_address(to):
            raise TokenError("mint to the zero address", prefix=self.symbol, action="mint")
        if amount < 0:
            raise TokenError("Negative amount", prefix=self.symbol, action="mint")
        self._balances[to] = self.balance_of(to) + amount
        self.total_supply += amount
        self.transfers.append(TransferRecord(ZERO_ADDRESS, to, amount, "mint"))

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        self._move(sender, to, amount)
        return True

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        current = self.allowance(owner, spender)
        if current < amount:
            raise InsufficientAllowanceError(owner, spender, amount, current, prefix=self.symbol)
        self._move(owner, to, amount)
        self._allowances[(owner, spender)] = current - amount
        return True

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        if not is_valid_address(spender):
            raise TokenError("approve to the zero address", prefix=self.symbol, action="approve")
        if amount < 0:
            raise TokenError("Negative amount", prefix=self.symbol, action="approve")
        self._allowances[(owner, spender)] = amount
        return True

    def burn(self, holder: str, amount: int) -> bool:
        available = self.balance_of(holder)
        if amount > available:
            raise InsufficientBalanceError(holder, amount, available, prefix=self.symbol)
        self._balances[holder] = available - amount
        self.total_supply -= amount
        self.total_burned += amount
        self.transfers.append(TransferRecord(holder, ZERO_ADDRESS, amount, "burn"))
        return True

    def _move(self, sender: str, to: str, amount: int) -> None:
        if not is_valid_address(to):
            raise TokenError("transfer to the zero address", prefix=self.symbol, action="transfer")
        if amount < 0:
            raise TokenError("Negative amount", prefix=self.symbol, action="transfer")
        available = self.balance_of(sender)
        if amount > available:
            raise InsufficientBalanceError(sender, amount, available, prefix=self.symbol)
        self._balances[sender] = available - amount
        self._balances[to] = self.balance_of(to) + amount
        self.transfers.append(TransferRecord(sender, to, amount))

    def get_statistics(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "address": self.address,
            "total_supply": str(self.total_supply),
            "total_burned": str(self.total_burned),
            "holders": len(self.holders()),
        }


class NFTCollection:
    """ERC-721 style collection with sequential token ids."""

    def __init__(self, name: str, symbol: str, address: str):
        if not is_valid_address(address):
            raise TokenError("Invalid NFT address", prefix=symbol, action="init")
        self.name = name
        self.symbol = symbol
        self.address = address
        self._owners: dict[int, str] = {}
        self._token_approvals: dict[int, str] = {}
        self._operators: set[tuple[str, str]] = set()
        self._next_id = 1

    def mint(self, to: str) -> int:
        if not is_valid_address(to):
            raise TokenError("mint to the zero address", prefix=self.symbol, action="mint")
        token_id = self._next_id
        self._next_id += 1
        self._owners[token_id] = to
        return token_id

    def owner_of(self, token_id: int) -> str | None:
        return self._owners.get(token_id)

    def balance_of(self, owner: str) -> int:
        return sum(1 for holder in self._owners.values() if holder == owner)

    def tokens_of(self, owner: str) -> list[int]:
        return sorted(tid for tid, holder in self._owners.items() if holder == owner)

    def approve(self, owner: str, operator: str, token_id: int) -> None:
        if self.owner_of(token_id) != owner:
            raise TokenError("approve caller is not owner", prefix=self.symbol, action="approve")
        self._token_approvals[token_id] = operator

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None:
        if approved:
            self._operators.add((owner, operator))
        else:
            self._operators.discard((owner, operator))

    def is_approved(self, operator: str, token_id: int) -> bool:
        owner = self.owner_of(token_id)
        if owner is None:
            return False
        return (
            operator == owner
            or self._token_approvals.get(token_id) == operator
            or (owner, operator) in self._operators
        )

    def transfer_from(self, operator: str, sender: str, to: str, token_id: int) -> None:
        if self.owner_of(token_id) != sender:
            raise TokenError("transfer from incorrect owner", prefix=self.symbol,
                             action="transfer_from", details={"token_id": token_id})
        if not self.is_approved(operator, token_id):
            raise TokenError("caller is not token owner or approved", prefix=self.symbol,
                             action="transfer_from", details={"token_id": token_id})
        if not is_valid_address(to):
            raise TokenError("transfer to the zero address", prefix=self.symbol,
                             action="transfer_from")
        self._owners[token_id] = to
        self._token_approvals.pop(token_id, None)
