"""
Share token ledger for liquidity providers.

The share token is the single source of truth for each provider's fraction
of the pool. Amounts are 18-decimal fixed point.
"""

from __future__ import annotations

from typing import Dict, Tuple

from ..core.errors import ValidationError

Address = str


class ShareToken:
    """
    Balance table mapping address -> share amount, plus total supply.

    Notes:
    - Share balances are always non-negative.
    - Zero balances are omitted to keep the table sparse.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._balances: Dict[Address, int] = {}
        self._total_supply = 0

    def total_supply(self) -> int:
        return self._total_supply

    def balance_of(self, account: Address) -> int:
        """Get share balance for `account`. Returns 0 if not found."""
        return self._balances.get(account, 0)

    def _set(self, account: Address, amount: int) -> None:
        if amount == 0:
            self._balances.pop(account, None)
        else:
            self._balances[account] = amount

    def mint(self, account: Address, amount: int) -> None:
        if amount <= 0:
            raise ValidationError(f"mint amount must be positive: {amount}")
        self._set(account, self.balance_of(account) + amount)
        self._total_supply += amount

    def burn(self, account: Address, amount: int) -> None:
        if amount <= 0:
            raise ValidationError(f"burn amount must be positive: {amount}")
        current = self.balance_of(account)
        if current < amount:
            raise ValidationError(
                f"insufficient {self.name} balance: {current} - {amount} < 0"
            )
        self._set(account, current - amount)
        self._total_supply -= amount

    def transfer(self, sender: Address, recipient: Address, amount: int) -> None:
        if amount < 0:
            raise ValidationError(f"transfer amount must be non-negative: {amount}")
        current = self.balance_of(sender)
        if current < amount:
            raise ValidationError(f"insufficient {self.name} balance: {current} < {amount}")
        self._set(sender, current - amount)
        self._set(recipient, self.balance_of(recipient) + amount)

    def get_all_balances(self) -> Dict[Address, int]:
        return dict(self._balances)

    def checkpoint(self) -> Tuple[Dict[Address, int], int]:
        return dict(self._balances), self._total_supply

    def rollback(self, checkpoint: Tuple[Dict[Address, int], int]) -> None:
        balances, total_supply = checkpoint
        self._balances = dict(balances)
        self._total_supply = total_supply

    def verify_supply(self) -> bool:
        """Total supply equals the sum of balances."""
        return sum(self._balances.values()) == self._total_supply

    def __repr__(self) -> str:
        return f"ShareToken({self.name}, supply={self._total_supply})"
