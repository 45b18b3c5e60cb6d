"""
Collateral token ledger and the pool's transfer adapter.

`CollateralToken` tracks raw token units (the token's own decimals). The
engine works in 18-decimal fixed point; `CollateralAdapter` converts between
the two, rounding pulls up and pushes down so the pool never under-collects,
and verifies the pool's own balance moved by exactly the expected raw amount
(a fee-on-transfer token fails that check).
"""

from __future__ import annotations

from typing import Callable, Dict, Optional

from ..core.errors import SafetyViolation, ValidationError
from ..core.fixed_point import DECIMALS, Round, div

# Type aliases
Address = str
RawAmount = int  # token units, non-negative

TransferHook = Callable[[Address, Address, RawAmount], None]


class CollateralToken:
    """
    Balance table mapping address -> raw amount for one token.

    Notes:
    - Balances are always non-negative; zero balances are omitted.
    - `transfer_fee_bps` models fee-on-transfer tokens (the fee is burned).
    - `on_transfer` is invoked after every transfer, which is where an
      external token implementation would hand control back to callers.
    """

    def __init__(
        self,
        symbol: str,
        decimals: int = DECIMALS,
        *,
        transfer_fee_bps: int = 0,
        on_transfer: Optional[TransferHook] = None,
    ) -> None:
        if not (0 <= decimals <= DECIMALS):
            raise ValueError(f"decimals must be in [0, {DECIMALS}]: {decimals}")
        if not (0 <= transfer_fee_bps < 10_000):
            raise ValueError(f"transfer_fee_bps must be in [0, 10000): {transfer_fee_bps}")
        self.symbol = symbol
        self.decimals = decimals
        self.transfer_fee_bps = transfer_fee_bps
        self.on_transfer = on_transfer
        self._balances: Dict[Address, RawAmount] = {}

    def balance_of(self, account: Address) -> RawAmount:
        return self._balances.get(account, 0)

    def _set(self, account: Address, amount: RawAmount) -> None:
        if amount == 0:
            self._balances.pop(account, None)
        else:
            self._balances[account] = amount

    def mint(self, account: Address, amount: RawAmount) -> None:
        """Faucet for tests and offline runs."""
        if amount < 0:
            raise ValueError(f"mint amount must be non-negative: {amount}")
        self._set(account, self.balance_of(account) + amount)

    def transfer(self, sender: Address, recipient: Address, amount: RawAmount) -> None:
        if amount < 0:
            raise ValidationError(f"transfer amount must be non-negative: {amount}")
        current = self.balance_of(sender)
        if current < amount:
            raise ValidationError(
                f"insufficient {self.symbol} balance: {sender} has {current}, needs {amount}"
            )
        fee = amount * self.transfer_fee_bps // 10_000
        self._set(sender, current - amount)
        self._set(recipient, self.balance_of(recipient) + amount - fee)
        if self.on_transfer is not None:
            self.on_transfer(sender, recipient, amount)

    def get_all_balances(self) -> Dict[Address, RawAmount]:
        return dict(self._balances)

    def checkpoint(self) -> Dict[Address, RawAmount]:
        return dict(self._balances)

    def rollback(self, checkpoint: Dict[Address, RawAmount]) -> None:
        self._balances = dict(checkpoint)

    def __repr__(self) -> str:
        return f"CollateralToken({self.symbol}, {len(self._balances)} holders)"


class CollateralAdapter:
    """Moves fixed-point amounts between users and the pool's address."""

    def __init__(self, token: CollateralToken, pool_address: Address) -> None:
        self.token = token
        self.pool_address = pool_address
        self.scaler = 10 ** (DECIMALS - token.decimals)

    def to_raw(self, amount: int, rounding: Round) -> RawAmount:
        return div(amount, self.scaler, rounding)

    def to_wad(self, raw: RawAmount) -> int:
        return raw * self.scaler

    def transfer_in(self, account: Address, amount: int) -> RawAmount:
        """Pull `amount` (fixed point) from `account`, rounding the raw amount up."""
        raw = self.to_raw(amount, Round.CEIL)
        before = self.token.balance_of(self.pool_address)
        self.token.transfer(account, self.pool_address, raw)
        received = self.token.balance_of(self.pool_address) - before
        if received != raw:
            raise SafetyViolation(f"collateral received {received}, expected {raw}")
        return raw

    def transfer_out(self, account: Address, amount: int) -> RawAmount:
        """Push `amount` (fixed point) to `account`, rounding the raw amount down."""
        raw = self.to_raw(amount, Round.FLOOR)
        if raw == 0:
            return 0
        before = self.token.balance_of(self.pool_address)
        self.token.transfer(self.pool_address, account, raw)
        sent = before - self.token.balance_of(self.pool_address)
        if sent != raw:
            raise SafetyViolation(f"collateral sent {sent}, expected {raw}")
        return raw
