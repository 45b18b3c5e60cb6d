"""
Trade fee computation (deterministic, integer-only).

Fees are charged on the absolute trade value. When a trade only closes
exposure and the trader's available margin cannot cover the full fee, every
fee is scaled down by the same floor-rounded ratio so fees alone never drive
the account below its initial margin; with no available margin left, no fee
is charged at all.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ValidationError
from .fixed_point import ONE, Round, wdiv, wmul


@dataclass(frozen=True)
class FeeRates:
    lp_fee_rate: int
    operator_fee_rate: int
    vault_fee_rate: int
    referral_rebate_rate: int

    def __post_init__(self) -> None:
        for name, v in (
            ("lp_fee_rate", self.lp_fee_rate),
            ("operator_fee_rate", self.operator_fee_rate),
            ("vault_fee_rate", self.vault_fee_rate),
            ("referral_rebate_rate", self.referral_rebate_rate),
        ):
            if not isinstance(v, int) or isinstance(v, bool):
                raise ValidationError(f"{name} must be an int")
            if not (0 <= v <= ONE):
                raise ValidationError(f"{name} must be in [0, ONE]: {v}")


@dataclass(frozen=True)
class TradeFees:
    lp_fee: int = 0
    operator_fee: int = 0
    vault_fee: int = 0
    referral_rebate: int = 0

    def __post_init__(self) -> None:
        for name, v in (
            ("lp_fee", self.lp_fee),
            ("operator_fee", self.operator_fee),
            ("vault_fee", self.vault_fee),
            ("referral_rebate", self.referral_rebate),
        ):
            if v < 0:
                raise ValidationError(f"{name} must be non-negative: {v}")

    @property
    def total(self) -> int:
        return self.lp_fee + self.operator_fee + self.vault_fee + self.referral_rebate

    @property
    def leaving_market(self) -> int:
        """Fees paid out of the market's collateral (everything but the LP fee)."""
        return self.operator_fee + self.vault_fee + self.referral_rebate


def compute_trade_fees(
    trade_value: int,
    rates: FeeRates,
    *,
    has_opened: bool,
    available_margin: int,
    has_referrer: bool,
) -> TradeFees:
    if trade_value < 0:
        raise ValidationError(f"trade_value must be non-negative: {trade_value}")

    lp_fee = wmul(trade_value, rates.lp_fee_rate)
    operator_fee = wmul(trade_value, rates.operator_fee_rate)
    vault_fee = wmul(trade_value, rates.vault_fee_rate)

    if not has_opened:
        total = lp_fee + operator_fee + vault_fee
        if available_margin <= 0:
            return TradeFees()
        if total > available_margin:
            rate = wdiv(available_margin, total, Round.FLOOR)
            lp_fee = wmul(lp_fee, rate, Round.FLOOR)
            operator_fee = wmul(operator_fee, rate, Round.FLOOR)
            vault_fee = wmul(vault_fee, rate, Round.FLOOR)

    referral_rebate = 0
    if has_referrer and rates.referral_rebate_rate > 0:
        lp_rebate = wmul(lp_fee, rates.referral_rebate_rate)
        operator_rebate = wmul(operator_fee, rates.referral_rebate_rate)
        referral_rebate = lp_rebate + operator_rebate
        lp_fee -= lp_rebate
        operator_fee -= operator_rebate

    return TradeFees(
        lp_fee=lp_fee,
        operator_fee=operator_fee,
        vault_fee=vault_fee,
        referral_rebate=referral_rebate,
    )
