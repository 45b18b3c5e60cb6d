"""Data model for the perpetual AMM engine.

Units/conventions:
- every amount, price and rate is an int in 18-decimal fixed point (`ONE`),
- `position` is signed (long > 0, short < 0),
- time is integer seconds supplied by the caller.

These records are mutable: services mutate them in place and the engine
facade provides the copy-on-write transaction boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import IntEnum, IntFlag, unique
from typing import Dict, Iterator, List, Optional

from .errors import ValidationError

# Reserved account id of the AMM inside every market's account table.
POOL_ACCOUNT = "__pool__"

# Market index meaning "every market" for pool-wide operations.
ALL_PERPETUALS = -1


@unique
class PerpetualState(IntEnum):
    INVALID = 0
    INITIALIZING = 1
    NORMAL = 2
    EMERGENCY = 3
    CLEARED = 4


class TradeFlag(IntFlag):
    NONE = 0
    CLOSE_ONLY = 0x8000_0000
    MARKET_ORDER = 0x4000_0000
    USE_TARGET_LEVERAGE = 0x0800_0000
    # Fill up to the AMM's max position instead of rejecting an oversized order.
    PARTIAL_FILL = 0x0400_0000


class Privilege(IntFlag):
    NONE = 0
    DEPOSIT = 0x1
    WITHDRAW = 0x2
    TRADE = 0x4
    LIQUIDATE = 0x8


@dataclass(frozen=True)
class Option:
    """A bounded risk parameter: `min_value <= value <= max_value`."""

    value: int
    min_value: int
    max_value: int

    def __post_init__(self) -> None:
        if not (self.min_value <= self.value <= self.max_value):
            raise ValidationError(
                f"option out of range: {self.min_value} <= {self.value} <= {self.max_value}"
            )

    @classmethod
    def fixed(cls, value: int) -> "Option":
        return cls(value, value, value)

    def with_value(self, value: int) -> "Option":
        return replace(self, value=value)


@dataclass(frozen=True)
class PriceData:
    price: int = 0
    time: int = 0


@dataclass
class MarginAccount:
    cash: int = 0
    position: int = 0
    # Notional paid to open the current position (signed like deltaCash).
    entry_value: int = 0
    # Mean-reversion penalty already accrued when the position was opened.
    entry_funding_penalty: int = 0
    target_leverage: int = 0

    def is_empty(self) -> bool:
        return self.cash == 0 and self.position == 0


class AccountSet:
    """Unordered set with O(1) add/remove (swap-and-pop over a list + index)."""

    def __init__(self, items: Optional[List[str]] = None) -> None:
        self._items: List[str] = []
        self._index: Dict[str, int] = {}
        for item in items or []:
            self.add(item)

    def add(self, item: str) -> bool:
        if item in self._index:
            return False
        self._index[item] = len(self._items)
        self._items.append(item)
        return True

    def remove(self, item: str) -> bool:
        idx = self._index.pop(item, None)
        if idx is None:
            return False
        last = self._items.pop()
        if idx < len(self._items):
            self._items[idx] = last
            self._index[last] = idx
        return True

    def at(self, idx: int) -> str:
        return self._items[idx]

    def slice(self, begin: int, end: int) -> List[str]:
        return list(self._items[begin:end])

    def to_list(self) -> List[str]:
        return list(self._items)

    def __contains__(self, item: object) -> bool:
        return item in self._index

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AccountSet):
            return NotImplemented
        return set(self._items) == set(other._items)


# Names of the Option-typed risk parameters, in declaration order.
RISK_PARAMETERS = (
    "half_spread",
    "open_slippage_factor",
    "close_slippage_factor",
    "funding_rate_limit",
    "funding_rate_factor",
    "base_funding_rate",
    "amm_max_leverage",
    "max_close_price_discount",
    "default_target_leverage",
    "mean_rate",
    "mean_revert_factor",
    "open_slippage_penalty",
)

# Names of the plain core parameters, in declaration order.
CORE_PARAMETERS = (
    "initial_margin_rate",
    "maintenance_margin_rate",
    "operator_fee_rate",
    "lp_fee_rate",
    "referral_rebate_rate",
    "liquidation_penalty_rate",
    "keeper_gas_reward",
    "insurance_fund_rate",
    "max_open_interest_rate",
)


def _zero_option() -> Option:
    return Option(0, 0, 0)


@dataclass
class Perpetual:
    """One market of the pool."""

    id: int
    oracle_id: str
    state: PerpetualState = PerpetualState.INITIALIZING

    mark_price_data: PriceData = field(default_factory=PriceData)
    index_price_data: PriceData = field(default_factory=PriceData)
    settlement_price_data: PriceData = field(default_factory=PriceData)

    # Funding
    funding_time: int = 0
    funding_rate: int = 0
    unit_accumulative_funding: int = 0
    unit_accumulative_long_funding: int = 0
    unit_accumulative_short_funding: int = 0

    # Core parameters
    initial_margin_rate: int = 0
    maintenance_margin_rate: int = 0
    operator_fee_rate: int = 0
    lp_fee_rate: int = 0
    referral_rebate_rate: int = 0
    liquidation_penalty_rate: int = 0
    keeper_gas_reward: int = 0
    insurance_fund_rate: int = 0
    max_open_interest_rate: int = 0

    # Risk parameters
    half_spread: Option = field(default_factory=_zero_option)
    open_slippage_factor: Option = field(default_factory=_zero_option)
    close_slippage_factor: Option = field(default_factory=_zero_option)
    funding_rate_limit: Option = field(default_factory=_zero_option)
    funding_rate_factor: Option = field(default_factory=_zero_option)
    base_funding_rate: Option = field(default_factory=_zero_option)
    amm_max_leverage: Option = field(default_factory=_zero_option)
    max_close_price_discount: Option = field(default_factory=_zero_option)
    default_target_leverage: Option = field(default_factory=_zero_option)
    mean_rate: Option = field(default_factory=_zero_option)
    mean_revert_factor: Option = field(default_factory=_zero_option)
    open_slippage_penalty: Option = field(default_factory=_zero_option)

    open_interest: int = 0
    total_collateral: int = 0

    # Clearing
    redemption_rate_with_position: int = 0
    redemption_rate_without_position: int = 0
    total_margin_with_position: int = 0
    total_margin_without_position: int = 0

    accounts: Dict[str, MarginAccount] = field(default_factory=dict)
    active_accounts: AccountSet = field(default_factory=AccountSet)

    def account(self, trader: str) -> MarginAccount:
        """Return the trader's account, creating an empty one on first touch."""
        acc = self.accounts.get(trader)
        if acc is None:
            acc = MarginAccount()
            self.accounts[trader] = acc
        return acc

    def peek_account(self, trader: str) -> MarginAccount:
        """Read-only lookup: missing accounts read as empty."""
        return self.accounts.get(trader) or MarginAccount()


@dataclass
class LiquidityPoolStorage:
    """The pool: shared collateral plus an ordered list of markets."""

    operator: str
    governor: str
    collateral: str
    share_token: str
    # 10**(18 - collateral decimals)
    scaler: int = 1
    is_running: bool = False
    is_fast_creation_enabled: bool = False

    pool_cash: int = 0
    insurance_fund: int = 0
    donated_insurance_fund: int = 0
    insurance_fund_cap: int = 0
    liquidity_cap: int = 0

    vault: str = ""
    vault_fee_rate: int = 0

    perpetuals: List[Perpetual] = field(default_factory=list)

    def perpetual(self, perpetual_index: int) -> Perpetual:
        if not (0 <= perpetual_index < len(self.perpetuals)):
            raise ValidationError(f"perpetual index out of range: {perpetual_index}")
        return self.perpetuals[perpetual_index]


@dataclass(frozen=True)
class TradeQuote:
    """Fill of a trade against the AMM, signed from the trader's side.

    `delta_cash` excludes fees; `total_fee` is what the trader paid on top.
    """

    delta_cash: int
    delta_position: int
    trade_price: int
    total_fee: int = 0


@dataclass(frozen=True)
class LiquidationResult:
    liquidated_amount: int
    liquidation_price: int
    penalty: int
    penalty_to_insurance_fund: int
    penalty_to_liquidator: int
    penalty_to_lp: int
